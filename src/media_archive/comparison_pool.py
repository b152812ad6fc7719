"""Worker pool that runs similarity scans off the ingest thread.

Scans read archived images straight from disk inside the worker, so only
paths and filenames cross the executor boundary.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from utils.logging import get_logger
from media_archive.comparator import load_luminance, load_luminance_like, mismatch_percentage
from media_archive.config import ComparisonConfig
from media_archive.errors import ComparisonError, ImageDecodeError

LOGGER = get_logger(__name__, extra={"component": "comparison_pool"})


@dataclass(frozen=True)
class ScanOptions:
    """Comparator parameters shipped to the worker with every scan."""

    threshold: float
    early_exit: float
    tolerance: int
    max_side: int

    @classmethod
    def from_config(cls, config: ComparisonConfig) -> "ScanOptions":
        return cls(
            threshold=config.mismatch_threshold,
            early_exit=config.early_exit_threshold,
            tolerance=config.brightness_tolerance,
            max_side=config.max_side,
        )


def find_match(candidate_path: str, archive_dir: str, filenames: Sequence[str], options: ScanOptions) -> str | None:
    """Return the first archived filename whose mismatch score is below the threshold.

    ``filenames`` are scanned in the given order and the first sufficiently
    similar image wins, even if a later one would score lower. Archived files
    that cannot be decoded are skipped.

    Raises:
        ImageDecodeError: The candidate itself cannot be decoded.
    """

    candidate = load_luminance(Path(candidate_path), options.max_side)
    root = Path(archive_dir)
    started = time.monotonic()

    for index, filename in enumerate(filenames):
        try:
            reference = load_luminance_like(root / filename, candidate.shape)
        except ImageDecodeError as exc:
            LOGGER.warning("archived_image_unreadable", extra={"image": filename, "error": str(exc)})
            continue

        score = mismatch_percentage(
            candidate,
            reference,
            tolerance=options.tolerance,
            early_exit=options.early_exit,
        )
        if score < options.threshold:
            LOGGER.debug(
                "scan_match",
                extra={
                    "image": filename,
                    "score": score,
                    "compared": index + 1,
                    "elapsed_ms": round((time.monotonic() - started) * 1000.0, 1),
                },
            )
            return filename

    LOGGER.debug(
        "scan_no_match",
        extra={"compared": len(filenames), "elapsed_ms": round((time.monotonic() - started) * 1000.0, 1)},
    )
    return None


ScanTask = Callable[[str, str, Sequence[str], ScanOptions], Optional[str]]


class ComparisonPool:
    """Fixed-size executor running :func:`find_match` scans.

    The executor is created lazily and rebuilt after a worker process dies.
    """

    def __init__(self, workers: int = 1, *, use_processes: bool = True, task: ScanTask = find_match) -> None:
        self._workers = max(1, int(workers))
        self._use_processes = use_processes
        self._task = task
        self._executor: Executor | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: ComparisonConfig) -> "ComparisonPool":
        return cls(workers=config.workers, use_processes=config.use_processes)

    def _ensure_executor(self) -> Executor:
        with self._lock:
            if self._executor is None:
                if self._use_processes:
                    self._executor = ProcessPoolExecutor(max_workers=self._workers)
                else:
                    self._executor = ThreadPoolExecutor(
                        max_workers=self._workers, thread_name_prefix="comparison"
                    )
                LOGGER.info(
                    "comparison_pool_started",
                    extra={"workers": self._workers, "processes": self._use_processes},
                )
            return self._executor

    def _discard_executor(self) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)

    def find_match(
        self,
        candidate_path: Path,
        archive_dir: Path,
        filenames: Sequence[str],
        options: ScanOptions,
    ) -> str | None:
        """Run one scan on the pool and block until it returns.

        Raises:
            ImageDecodeError: The candidate could not be decoded.
            ComparisonError: The scan failed for any other reason.
        """

        executor = self._ensure_executor()
        try:
            future = executor.submit(self._task, str(candidate_path), str(archive_dir), list(filenames), options)
            return future.result()
        except ImageDecodeError:
            raise
        except BrokenProcessPool as exc:
            LOGGER.error("comparison_pool_broken", extra={"error": str(exc)})
            self._discard_executor()
            raise ComparisonError(f"comparison worker died: {exc}") from exc
        except Exception as exc:
            raise ComparisonError(f"comparison scan failed: {exc}") from exc

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
            LOGGER.info("comparison_pool_stopped", extra={})

    def __enter__(self) -> "ComparisonPool":
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.shutdown()


__all__ = ["ComparisonPool", "ScanOptions", "find_match"]
