"""Snapshot the in-memory stores to JSON documents and reload them at startup.

Each store is written whole to its own document. Records for all three
documents are captured under the shared store lock in one pass, so the post
and association documents from one snapshot agree with each other; the files
themselves are written one after another. A crash between two file writes
can leave association keys whose post record is missing on reload. Those
keys are kept and simply skipped by readers until the post shows up again.
"""

from __future__ import annotations

import json
import os
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from utils.logging import get_logger
from media_archive.archive import ImageArchive
from media_archive.config import Settings
from media_archive.stores import ImagePostIndex, PostStore

LOGGER = get_logger(__name__, extra={"component": "persistence"})

# Write order: posts before the associations that reference them.
DOCUMENT_NAMES: tuple[str, ...] = ("posts", "images", "image_posts")


@dataclass
class StoreSnapshot:
    """Plain records captured from every store at one instant."""

    images: list[dict[str, Any]]
    posts: list[dict[str, Any]]
    image_posts: list[dict[str, Any]]

    def documents(self) -> dict[str, list[dict[str, Any]]]:
        return {"images": self.images, "posts": self.posts, "image_posts": self.image_posts}


def read_document(path: Path) -> list[Any]:
    """Load a JSON array document, treating a missing file as empty.

    An unreadable or non-array document is moved aside to
    ``<name>.corrupt-<timestamp>[-<n>]`` so the next snapshot does not overwrite
    the evidence, and an empty list is returned.
    """

    if not path.exists():
        return []

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        _quarantine(path, str(exc))
        return []

    if not isinstance(data, list):
        _quarantine(path, f"expected a JSON array, got {type(data).__name__}")
        return []
    return data


def _quarantine(path: Path, reason: str) -> None:
    stamp = int(time.time())
    target = path.with_name(f"{path.name}.corrupt-{stamp}")
    suffix = 1
    while target.exists():
        target = path.with_name(f"{path.name}.corrupt-{stamp}-{suffix}")
        suffix += 1
    path.replace(target)
    LOGGER.error("document_quarantined", extra={"path": str(path), "moved_to": str(target), "error": reason})


def write_document(path: Path, records: list[dict[str, Any]], *, atomic: bool = True) -> None:
    """Overwrite ``path`` with ``records`` as a JSON array.

    With ``atomic`` the payload goes to a sibling temp file that is then
    renamed over the target, so readers never see a half-written document.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(records, ensure_ascii=False)

    if not atomic:
        path.write_text(payload, encoding="utf-8")
        return

    tmp_path = path.with_name(f".{path.name}.tmp")
    try:
        with tmp_path.open("w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


class PersistenceManager:
    """Loads the stores at startup and snapshots them periodically and on shutdown."""

    def __init__(
        self,
        archive: ImageArchive,
        posts: PostStore,
        index: ImagePostIndex,
        paths: Mapping[str, Path],
        *,
        lock: threading.RLock,
        interval_seconds: float = 10.0,
        atomic_writes: bool = True,
    ) -> None:
        missing = [name for name in DOCUMENT_NAMES if name not in paths]
        if missing:
            raise ValueError(f"missing document paths: {missing}")

        self._archive = archive
        self._posts = posts
        self._index = index
        self._paths = {name: Path(paths[name]) for name in DOCUMENT_NAMES}
        self._lock = lock
        self._interval = max(0.01, float(interval_seconds))
        self._atomic = atomic_writes
        self._write_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        archive: ImageArchive,
        posts: PostStore,
        index: ImagePostIndex,
        *,
        lock: threading.RLock,
    ) -> "PersistenceManager":
        return cls(
            archive,
            posts,
            index,
            settings.storage.document_paths,
            lock=lock,
            interval_seconds=settings.persistence.interval_seconds,
            atomic_writes=settings.persistence.atomic_writes,
        )

    @property
    def paths(self) -> dict[str, Path]:
        return dict(self._paths)

    def load(self) -> dict[str, int]:
        """Populate every store from its document; missing documents load as empty."""

        counts = {
            "posts": self._posts.load_records(read_document(self._paths["posts"])),
            "images": self._archive.load_records(read_document(self._paths["images"])),
            "image_posts": self._index.load_records(read_document(self._paths["image_posts"])),
        }
        LOGGER.info("stores_loaded", extra=counts)
        return counts

    def snapshot(self) -> StoreSnapshot:
        with self._lock:
            return StoreSnapshot(
                images=self._archive.snapshot_records(),
                posts=self._posts.snapshot_records(),
                image_posts=self._index.snapshot_records(),
            )

    def persist(self) -> StoreSnapshot:
        """Write a fresh snapshot of every store to disk."""

        with self._write_lock:
            snapshot = self.snapshot()
            documents = snapshot.documents()
            started = time.monotonic()
            for name in DOCUMENT_NAMES:
                write_document(self._paths[name], documents[name], atomic=self._atomic)

        LOGGER.info(
            "stores_persisted",
            extra={
                "images": len(snapshot.images),
                "posts": len(snapshot.posts),
                "image_posts": len(snapshot.image_posts),
                "elapsed_ms": round((time.monotonic() - started) * 1000.0, 1),
            },
        )
        return snapshot

    # -- periodic job --------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="store-persistence", daemon=True)
        self._thread.start()
        LOGGER.info("persistence_job_started", extra={"interval_seconds": self._interval})

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self.persist()
            except (OSError, TypeError, ValueError) as exc:
                # The next interval is the retry.
                LOGGER.error("stores_persist_error", extra={"error": str(exc)})

    def stop(self, *, persist: bool = True) -> None:
        """Stop the periodic job and, by default, write a final snapshot."""

        self._stop_event.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join()
            LOGGER.info("persistence_job_stopped", extra={})
        if persist:
            self.persist()


__all__ = ["DOCUMENT_NAMES", "PersistenceManager", "StoreSnapshot", "read_document", "write_document"]
