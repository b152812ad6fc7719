"""Canonical image registry with stage, compare, and promote-or-discard logic.

``resolve`` is not safe to call concurrently on one archive: the
check-stage-compare-insert sequence is not atomic, so callers must serialize
it (the ingest processor runs exactly one resolution at a time). The
registry lock only guards individual reads and writes so that snapshots and
HTTP accessors see a consistent dict.
"""

from __future__ import annotations

import itertools
import threading
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

from PIL import Image as PILImage
from PIL import UnidentifiedImageError

from utils.logging import get_logger
from media_archive.comparison_pool import ComparisonPool, ScanOptions
from media_archive.config import Settings
from media_archive.errors import ComparisonError, ImageDecodeError, InvalidMediaReferenceError
from media_archive.fetcher import MediaFetcher
from media_archive.models import UNKNOWN_DIMENSION, Image, MediaReference

LOGGER = get_logger(__name__, extra={"component": "archive"})

STAGING_PREFIX = "temp_"
_DEFAULT_STAGING_EXTENSION = "bin"


def derive_filename(url: str | None) -> str:
    """Return the archive filename for a media URL: the final segment of its path.

    Raises:
        InvalidMediaReferenceError: The URL is empty or its final segment cannot
            name a file in the archive directory.
    """

    if not url or not isinstance(url, str):
        raise InvalidMediaReferenceError("media reference has no URL")

    parsed = urlparse(url)
    path = parsed.path if parsed.scheme else url
    segment = unquote(path.split("/")[-1])

    if not segment or segment in {".", ".."} or "\\" in segment or "\x00" in segment:
        raise InvalidMediaReferenceError(f"cannot derive a filename from {url!r}")
    if segment.startswith(STAGING_PREFIX):
        raise InvalidMediaReferenceError(f"filename {segment!r} collides with the staging prefix")
    return segment


def staging_extension(filename: str) -> str:
    suffix = Path(filename).suffix.lstrip(".").lower()
    return suffix or _DEFAULT_STAGING_EXTENSION


def _remove_path(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        return


def _positive(value: int | None) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return None


class ImageArchive:
    """Owns the set of distinct images and the files behind them."""

    def __init__(
        self,
        images_dir: Path,
        *,
        pool: ComparisonPool,
        fetcher: MediaFetcher,
        options: ScanOptions,
        failure_policy: str = "novel",
        lock: threading.RLock | None = None,
    ) -> None:
        self._images_dir = Path(images_dir)
        self._pool = pool
        self._fetcher = fetcher
        self._options = options
        self._failure_policy = failure_policy
        self._lock = lock or threading.RLock()
        self._images: dict[str, Image] = {}
        self._staging_counter = itertools.count()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        pool: ComparisonPool,
        fetcher: MediaFetcher,
        lock: threading.RLock | None = None,
    ) -> "ImageArchive":
        return cls(
            settings.storage.images_path,
            pool=pool,
            fetcher=fetcher,
            options=ScanOptions.from_config(settings.comparison),
            failure_policy=settings.comparison.failure_policy,
            lock=lock,
        )

    @property
    def images_dir(self) -> Path:
        return self._images_dir

    # -- startup -------------------------------------------------------------

    def prepare(self) -> int:
        """Create the images directory and remove staging leftovers from earlier runs."""

        self._images_dir.mkdir(parents=True, exist_ok=True)
        return self.sweep_staging()

    def sweep_staging(self) -> int:
        removed = 0
        if not self._images_dir.is_dir():
            return removed

        for path in self._images_dir.glob(f"{STAGING_PREFIX}*"):
            if path.is_file():
                _remove_path(path)
                removed += 1

        if removed:
            LOGGER.info("staging_swept", extra={"removed": removed, "images_dir": str(self._images_dir)})
        return removed

    # -- resolution ----------------------------------------------------------

    def resolve(self, media: MediaReference) -> Image:
        """Return the canonical image for ``media``, archiving it if it is new.

        Repeated references to the same derived filename return the stored
        image without fetching or comparing again. Otherwise the bytes are
        staged, scanned against every archived image in insertion order, and
        either discarded in favour of the first sufficiently similar image or
        promoted under the derived filename.

        Raises:
            InvalidMediaReferenceError: Rejected before any I/O.
            FetchError: The bytes could not be fetched or staged.
            ImageDecodeError: The staged bytes are not an image.
            ComparisonError: The scan failed and the failure policy is ``drop``.
        """

        filename = derive_filename(media.url)
        self._fetcher.check(media.url)

        existing = self.get(filename)
        if existing is not None:
            LOGGER.debug("image_cache_hit", extra={"image": filename})
            return existing

        staged = self._stage(media.url, filename)
        try:
            width, height = self._dimensions(media, staged)
            match = self._find_match(staged, filename)
            if match is not None:
                _remove_path(staged)
                LOGGER.info("image_duplicate", extra={"image": filename, "matched": match.filename})
                return match
            return self._promote(staged, filename, width, height)
        except Exception:
            _remove_path(staged)
            raise

    def _stage(self, url: str, filename: str) -> Path:
        staged = self._images_dir / f"{STAGING_PREFIX}{next(self._staging_counter)}.{staging_extension(filename)}"
        try:
            self._fetcher.fetch_to(url, staged)
        except Exception:
            _remove_path(staged)
            raise
        return staged

    def _dimensions(self, media: MediaReference, staged: Path) -> tuple[int, int]:
        try:
            with PILImage.open(staged) as handle:
                decoded_width, decoded_height = handle.size
        except (UnidentifiedImageError, PILImage.DecompressionBombError, OSError, ValueError) as exc:
            raise ImageDecodeError(f"staged media for {media.url} is not an image: {exc}") from exc

        width = _positive(media.width) or _positive(decoded_width) or UNKNOWN_DIMENSION
        height = _positive(media.height) or _positive(decoded_height) or UNKNOWN_DIMENSION
        return width, height

    def _find_match(self, staged: Path, filename: str) -> Image | None:
        filenames = self.filenames()
        if not filenames:
            return None

        try:
            matched = self._pool.find_match(staged, self._images_dir, filenames, self._options)
        except ComparisonError as exc:
            if self._failure_policy == "drop":
                raise
            LOGGER.warning("comparison_failed_assume_novel", extra={"image": filename, "error": str(exc)})
            return None

        if matched is None:
            return None
        return self.get(matched)

    def _promote(self, staged: Path, filename: str, width: int, height: int) -> Image:
        target = self._images_dir / filename
        staged.replace(target)
        image = Image(filename=filename, width=width, height=height)
        with self._lock:
            self._images[filename] = image
        LOGGER.info("image_promoted", extra={"image": filename, "width": width, "height": height})
        return image

    # -- accessors -----------------------------------------------------------

    def get(self, filename: str) -> Image | None:
        with self._lock:
            return self._images.get(filename)

    def __contains__(self, filename: object) -> bool:
        with self._lock:
            return filename in self._images

    def __len__(self) -> int:
        with self._lock:
            return len(self._images)

    def filenames(self) -> list[str]:
        """Archived filenames in insertion order."""

        with self._lock:
            return list(self._images)

    def list_images(self) -> list[Image]:
        with self._lock:
            return list(self._images.values())

    def image_path(self, filename: str) -> Path | None:
        """Return the on-disk path of an archived image, or ``None`` when it is not archived."""

        if filename not in self:
            return None
        return self._images_dir / filename

    def read_bytes(self, filename: str) -> bytes | None:
        path = self.image_path(filename)
        if path is None:
            return None
        try:
            return path.read_bytes()
        except FileNotFoundError:
            LOGGER.warning("image_file_missing", extra={"image": filename, "path": str(path)})
            return None

    # -- persistence and maintenance -----------------------------------------

    def snapshot_records(self) -> list[dict[str, Any]]:
        with self._lock:
            return [image.to_record() for image in self._images.values()]

    def load_records(self, records: Iterable[Mapping[str, Any]]) -> int:
        """Populate the registry from persisted image records.

        Records without a backing file, or whose filename is unusable, are
        skipped with a warning.
        """

        loaded = 0
        for record in records:
            try:
                image = Image.from_record(record)
                derive_filename(image.filename)
            except (KeyError, TypeError, InvalidMediaReferenceError) as exc:
                LOGGER.warning("image_record_invalid", extra={"error": str(exc)})
                continue

            if not (self._images_dir / image.filename).is_file():
                LOGGER.warning("image_record_file_missing", extra={"image": image.filename})
                continue

            with self._lock:
                self._images[image.filename] = image
            loaded += 1
        return loaded

    def clear(self) -> int:
        """Delete every canonical image file and empty the registry."""

        with self._lock:
            filenames = list(self._images)
            self._images.clear()

        for filename in filenames:
            _remove_path(self._images_dir / filename)

        LOGGER.info("archive_cleared", extra={"removed": len(filenames)})
        return len(filenames)


__all__ = ["ImageArchive", "STAGING_PREFIX", "derive_filename", "staging_extension"]
