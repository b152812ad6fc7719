"""Composition root wiring the archive, stores, ingest loop, and persistence."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

from utils.logging import get_logger
from media_archive.archive import ImageArchive
from media_archive.comparison_pool import ComparisonPool
from media_archive.config import Settings, load_settings
from media_archive.fetcher import MediaFetcher
from media_archive.ingest import IngestProcessor, IngestQueue
from media_archive.models import Image, MediaReference, PendingMediaItem, Post
from media_archive.persistence import PersistenceManager
from media_archive.stores import ImagePostIndex, PostStore

LOGGER = get_logger(__name__, extra={"component": "app"})


class ArchiveApplication:
    """Owns one instance of every core component and their lifecycle.

    All components share one re-entrant lock: the processor holds it while
    recording a post and its association, and the persistence manager holds
    it while capturing a snapshot.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        pool: ComparisonPool | None = None,
        fetcher: MediaFetcher | None = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.lock = threading.RLock()
        self.pool = pool or ComparisonPool.from_config(self.settings.comparison)
        self.fetcher = fetcher or MediaFetcher.from_config(self.settings.ingest)
        self.archive = ImageArchive.from_settings(self.settings, pool=self.pool, fetcher=self.fetcher, lock=self.lock)
        self.posts = PostStore(self.lock)
        self.index = ImagePostIndex(self.lock)
        self.queue = IngestQueue()
        self.processor = IngestProcessor.from_settings(
            self.settings, self.queue, self.archive, self.posts, self.index, lock=self.lock
        )
        self.persistence = PersistenceManager.from_settings(
            self.settings, self.archive, self.posts, self.index, lock=self.lock
        )
        self._prepared = False

    def prepare(self) -> None:
        """Create directories, sweep staging leftovers, and load the persisted stores."""

        if self._prepared:
            return

        Path(self.settings.storage.data_dir).mkdir(parents=True, exist_ok=True)
        swept = self.archive.prepare()
        counts = self.persistence.load()
        self._prepared = True
        LOGGER.info(
            "application_prepared",
            extra={"images_dir": str(self.archive.images_dir), "staging_swept": swept, **counts},
        )

    def start(self) -> None:
        """Start the ingest consumer and the periodic persistence job."""

        self.prepare()
        self.processor.start()
        self.persistence.start()

    def submit(self, post: Post, media: MediaReference) -> PendingMediaItem:
        return self.queue.submit(post, media)

    def wait_until_drained(self) -> None:
        self.queue.join()

    def stop(self) -> None:
        """Stop the consumer, write a final snapshot, and release worker resources."""

        self.processor.stop()
        try:
            self.persistence.stop(persist=self._prepared)
        finally:
            self.pool.shutdown()
            self.fetcher.close()
        LOGGER.info("application_stopped", extra={})

    def clear_all(self) -> int:
        """Delete every archived image, forget all posts and associations, and persist the empty state.

        Operator action only; the consumer must not be running.
        """

        if self.processor.is_running:
            raise RuntimeError("stop the ingest processor before clearing the archive")

        self.prepare()
        with self.lock:
            removed = self.archive.clear()
            self.posts.clear()
            self.index.clear()
        self.persistence.persist()
        return removed

    def __enter__(self) -> "ArchiveApplication":
        self.start()
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.stop()

    # -- read-only queries ---------------------------------------------------

    def image_posts(self) -> list[tuple[Image, list[Post]]]:
        """Every archived image with the stored posts that referenced it, in archive order.

        Association keys whose post record is not (yet) stored are skipped.
        """

        with self.lock:
            return [
                (image, self.posts.get_many(sorted(self.index.post_keys(image.filename))))
                for image in self.archive.list_images()
            ]

    def status(self) -> dict[str, Any]:
        return {
            "processor_state": self.processor.state.value,
            "queue_depth": len(self.queue),
            "images": len(self.archive),
            "posts": len(self.posts),
            "processed": self.processor.processed,
            "dropped": self.processor.dropped,
        }


__all__ = ["ArchiveApplication"]
