"""FIFO ingest queue and its single-consumer processor.

The processor resolves exactly one pending item at a time. That is the only
concurrency control the archive relies on: there is never more than one
``ImageArchive.resolve`` call in flight.
"""

from __future__ import annotations

import queue
import threading
import time
from enum import Enum

from utils.logging import get_logger
from media_archive.archive import ImageArchive
from media_archive.config import Settings
from media_archive.errors import MediaArchiveError
from media_archive.models import Image, MediaReference, PendingMediaItem, Post
from media_archive.stores import ImagePostIndex, PostStore

LOGGER = get_logger(__name__, extra={"component": "ingest"})


class ProcessorState(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    STOPPED = "stopped"


class IngestQueue:
    """Unbounded FIFO of pending (post, media) items."""

    def __init__(self) -> None:
        self._queue: queue.Queue[PendingMediaItem] = queue.Queue()

    def submit(self, post: Post, media: MediaReference) -> PendingMediaItem:
        item = PendingMediaItem(post=post, media=media, enqueued_at=time.time())
        self._queue.put(item)
        preview = " ".join(post.text[:32].split())
        LOGGER.info(
            "image_enqueued",
            extra={"post_key": post.key, "url": media.url, "preview": preview, "depth": self._queue.qsize()},
        )
        return item

    def get(self, timeout: float | None = None) -> PendingMediaItem | None:
        """Block up to ``timeout`` seconds for the next item; ``None`` when nothing arrived."""

        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def get_nowait(self) -> PendingMediaItem | None:
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def task_done(self) -> None:
        self._queue.task_done()

    def join(self) -> None:
        """Block until every submitted item has been processed or dropped."""

        self._queue.join()

    def __len__(self) -> int:
        return self._queue.qsize()


class IngestProcessor:
    """Drains the ingest queue one item at a time into the archive and the stores."""

    def __init__(
        self,
        ingest_queue: IngestQueue,
        archive: ImageArchive,
        posts: PostStore,
        index: ImagePostIndex,
        *,
        lock: threading.RLock,
        poll_interval: float = 0.25,
    ) -> None:
        self._queue = ingest_queue
        self._archive = archive
        self._posts = posts
        self._index = index
        self._lock = lock
        self._poll_interval = max(0.01, float(poll_interval))
        self._state = ProcessorState.IDLE
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.processed = 0
        self.dropped = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        ingest_queue: IngestQueue,
        archive: ImageArchive,
        posts: PostStore,
        index: ImagePostIndex,
        *,
        lock: threading.RLock,
    ) -> "IngestProcessor":
        return cls(
            ingest_queue,
            archive,
            posts,
            index,
            lock=lock,
            poll_interval=settings.ingest.poll_interval_seconds,
        )

    @property
    def state(self) -> ProcessorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def process_item(self, item: PendingMediaItem) -> Image | None:
        """Resolve one item and record its associations; returns ``None`` when the item is dropped."""

        self._state = ProcessorState.PROCESSING
        started = time.monotonic()
        try:
            try:
                image = self._archive.resolve(item.media)
            except (MediaArchiveError, OSError) as exc:
                self.dropped += 1
                LOGGER.warning(
                    "ingest_item_dropped",
                    extra={
                        "post_key": item.post.key,
                        "url": item.media.url,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
                return None

            with self._lock:
                self._posts.add(item.post)
                self._index.add(image, item.post)

            self.processed += 1
            LOGGER.info(
                "ingest_item_processed",
                extra={
                    "post_key": item.post.key,
                    "url": item.media.url,
                    "image": image.filename,
                    "elapsed_ms": round((time.monotonic() - started) * 1000.0, 1),
                    "queue_wait_ms": round((time.time() - item.enqueued_at) * 1000.0, 1),
                },
            )
            return image
        finally:
            if self._state is ProcessorState.PROCESSING:
                self._state = ProcessorState.IDLE

    def drain(self) -> int:
        """Process every queued item on the calling thread; returns the number handled.

        Must not be used while the background consumer is running.
        """

        if self.is_running:
            raise RuntimeError("drain() cannot run while the consumer thread is active")

        handled = 0
        while True:
            item = self._queue.get_nowait()
            if item is None:
                return handled
            try:
                self.process_item(item)
            finally:
                self._queue.task_done()
            handled += 1

    # -- consumer thread -----------------------------------------------------

    def start(self) -> None:
        if self.is_running:
            return

        self._stop_event.clear()
        self._state = ProcessorState.IDLE
        self._thread = threading.Thread(target=self._run, name="ingest-processor", daemon=True)
        self._thread.start()
        LOGGER.info("ingest_processor_started", extra={"poll_interval": self._poll_interval})

    def _run(self) -> None:
        while not self._stop_event.is_set():
            item = self._queue.get(timeout=self._poll_interval)
            if item is None:
                continue
            try:
                self.process_item(item)
            except Exception as exc:  # pragma: no cover - defensive
                self.dropped += 1
                LOGGER.error(
                    "ingest_item_error",
                    extra={"post_key": item.post.key, "url": item.media.url, "error": str(exc)},
                    exc_info=True,
                )
            finally:
                self._queue.task_done()

    def stop(self, timeout: float | None = None) -> None:
        """Stop the consumer after its in-flight item; queued items stay queued."""

        self._stop_event.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout)
        self._state = ProcessorState.STOPPED
        LOGGER.info("ingest_processor_stopped", extra={"pending": len(self._queue)})


__all__ = ["IngestProcessor", "IngestQueue", "ProcessorState"]
