"""In-memory post store and image-to-posts index."""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from typing import Any

from utils.logging import get_logger
from media_archive.models import Image, Post

LOGGER = get_logger(__name__, extra={"component": "stores"})


class PostStore:
    """Posts keyed by composite ``authorId:postId``; re-adding a key overwrites it."""

    def __init__(self, lock: threading.RLock | None = None) -> None:
        self._lock = lock or threading.RLock()
        self._posts: dict[str, Post] = {}

    def add(self, post: Post) -> None:
        with self._lock:
            self._posts[post.key] = post

    def get(self, key: str) -> Post | None:
        with self._lock:
            return self._posts.get(key)

    def get_many(self, keys: Iterable[str]) -> list[Post]:
        """Return the stored posts for ``keys``, skipping keys with no stored post."""

        with self._lock:
            return [self._posts[key] for key in keys if key in self._posts]

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._posts)

    def clear(self) -> None:
        with self._lock:
            self._posts.clear()

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._posts

    def __len__(self) -> int:
        with self._lock:
            return len(self._posts)

    def snapshot_records(self) -> list[dict[str, Any]]:
        with self._lock:
            return [post.to_record() for post in self._posts.values()]

    def load_records(self, records: Iterable[Mapping[str, Any]]) -> int:
        loaded = 0
        for record in records:
            try:
                post = Post.from_record(record)
            except (KeyError, TypeError, AttributeError) as exc:
                LOGGER.warning("post_record_invalid", extra={"error": str(exc)})
                continue
            self.add(post)
            loaded += 1
        return loaded


class ImagePostIndex:
    """Maps an image filename to the set of composite keys of posts that referenced it."""

    def __init__(self, lock: threading.RLock | None = None) -> None:
        self._lock = lock or threading.RLock()
        self._keys_by_filename: dict[str, set[str]] = {}

    def add(self, image: Image | str, post: Post | str) -> None:
        filename = image.filename if isinstance(image, Image) else image
        key = post.key if isinstance(post, Post) else post
        with self._lock:
            self._keys_by_filename.setdefault(filename, set()).add(key)

    def post_keys(self, filename: str) -> set[str]:
        with self._lock:
            return set(self._keys_by_filename.get(filename, ()))

    def filenames(self) -> list[str]:
        with self._lock:
            return list(self._keys_by_filename)

    def clear(self) -> None:
        with self._lock:
            self._keys_by_filename.clear()

    def __contains__(self, filename: object) -> bool:
        with self._lock:
            return filename in self._keys_by_filename

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys_by_filename)

    def snapshot_records(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {"imageFilename": filename, "compoundPostIds": sorted(keys)}
                for filename, keys in self._keys_by_filename.items()
            ]

    def load_records(self, records: Iterable[Mapping[str, Any]]) -> int:
        loaded = 0
        for record in records:
            try:
                filename = str(record["imageFilename"])
                keys = [str(key) for key in record.get("compoundPostIds") or []]
            except (KeyError, TypeError, AttributeError) as exc:
                LOGGER.warning("image_posts_record_invalid", extra={"error": str(exc)})
                continue
            with self._lock:
                self._keys_by_filename.setdefault(filename, set()).update(keys)
            loaded += 1
        return loaded


__all__ = ["ImagePostIndex", "PostStore"]
