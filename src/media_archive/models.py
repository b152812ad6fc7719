"""Core records shared by the archive, the stores, and the ingest loop."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

UNKNOWN_DIMENSION: int = -1
UNKNOWN_AUTHOR: str = "none"
COMPOSITE_KEY_SEPARATOR: str = ":"


def composite_post_key(author_id: str, post_id: str) -> str:
    """Return the ``"<authorId>:<postId>"`` key that identifies a post across authors."""

    return f"{author_id}{COMPOSITE_KEY_SEPARATOR}{post_id}"


@dataclass(frozen=True)
class Image:
    """A canonical image in the archive.

    Only metadata lives here; the bytes are owned by the archive directory and
    looked up by ``filename``.
    """

    filename: str
    width: int = UNKNOWN_DIMENSION
    height: int = UNKNOWN_DIMENSION

    def to_record(self) -> dict[str, Any]:
        return {"filename": self.filename, "width": self.width, "height": self.height}

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Image":
        return cls(
            filename=str(record["filename"]),
            width=_coerce_dimension(record.get("width")),
            height=_coerce_dimension(record.get("height")),
        )


@dataclass(frozen=True)
class Post:
    """A social-media post that referenced one or more images."""

    author_id: str
    post_id: str
    author_name: str
    text: str
    timestamp: float

    @property
    def key(self) -> str:
        return composite_post_key(self.author_id, self.post_id)

    def to_record(self) -> dict[str, Any]:
        return {
            "authorId": self.author_id,
            "postId": self.post_id,
            "authorName": self.author_name,
            "text": self.text,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Post":
        try:
            timestamp = float(record.get("timestamp") or 0.0)
        except (TypeError, ValueError):
            timestamp = 0.0
        return cls(
            author_id=str(record["authorId"]),
            post_id=str(record["postId"]),
            author_name=str(record.get("authorName") or UNKNOWN_AUTHOR),
            text=str(record.get("text") or ""),
            timestamp=timestamp,
        )


@dataclass(frozen=True)
class MediaReference:
    """Pointer to an image attached to a post, with optional size metadata."""

    url: str
    width: int | None = None
    height: int | None = None
    media_type: str = "photo"


@dataclass(frozen=True)
class PendingMediaItem:
    """A (post, media) pair waiting in the ingest queue."""

    post: Post
    media: MediaReference
    enqueued_at: float


def _coerce_dimension(value: Any) -> int:
    if isinstance(value, bool):
        return UNKNOWN_DIMENSION
    if isinstance(value, (int, float)) and value > 0:
        return int(value)
    return UNKNOWN_DIMENSION


__all__ = [
    "COMPOSITE_KEY_SEPARATOR",
    "Image",
    "MediaReference",
    "PendingMediaItem",
    "Post",
    "UNKNOWN_AUTHOR",
    "UNKNOWN_DIMENSION",
    "composite_post_key",
]
