"""Exception types raised by the ingest and archive layers."""

from __future__ import annotations


class MediaArchiveError(Exception):
    """Base class for errors the ingest loop handles per item."""


class InvalidMediaReferenceError(MediaArchiveError, ValueError):
    """The media reference is missing or cannot name an archive file."""


class FetchError(MediaArchiveError):
    """Fetching or staging the media bytes failed."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"failed to fetch {url}: {reason}")
        self.url = url
        self.reason = reason

    def __reduce__(self) -> tuple[type, tuple[str, str]]:
        return (type(self), (self.url, self.reason))


class ImageDecodeError(MediaArchiveError):
    """The staged bytes could not be decoded as an image."""


class ComparisonError(MediaArchiveError):
    """A similarity scan in the comparison pool failed as a whole."""


__all__ = [
    "ComparisonError",
    "FetchError",
    "ImageDecodeError",
    "InvalidMediaReferenceError",
    "MediaArchiveError",
]
