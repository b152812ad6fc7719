"""Fetch media bytes into staging files."""

from __future__ import annotations

import shutil
from pathlib import Path
from urllib.parse import urlparse
from urllib.request import url2pathname

import requests

from utils.logging import get_logger
from media_archive.config import IngestConfig
from media_archive.errors import FetchError, InvalidMediaReferenceError

LOGGER = get_logger(__name__, extra={"component": "fetcher"})

REMOTE_SCHEMES = frozenset({"http", "https"})
LOCAL_SCHEMES = frozenset({"file", ""})
_CHUNK_SIZE = 64 * 1024


def check_media_url(url: str, *, allow_local: bool = False) -> None:
    """Reject URLs the fetcher cannot handle, before any I/O happens.

    Local references (``file://`` URLs and bare paths) are accepted only with
    ``allow_local``.
    """

    scheme = urlparse(url).scheme.lower()
    if scheme in REMOTE_SCHEMES:
        return
    if scheme in LOCAL_SCHEMES:
        if not allow_local:
            raise InvalidMediaReferenceError(f"local media references are disabled: {url}")
        return
    raise InvalidMediaReferenceError(f"unsupported media URL scheme {scheme!r}: {url}")


class MediaFetcher:
    """Write the bytes behind a media URL to a destination path.

    ``http``/``https`` URLs are downloaded with a shared ``requests`` session;
    ``file://`` URLs and bare paths are copied from a pre-staged local file,
    but only when ``allow_local`` is set (tests and local dev runs).
    """

    def __init__(
        self,
        *,
        timeout: float | None = None,
        user_agent: str | None = None,
        session: requests.Session | None = None,
        allow_local: bool = False,
    ) -> None:
        self._timeout = timeout
        self._allow_local = allow_local
        self._session = session or requests.Session()
        if user_agent:
            self._session.headers["User-Agent"] = user_agent

    @classmethod
    def from_config(cls, config: IngestConfig) -> "MediaFetcher":
        return cls(
            timeout=config.fetch_timeout_seconds,
            user_agent=config.user_agent,
            allow_local=config.allow_local_files,
        )

    @property
    def allow_local(self) -> bool:
        return self._allow_local

    def check(self, url: str) -> None:
        """Raise :class:`InvalidMediaReferenceError` for URLs this fetcher refuses."""

        check_media_url(url, allow_local=self._allow_local)

    def fetch_to(self, url: str, destination: Path) -> int:
        """Write the media at ``url`` to ``destination`` and return the byte count.

        Raises:
            InvalidMediaReferenceError: The URL scheme is not supported, or the
                reference is local and local copies are disabled.
            FetchError: The download or copy failed, or produced no bytes.
        """

        self.check(url)
        parsed = urlparse(url)
        if parsed.scheme.lower() in REMOTE_SCHEMES:
            written = self._download(url, destination)
        else:
            source = Path(url2pathname(parsed.path)) if parsed.scheme else Path(url)
            written = self._copy_local(url, source, destination)

        if written == 0:
            raise FetchError(url, "empty body")
        return written

    def _download(self, url: str, destination: Path) -> int:
        written = 0
        try:
            with self._session.get(url, stream=True, timeout=self._timeout) as response:
                response.raise_for_status()
                with destination.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                        if chunk:
                            handle.write(chunk)
                            written += len(chunk)
        except requests.RequestException as exc:
            raise FetchError(url, str(exc)) from exc
        except OSError as exc:
            raise FetchError(url, f"staging write failed: {exc}") from exc

        LOGGER.debug("media_downloaded", extra={"url": url, "bytes": written})
        return written

    def _copy_local(self, url: str, source: Path, destination: Path) -> int:
        try:
            shutil.copyfile(source, destination)
            return destination.stat().st_size
        except OSError as exc:
            raise FetchError(url, str(exc)) from exc

    def close(self) -> None:
        self._session.close()


__all__ = ["LOCAL_SCHEMES", "MediaFetcher", "REMOTE_SCHEMES", "check_media_url"]
