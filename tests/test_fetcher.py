"""Tests for staging media bytes from remote and local URLs."""

from __future__ import annotations

import pickle
from pathlib import Path

import pytest
import requests

from media_archive.errors import FetchError, InvalidMediaReferenceError
from media_archive.fetcher import MediaFetcher, check_media_url


class _FakeResponse:
    def __init__(self, chunks: list[bytes], status_error: Exception | None = None) -> None:
        self._chunks = chunks
        self._status_error = status_error

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, *_exc_info: object) -> None:
        return None

    def raise_for_status(self) -> None:
        if self._status_error is not None:
            raise self._status_error

    def iter_content(self, chunk_size: int = 1):
        yield from self._chunks


class _FakeSession:
    def __init__(self, response: _FakeResponse | None = None, error: Exception | None = None) -> None:
        self.headers: dict[str, str] = {}
        self.requests: list[tuple[str, float | None]] = []
        self._response = response
        self._error = error
        self.closed = False

    def get(self, url: str, stream: bool = False, timeout: float | None = None) -> _FakeResponse:
        self.requests.append((url, timeout))
        if self._error is not None:
            raise self._error
        assert self._response is not None
        return self._response

    def close(self) -> None:
        self.closed = True


def test_remote_download_streams_to_destination(tmp_path: Path) -> None:
    session = _FakeSession(_FakeResponse([b"abc", b"", b"def"]))
    fetcher = MediaFetcher(timeout=3.0, user_agent="media-archive/test", session=session)  # type: ignore[arg-type]
    destination = tmp_path / "temp_0.jpg"

    assert fetcher.fetch_to("https://pbs.example.com/media/cat.jpg", destination) == 6
    assert destination.read_bytes() == b"abcdef"
    assert session.requests == [("https://pbs.example.com/media/cat.jpg", 3.0)]
    assert session.headers["User-Agent"] == "media-archive/test"

    fetcher.close()
    assert session.closed


def test_http_errors_become_fetch_errors(tmp_path: Path) -> None:
    not_found = _FakeSession(_FakeResponse([], status_error=requests.HTTPError("404 Client Error")))
    offline = _FakeSession(error=requests.ConnectionError("connection refused"))

    with pytest.raises(FetchError, match="404"):
        MediaFetcher(session=not_found).fetch_to("https://x.example.com/a.jpg", tmp_path / "a")  # type: ignore[arg-type]
    with pytest.raises(FetchError, match="connection refused"):
        MediaFetcher(session=offline).fetch_to("https://x.example.com/b.jpg", tmp_path / "b")  # type: ignore[arg-type]


def test_empty_remote_body_is_a_fetch_error(tmp_path: Path) -> None:
    fetcher = MediaFetcher(session=_FakeSession(_FakeResponse([])))  # type: ignore[arg-type]

    with pytest.raises(FetchError, match="empty body"):
        fetcher.fetch_to("https://x.example.com/a.jpg", tmp_path / "a")


def test_local_file_urls_and_paths_are_copied(tmp_path: Path) -> None:
    source = tmp_path / "cat.jpg"
    source.write_bytes(b"jpeg bytes")
    fetcher = MediaFetcher(session=_FakeSession(), allow_local=True)  # type: ignore[arg-type]

    assert fetcher.fetch_to(source.as_uri(), tmp_path / "copy1") == 10
    assert fetcher.fetch_to(str(source), tmp_path / "copy2") == 10
    assert (tmp_path / "copy2").read_bytes() == b"jpeg bytes"


def test_unsupported_scheme_is_rejected() -> None:
    with pytest.raises(InvalidMediaReferenceError):
        check_media_url("ftp://files.example.com/cat.jpg")
    check_media_url("https://pbs.example.com/media/cat.jpg")


def test_fetch_error_survives_pickling() -> None:
    error = pickle.loads(pickle.dumps(FetchError("https://x.example.com/a.jpg", "timeout")))

    assert error.url == "https://x.example.com/a.jpg"
    assert error.reason == "timeout"


def test_local_references_are_refused_by_default(tmp_path: Path) -> None:
    source = tmp_path / "private.png"
    source.write_bytes(b"private bytes")
    fetcher = MediaFetcher(session=_FakeSession())  # type: ignore[arg-type]

    assert not fetcher.allow_local
    with pytest.raises(InvalidMediaReferenceError):
        fetcher.fetch_to(source.as_uri(), tmp_path / "copy1")
    with pytest.raises(InvalidMediaReferenceError):
        fetcher.fetch_to(str(source), tmp_path / "copy2")
    with pytest.raises(InvalidMediaReferenceError):
        check_media_url(source.as_uri())

    check_media_url(source.as_uri(), allow_local=True)
    assert not (tmp_path / "copy1").exists()
    assert not (tmp_path / "copy2").exists()
