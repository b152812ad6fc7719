"""Turn streamed post payloads into (post, media) pairs for the ingest queue."""

from __future__ import annotations

import json
import time
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from utils.logging import get_logger
from media_archive.fetcher import REMOTE_SCHEMES
from media_archive.models import UNKNOWN_AUTHOR, MediaReference, Post

LOGGER = get_logger(__name__, extra={"component": "feed"})

PHOTO_MEDIA_TYPE = "photo"


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    return []


def _optional_int(value: Any) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def parse_stream_payload(payload: Mapping[str, Any], now: float | None = None) -> list[tuple[Post, MediaReference]]:
    """Map one stream event to ``(Post, MediaReference)`` pairs.

    Expects the v2 stream shape: ``data`` with ``id``, ``author_id`` and
    ``text``; ``includes.users[0].name``; and ``includes.media`` entries with
    ``type``, ``url``, ``width`` and ``height``. Only ``photo`` media with an
    ``http``/``https`` URL are returned; any other URL is logged as
    ``media_url_rejected`` and skipped. Missing author fields fall back to
    :data:`UNKNOWN_AUTHOR` and missing text to an empty string.

    Raises:
        ValueError: The payload has no post id.
    """

    data = _as_dict(payload.get("data"))
    post_id = data.get("id")
    if post_id is None or str(post_id) == "":
        raise ValueError("stream payload has no data.id")

    includes = _as_dict(payload.get("includes"))
    users = _as_list(includes.get("users"))
    author_name = _as_dict(users[0]).get("name") if users else None

    post = Post(
        author_id=str(data.get("author_id") or UNKNOWN_AUTHOR),
        post_id=str(post_id),
        author_name=str(author_name or UNKNOWN_AUTHOR),
        text=str(data.get("text") or ""),
        timestamp=time.time() if now is None else now,
    )

    pairs: list[tuple[Post, MediaReference]] = []
    for raw_media in _as_list(includes.get("media")):
        media = _as_dict(raw_media)
        url = media.get("url")
        if media.get("type") != PHOTO_MEDIA_TYPE or not isinstance(url, str) or not url:
            continue
        if urlparse(url).scheme.lower() not in REMOTE_SCHEMES:
            LOGGER.warning("media_url_rejected", extra={"post_key": post.key, "url": url})
            continue
        pairs.append(
            (
                post,
                MediaReference(
                    url=url,
                    width=_optional_int(media.get("width")),
                    height=_optional_int(media.get("height")),
                    media_type=PHOTO_MEDIA_TYPE,
                ),
            )
        )

    if not pairs:
        LOGGER.debug("text_post_skipped", extra={"post_key": post.key})
    return pairs


def read_feed(path: Path) -> Iterator[tuple[Post, MediaReference]]:
    """Yield pairs from a JSONL file with one stream payload per line.

    Blank lines are ignored; malformed lines are logged and skipped.
    """

    with path.open("r", encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            text = line.strip()
            if not text:
                continue
            try:
                payload = json.loads(text)
                if not isinstance(payload, dict):
                    raise ValueError("payload is not a JSON object")
                pairs = parse_stream_payload(payload)
            except ValueError as exc:
                LOGGER.warning("feed_line_invalid", extra={"path": str(path), "line": line_number, "error": str(exc)})
                continue
            yield from pairs


__all__ = ["PHOTO_MEDIA_TYPE", "parse_stream_payload", "read_feed"]
