from __future__ import annotations

from pathlib import Path

import pytest

from media_archive.config import Settings


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in ``tmp_path`` with an in-process comparison pool."""

    data_dir = tmp_path / "data"
    settings = Settings()
    settings.storage.data_dir = str(data_dir)
    settings.storage.images_dir = str(data_dir / "images")
    settings.storage.images_document = str(data_dir / "images.json")
    settings.storage.posts_document = str(data_dir / "posts.json")
    settings.storage.image_posts_document = str(data_dir / "image_posts.json")
    settings.comparison.use_processes = False
    settings.ingest.poll_interval_seconds = 0.01
    settings.ingest.allow_local_files = True
    settings.persistence.interval_seconds = 60.0
    settings.logging.log_dir = str(tmp_path / "log")
    return settings


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    """Directory holding media files referenced through ``file://`` URLs."""

    path = tmp_path / "source"
    path.mkdir()
    return path
