"""Configuration loader and typed settings for the media archive."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

SETTINGS_ENV_VAR = "MEDIA_ARCHIVE_SETTINGS"
DEFAULT_SETTINGS_PATH = Path("config") / "settings.yaml"

COMPARISON_FAILURE_POLICIES = ("novel", "drop")


@dataclass
class StorageConfig:
    """Filesystem locations for canonical images and the persisted documents."""

    data_dir: str = "data"
    images_dir: str = "data/images"
    images_document: str = "data/images.json"
    posts_document: str = "data/posts.json"
    image_posts_document: str = "data/image_posts.json"

    @property
    def images_path(self) -> Path:
        return Path(self.images_dir)

    @property
    def document_paths(self) -> dict[str, Path]:
        return {
            "images": Path(self.images_document),
            "posts": Path(self.posts_document),
            "image_posts": Path(self.image_posts_document),
        }


@dataclass
class ComparisonConfig:
    """Similarity comparison thresholds and worker pool sizing.

    Scores are mismatch percentages in ``[0, 100]``. A candidate matches an
    archived image when its score is strictly below ``mismatch_threshold``.
    The comparator stops early once the score exceeds
    ``mismatch_threshold + early_exit_slack``.
    """

    mismatch_threshold: float = 25.0
    early_exit_slack: float = 5.0
    brightness_tolerance: int = 16
    max_side: int = 1200
    workers: int = 1
    use_processes: bool = True
    failure_policy: str = "novel"

    @property
    def early_exit_threshold(self) -> float:
        return self.mismatch_threshold + self.early_exit_slack


@dataclass
class IngestConfig:
    """Knobs for the single-consumer ingest loop and media fetching."""

    poll_interval_seconds: float = 0.25
    fetch_timeout_seconds: float | None = None
    user_agent: str = "media-archive/0.1"
    # Copy file:// URLs and bare paths from local disk. Dev and tests only.
    allow_local_files: bool = False


@dataclass
class PersistenceConfig:
    """Snapshot cadence for the in-memory stores."""

    interval_seconds: float = 10.0
    atomic_writes: bool = True


@dataclass
class WebConfig:
    """Bind address for the read-only HTTP API."""

    host: str = "localhost"
    port: int = 3333


@dataclass
class LoggingConfig:
    level: str = "INFO"
    log_dir: str = "log"


@dataclass
class Settings:
    """Top-level application settings."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    comparison: ComparisonConfig = field(default_factory=ComparisonConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    web: WebConfig = field(default_factory=WebConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _settings_path(settings_path: Path | str | None) -> Path:
    """Explicit path, then ``$MEDIA_ARCHIVE_SETTINGS``, then ``config/settings.yaml`` under the working directory."""

    chosen = settings_path or os.getenv(SETTINGS_ENV_VAR) or DEFAULT_SETTINGS_PATH
    return Path(chosen).expanduser().resolve()


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def load_settings(settings_path: Path | str | None = None) -> Settings:
    """Load application settings from a YAML file, falling back to defaults.

    A missing or malformed file yields a :class:`Settings` instance populated
    with default values; keys with the wrong type are ignored individually.
    """

    path = _settings_path(settings_path)
    settings = Settings()

    if not path.exists() or not path.is_file():
        return settings

    raw: Any
    with path.open("r", encoding="utf-8") as fp:
        try:
            raw = yaml.safe_load(fp) or {}
        except yaml.YAMLError:
            return settings

    if not isinstance(raw, dict):
        return settings

    storage_raw = _as_dict(raw.get("storage"))
    storage_cfg = settings.storage
    for key in ("data_dir", "images_dir", "images_document", "posts_document", "image_posts_document"):
        if isinstance(storage_raw.get(key), str):
            setattr(storage_cfg, key, storage_raw[key])

    comparison_raw = _as_dict(raw.get("comparison"))
    comparison_cfg = settings.comparison
    if _is_number(comparison_raw.get("mismatch_threshold")):
        comparison_cfg.mismatch_threshold = float(comparison_raw["mismatch_threshold"])
    if _is_number(comparison_raw.get("early_exit_slack")):
        comparison_cfg.early_exit_slack = float(comparison_raw["early_exit_slack"])
    if isinstance(comparison_raw.get("brightness_tolerance"), int):
        comparison_cfg.brightness_tolerance = comparison_raw["brightness_tolerance"]
    if isinstance(comparison_raw.get("max_side"), int):
        comparison_cfg.max_side = comparison_raw["max_side"]
    if isinstance(comparison_raw.get("workers"), int) and comparison_raw["workers"] > 0:
        comparison_cfg.workers = comparison_raw["workers"]
    if isinstance(comparison_raw.get("use_processes"), bool):
        comparison_cfg.use_processes = comparison_raw["use_processes"]
    if comparison_raw.get("failure_policy") in COMPARISON_FAILURE_POLICIES:
        comparison_cfg.failure_policy = comparison_raw["failure_policy"]

    ingest_raw = _as_dict(raw.get("ingest"))
    ingest_cfg = settings.ingest
    if _is_number(ingest_raw.get("poll_interval_seconds")):
        ingest_cfg.poll_interval_seconds = float(ingest_raw["poll_interval_seconds"])
    if _is_number(ingest_raw.get("fetch_timeout_seconds")):
        ingest_cfg.fetch_timeout_seconds = float(ingest_raw["fetch_timeout_seconds"])
    if isinstance(ingest_raw.get("user_agent"), str):
        ingest_cfg.user_agent = ingest_raw["user_agent"]
    if isinstance(ingest_raw.get("allow_local_files"), bool):
        ingest_cfg.allow_local_files = ingest_raw["allow_local_files"]

    persistence_raw = _as_dict(raw.get("persistence"))
    persistence_cfg = settings.persistence
    if _is_number(persistence_raw.get("interval_seconds")):
        persistence_cfg.interval_seconds = float(persistence_raw["interval_seconds"])
    if isinstance(persistence_raw.get("atomic_writes"), bool):
        persistence_cfg.atomic_writes = persistence_raw["atomic_writes"]

    web_raw = _as_dict(raw.get("web"))
    if isinstance(web_raw.get("host"), str):
        settings.web.host = web_raw["host"]
    if isinstance(web_raw.get("port"), int):
        settings.web.port = web_raw["port"]

    logging_raw = _as_dict(raw.get("logging"))
    if isinstance(logging_raw.get("level"), str):
        settings.logging.level = logging_raw["level"]
    if isinstance(logging_raw.get("log_dir"), str):
        settings.logging.log_dir = logging_raw["log_dir"]

    return settings


__all__ = [
    "COMPARISON_FAILURE_POLICIES",
    "ComparisonConfig",
    "DEFAULT_SETTINGS_PATH",
    "IngestConfig",
    "LoggingConfig",
    "PersistenceConfig",
    "SETTINGS_ENV_VAR",
    "Settings",
    "StorageConfig",
    "WebConfig",
    "load_settings",
]
