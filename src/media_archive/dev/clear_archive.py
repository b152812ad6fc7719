"""CLI to wipe the archive: canonical image files, posts, and associations."""

from __future__ import annotations

from pathlib import Path

import typer

from utils.logging import configure_logging, get_logger
from media_archive.app import ArchiveApplication
from media_archive.config import load_settings

LOGGER = get_logger(__name__)


def main(
    settings_path: Path | None = typer.Option(
        None,
        "--settings",
        help="Settings YAML. Defaults to $MEDIA_ARCHIVE_SETTINGS or config/settings.yaml.",
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Delete every archived image and empty all persisted documents."""

    settings = load_settings(settings_path)
    configure_logging(settings.logging.level, settings.logging.log_dir, force=True)

    application = ArchiveApplication(settings)
    try:
        application.prepare()
        if not yes:
            typer.confirm(
                f"Delete {len(application.archive)} archived images and {len(application.posts)} posts?",
                abort=True,
            )
        removed = application.clear_all()
        LOGGER.info(
            "archive_clear_complete",
            extra={"removed_images": removed, "images_dir": str(application.archive.images_dir)},
        )
    finally:
        application.pool.shutdown()
        application.fetcher.close()


def cli() -> None:
    typer.run(main)


if __name__ == "__main__":
    cli()


__all__ = ["cli", "main"]
