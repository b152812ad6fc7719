"""CLI entrypoint that runs the ingest pipeline over a feed file.

The feed is a JSONL file of stream payloads, standing in for the live
streaming connection. The pipeline loads the persisted stores, processes
every photo in the feed, optionally keeps serving the read-only API, and
persists the stores on exit.
"""

from __future__ import annotations

from pathlib import Path

import typer

from utils.logging import configure_logging, get_logger
from media_archive.app import ArchiveApplication
from media_archive.config import Settings, load_settings
from media_archive.feed import read_feed
from media_archive.webui import create_app

LOGGER = get_logger(__name__)


def _apply_cli_overrides(settings: Settings, host: str | None, port: int | None, workers: int | None) -> Settings:
    if host:
        settings.web.host = host
    if port is not None and port > 0:
        settings.web.port = port
    if workers is not None and workers > 0:
        settings.comparison.workers = workers
    return settings


def main(
    feed: Path | None = typer.Option(
        None,
        "--feed",
        file_okay=True,
        dir_okay=False,
        exists=True,
        readable=True,
        help="JSONL file of stream payloads to ingest.",
    ),
    settings_path: Path | None = typer.Option(
        None,
        "--settings",
        help="Settings YAML. Defaults to $MEDIA_ARCHIVE_SETTINGS or config/settings.yaml.",
    ),
    serve: bool = typer.Option(
        False,
        "--serve/--no-serve",
        help="Keep running and serve the read-only API after the feed is ingested.",
    ),
    host: str | None = typer.Option(None, "--host", help="Override web.host from settings.yaml."),
    port: int | None = typer.Option(None, "--port", help="Override web.port from settings.yaml."),
    workers: int | None = typer.Option(
        None,
        "--workers",
        help="Override comparison.workers from settings.yaml.",
    ),
) -> None:
    """Ingest a feed into the image archive and optionally serve the API."""

    settings = _apply_cli_overrides(load_settings(settings_path), host=host, port=port, workers=workers)
    configure_logging(settings.logging.level, settings.logging.log_dir, force=True)

    application = ArchiveApplication(settings)
    application.start()
    try:
        if feed is not None:
            submitted = 0
            for post, media in read_feed(feed):
                application.submit(post, media)
                submitted += 1
            LOGGER.info("feed_submitted", extra={"feed": str(feed), "items": submitted})
            application.wait_until_drained()

        if serve:
            LOGGER.info("api_serving", extra={"host": settings.web.host, "port": settings.web.port})
            create_app(application).run(host=settings.web.host, port=settings.web.port, use_reloader=False)
    except KeyboardInterrupt:
        LOGGER.info("run_interrupted", extra={})
    finally:
        application.stop()

    LOGGER.info("run_complete", extra=application.status())


def cli() -> None:
    typer.run(main)


if __name__ == "__main__":
    cli()


__all__ = ["cli", "main"]
