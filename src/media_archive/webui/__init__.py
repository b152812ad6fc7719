"""Read-only Flask API over the archive and its post associations."""

from __future__ import annotations

from typing import Any

from flask import Flask, abort, jsonify, send_file

from utils.logging import get_logger
from media_archive.app import ArchiveApplication

LOGGER = get_logger(__name__, extra={"component": "webui"})


def create_app(application: ArchiveApplication) -> Flask:
    """Build a Flask app serving archived images and their posts.

    The routes only read through accessor queries; nothing here mutates the
    archive or the stores.
    """

    app = Flask(__name__)

    @app.route("/api/image/<filename>")
    def image_file(filename: str) -> Any:
        """Serve the raw bytes of a canonical image."""

        path = application.archive.image_path(filename)
        if path is None:
            abort(404)

        try:
            return send_file(path.resolve())
        except FileNotFoundError as exc:
            LOGGER.warning("image_file_missing", extra={"image": filename, "path": str(path), "error": str(exc)})
            abort(404, description="Image is archived but its file is missing on disk.")

    @app.route("/api/image-posts")
    def image_posts() -> Any:
        """List ``[filename, [post, ...]]`` pairs in archive order."""

        payload = [
            [image.filename, [post.to_record() for post in posts]]
            for image, posts in application.image_posts()
        ]
        return jsonify(payload)

    @app.route("/api/status")
    def status() -> Any:
        return jsonify(application.status())

    return app


__all__ = ["create_app"]
