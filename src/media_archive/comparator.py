"""Luminance-based image similarity scoring.

The score is the percentage of pixels whose brightness differs by more than a
tolerance once both images are normalized to grayscale and scaled to the same
size. Color is ignored, so recompressions and resized copies of the same
photograph score low while unrelated images score high.
"""

from __future__ import annotations

from pathlib import Path
from typing import Final

import numpy as np
from PIL import Image, UnidentifiedImageError
from PIL.Image import Resampling

from media_archive.errors import ImageDecodeError

DEFAULT_BRIGHTNESS_TOLERANCE: Final[int] = 16
DEFAULT_MAX_SIDE: Final[int] = 1200

# Rows scored per step before the early-exit check.
_CHUNK_ROWS: Final[int] = 32


def _get_resample_filter() -> Resampling:
    return Resampling.BILINEAR


def _open_grayscale(path: Path) -> Image.Image:
    try:
        with Image.open(path) as handle:
            handle.load()
            return handle.convert("L")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise ImageDecodeError(f"cannot decode image {path}: {exc}") from exc


def load_luminance(path: Path, max_side: int = DEFAULT_MAX_SIDE) -> np.ndarray:
    """Load ``path`` as a 2-D luminance array, downscaled so neither side exceeds ``max_side``.

    Raises:
        ImageDecodeError: The file is missing or not a decodable image.
    """

    gray = _open_grayscale(path)
    if max_side > 0 and max(gray.size) > max_side:
        gray.thumbnail((max_side, max_side), resample=_get_resample_filter())
    return np.asarray(gray, dtype=np.int16)


def load_luminance_like(path: Path, shape: tuple[int, ...]) -> np.ndarray:
    """Load ``path`` as luminance resized to exactly ``shape`` (rows, columns)."""

    gray = _open_grayscale(path)
    rows, cols = int(shape[0]), int(shape[1])
    if gray.size != (cols, rows):
        gray = gray.resize((cols, rows), resample=_get_resample_filter())
    return np.asarray(gray, dtype=np.int16)


def mismatch_percentage(
    candidate: np.ndarray,
    reference: np.ndarray,
    *,
    tolerance: int = DEFAULT_BRIGHTNESS_TOLERANCE,
    early_exit: float | None = None,
) -> float:
    """Score two same-shape luminance arrays, returning a mismatch percentage in ``[0, 100]``.

    When ``early_exit`` is given the scan stops as soon as the running
    mismatch exceeds it; the returned partial score is then still above
    ``early_exit``, which is all a caller deciding "match or not" needs.
    """

    if candidate.shape != reference.shape:
        raise ValueError(f"shape mismatch: {candidate.shape} != {reference.shape}")

    total = int(candidate.size)
    if total == 0:
        return 100.0

    mismatched = 0
    for start in range(0, candidate.shape[0], _CHUNK_ROWS):
        stop = start + _CHUNK_ROWS
        diff = np.abs(candidate[start:stop] - reference[start:stop])
        mismatched += int(np.count_nonzero(diff > tolerance))
        if early_exit is not None and mismatched * 100.0 / total > early_exit:
            break

    return round(mismatched * 100.0 / total, 2)


def compare_images(
    candidate_path: Path,
    reference_path: Path,
    *,
    tolerance: int = DEFAULT_BRIGHTNESS_TOLERANCE,
    max_side: int = DEFAULT_MAX_SIDE,
    early_exit: float | None = None,
) -> float:
    """Return the mismatch percentage between two image files.

    The reference is scaled to the candidate's (normalized) size before
    scoring.
    """

    candidate = load_luminance(candidate_path, max_side)
    reference = load_luminance_like(reference_path, candidate.shape)
    return mismatch_percentage(candidate, reference, tolerance=tolerance, early_exit=early_exit)


__all__ = [
    "DEFAULT_BRIGHTNESS_TOLERANCE",
    "DEFAULT_MAX_SIDE",
    "compare_images",
    "load_luminance",
    "load_luminance_like",
    "mismatch_percentage",
]
