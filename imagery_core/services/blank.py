from __future__ import annotations

import io
import logging
from typing import List, Tuple

from PIL import Image

logger = logging.getLogger(__name__)

# Tuned against placeholder tiles the providers return with HTTP 200; revisit if the
# providers change what they serve for uncovered dates.
BLANK_MIN_BYTES = 100
BLANK_MIN_DIMENSION = 10
BLANK_SAMPLE_GRID = 8
BLANK_WHITE_LEVEL = 245
BLANK_BLACK_LEVEL = 10
BLANK_UNIFORM_RATIO = 0.9
BLANK_VARIANCE_THRESHOLD = 30.0


def is_blank_tile(payload: bytes) -> bool:
    """Return ``True`` when ``payload`` decodes to a uniform placeholder image."""

    if len(payload) < BLANK_MIN_BYTES:
        return True

    try:
        with Image.open(io.BytesIO(payload)) as image:
            rgb = image.convert("RGB")
    except OSError as exc:
        logger.debug("Unable to decode tile for blank check: %s", exc)
        return False

    width, height = rgb.size
    if width < BLANK_MIN_DIMENSION or height < BLANK_MIN_DIMENSION:
        return True

    samples = _sample_grid(rgb)
    white = sum(1 for r, g, b in samples if min(r, g, b) > BLANK_WHITE_LEVEL)
    black = sum(1 for r, g, b in samples if max(r, g, b) < BLANK_BLACK_LEVEL)
    count = len(samples)

    if white / count > BLANK_UNIFORM_RATIO:
        logger.debug("Blank tile: %d/%d white samples", white, count)
        return True
    if black / count > BLANK_UNIFORM_RATIO:
        logger.debug("Blank tile: %d/%d black samples", black, count)
        return True

    variance = _mean_channel_variance(samples)
    if variance < BLANK_VARIANCE_THRESHOLD:
        logger.debug("Blank tile: sampled colour variance %.2f", variance)
        return True
    return False


def _sample_grid(image: Image.Image) -> List[Tuple[int, int, int]]:
    width, height = image.size
    points: List[Tuple[int, int, int]] = []
    for row in range(BLANK_SAMPLE_GRID):
        y = int((row + 0.5) * height / BLANK_SAMPLE_GRID)
        for column in range(BLANK_SAMPLE_GRID):
            x = int((column + 0.5) * width / BLANK_SAMPLE_GRID)
            points.append(image.getpixel((x, y)))
    return points


def _mean_channel_variance(samples: List[Tuple[int, int, int]]) -> float:
    count = len(samples)
    total = 0.0
    for channel in range(3):
        values = [sample[channel] for sample in samples]
        mean = sum(values) / count
        total += sum((value - mean) ** 2 for value in values) / count
    return total / 3
