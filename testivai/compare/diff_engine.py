"""Diff engine: pixel-level comparison of a capture against its baseline.

Uses Pillow to decode PNGs and numpy to classify every pixel at once. The
``threshold`` argument is used twice: as the per-pixel colour tolerance and as
the whole-image bound on the fraction of differing pixels.

Per-pixel rules:

- ``pixelmatch``: YIQ perceptual distance between the two colours (after
  blending alpha onto white), compared against ``35215 * threshold**2`` where
  35215 is the largest possible distance. Pixels that look like
  anti-aliasing in either image are not counted unless ``include_aa`` is set.
- ``channel``: the largest absolute RGBA channel difference, compared against
  ``threshold * 255``.

A diff image is always written: a faded grayscale copy of the baseline with
differing pixels painted red and ignored anti-aliased pixels painted yellow.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from PIL import Image, UnidentifiedImageError

from testivai.errors import (
    DimensionMismatchError,
    ImageNotFoundError,
    InvalidInputError,
    PersistenceError,
    VisualRegressionError,
)
from testivai.models.comparison import ComparisonResult
from testivai.models.config import Engine

logger = logging.getLogger(__name__)

MAX_YIQ_DELTA = 35215.0
DIFF_COLOR = (255, 0, 0)
AA_COLOR = (255, 255, 0)
FADE_ALPHA = 0.1


@dataclass
class ComparisonJob:
    name: str
    baseline_path: Path
    compare_path: Path
    diff_path: Path


def _blend_white(rgba: np.ndarray) -> np.ndarray:
    """Composite RGBA pixels over white, returning float RGB."""
    alpha = rgba[..., 3:4] / 255.0
    return 255.0 + (rgba[..., :3] - 255.0) * alpha


def _yiq(rgb: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    r, g, b = rgb[..., 0], rgb[..., 1], rgb[..., 2]
    y = r * 0.29889531 + g * 0.58662247 + b * 0.11448223
    i = r * 0.59597799 - g * 0.27417610 - b * 0.32180189
    q = r * 0.21147017 - g * 0.52261711 + b * 0.31114694
    return y, i, q


def yiq_delta(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Squared perceptual colour distance between two RGBA arrays."""
    y1, i1, q1 = _yiq(_blend_white(a))
    y2, i2, q2 = _yiq(_blend_white(b))
    dy, di, dq = y1 - y2, i1 - i2, q1 - q2
    return 0.5053 * dy * dy + 0.299 * di * di + 0.1957 * dq * dq


# 3x3 neighbourhood offsets, column by column
_NEIGHBOURS = [(dx, dy) for dx in (-1, 0, 1) for dy in (-1, 0, 1) if (dx, dy) != (0, 0)]


def _shift(a: np.ndarray, dx: int, dy: int, fill) -> np.ndarray:
    """``out[y, x] = a[y + dy, x + dx]``, with ``fill`` where that falls outside."""
    h, w = a.shape[:2]
    out = np.full_like(a, fill)
    out[max(0, -dy):h - max(0, dy), max(0, -dx):w - max(0, dx)] = (
        a[max(0, dy):h - max(0, -dy), max(0, dx):w - max(0, -dx)]
    )
    return out


def _edge(shape: tuple[int, ...]) -> np.ndarray:
    edge = np.zeros(shape[:2], dtype=bool)
    edge[0, :] = edge[-1, :] = edge[:, 0] = edge[:, -1] = True
    return edge


def _many_siblings(img: np.ndarray) -> np.ndarray:
    """Pixels with more than two identical neighbours (image edges count as one)."""
    inside = np.ones(img.shape[:2], dtype=bool)
    count = _edge(img.shape).astype(np.int64)
    for dx, dy in _NEIGHBOURS:
        count += _shift(inside, dx, dy, False) & np.all(img == _shift(img, dx, dy, 0.0), axis=-1)
    return count > 2


def antialiased(img: np.ndarray, other: np.ndarray) -> np.ndarray:
    """Pixels of ``img`` that look like anti-aliasing, as pixelmatch detects it.

    A pixel qualifies when at most two neighbours share its brightness, it has
    both a darker and a brighter neighbour, and the darkest or the brightest
    of those sits inside a flat area in both images.
    """
    y = _yiq(_blend_white(img))[0]
    inside = np.ones(y.shape, dtype=bool)
    flat = _many_siblings(img) & _many_siblings(other)
    zeroes = _edge(y.shape).astype(np.int64)
    deltas, flat_neighbours = [], []
    for dx, dy in _NEIGHBOURS:
        valid = _shift(inside, dx, dy, False)
        delta = np.where(valid, y - _shift(y, dx, dy, 0.0), 0.0)
        zeroes += valid & (delta == 0)
        deltas.append(delta)
        flat_neighbours.append(_shift(flat, dx, dy, False))

    deltas = np.stack(deltas)
    flat_neighbours = np.stack(flat_neighbours)
    darkest = np.take_along_axis(flat_neighbours, deltas.argmax(axis=0)[None], axis=0)[0]
    brightest = np.take_along_axis(flat_neighbours, deltas.argmin(axis=0)[None], axis=0)[0]
    return (zeroes <= 2) & (deltas.min(axis=0) < 0) & (deltas.max(axis=0) > 0) & (darkest | brightest)


class DiffEngine:
    """Compares two PNG images and writes a diff visualisation."""

    def __init__(self, engine: Engine = Engine.PIXELMATCH, include_aa: bool = False):
        self.engine = Engine(engine)
        self.include_aa = include_aa

    def compare(
        self,
        baseline_path: str | Path,
        compare_path: str | Path,
        diff_path: str | Path,
        threshold: float,
    ) -> ComparisonResult:
        """Compare ``compare_path`` against ``baseline_path``.

        Raises ImageNotFoundError if either image is missing and
        DimensionMismatchError if their sizes differ.
        """
        if not 0.0 <= threshold <= 1.0:
            raise InvalidInputError(f"threshold must be between 0 and 1, got {threshold}", component="DiffEngine")

        baseline_path = Path(baseline_path)
        compare_path = Path(compare_path)
        diff_path = Path(diff_path)

        if not baseline_path.exists():
            raise ImageNotFoundError("baseline", str(baseline_path))
        if not compare_path.exists():
            raise ImageNotFoundError("comparison", str(compare_path))

        baseline = self._load(baseline_path)
        current = self._load(compare_path)
        height, width = baseline.shape[:2]
        if baseline.shape != current.shape:
            raise DimensionMismatchError((width, height), (current.shape[1], current.shape[0]))

        mask, aa = self._classify(baseline, current, threshold)
        diff_count = int(mask.sum())
        total_pixels = width * height
        diff_percentage = diff_count / total_pixels if total_pixels else 0.0
        passed = diff_percentage <= threshold

        self._write_diff_image(baseline, mask, aa, diff_path)

        logger.info(
            "Compared %s: %d/%d pixels differ (%.4f%%), threshold=%.4f, passed=%s",
            baseline_path.stem, diff_count, total_pixels, diff_percentage * 100, threshold, passed,
        )
        return ComparisonResult(
            name=baseline_path.stem,
            baseline_path=str(baseline_path),
            compare_path=str(compare_path),
            diff_path=str(diff_path),
            passed=passed,
            diff_percentage=diff_percentage,
            threshold=threshold,
            width=width,
            height=height,
        )

    def different_pixels(self, baseline: np.ndarray, current: np.ndarray, threshold: float) -> np.ndarray:
        """Boolean mask of pixels that count as different."""
        return self._classify(baseline, current, threshold)[0]

    def _classify(
        self, baseline: np.ndarray, current: np.ndarray, threshold: float
    ) -> tuple[np.ndarray, np.ndarray]:
        """(counted, ignored anti-aliasing) masks."""
        if self.engine is Engine.CHANNEL:
            delta = np.abs(baseline - current).max(axis=-1)
            return delta > threshold * 255.0, np.zeros(delta.shape, dtype=bool)
        identical = np.all(baseline == current, axis=-1)
        exceeds = (yiq_delta(baseline, current) > MAX_YIQ_DELTA * threshold * threshold) & ~identical
        if self.include_aa or not exceeds.any():
            return exceeds, np.zeros_like(exceeds)
        aa = exceeds & (antialiased(baseline, current) | antialiased(current, baseline))
        return exceeds & ~aa, aa

    async def compare_batch(self, jobs: list[ComparisonJob], threshold: float, max_workers: int = 4) -> list[ComparisonResult]:
        """Run many comparisons on a bounded pool of worker threads.

        A job that fails is returned as a failed result carrying the error, so
        the rest of the batch still completes. Results keep the job order.
        """
        semaphore = asyncio.Semaphore(max(1, max_workers))

        async def run_one(job: ComparisonJob) -> ComparisonResult:
            async with semaphore:
                try:
                    result = await asyncio.to_thread(
                        self.compare, job.baseline_path, job.compare_path, job.diff_path, threshold,
                    )
                except (VisualRegressionError, OSError) as e:
                    logger.warning("Comparison failed for %s: %s", job.name, e)
                    return failed_result(job, threshold, e)
                return result.model_copy(update={"name": job.name})

        return list(await asyncio.gather(*(run_one(job) for job in jobs)))

    def run_batch(self, jobs: list[ComparisonJob], threshold: float, max_workers: int = 4) -> list[ComparisonResult]:
        """Synchronous entry point for compare_batch.

        Starts its own event loop, so it cannot be called while one is
        running; await compare_batch there instead.
        """
        return asyncio.run(self.compare_batch(jobs, threshold, max_workers))

    def _load(self, path: Path) -> np.ndarray:
        try:
            with Image.open(path) as img:
                return np.asarray(img.convert("RGBA"), dtype=np.float64)
        except (UnidentifiedImageError, OSError) as e:
            raise InvalidInputError(f"Cannot decode image {path}: {e}", component="DiffEngine") from e

    def _write_diff_image(self, baseline: np.ndarray, mask: np.ndarray, aa: np.ndarray, diff_path: Path) -> None:
        y, _, _ = _yiq(_blend_white(baseline))
        alpha = baseline[..., 3] / 255.0
        gray = 255.0 + (y - 255.0) * FADE_ALPHA * alpha
        out = np.repeat(np.clip(gray, 0, 255)[..., None], 3, axis=-1).astype(np.uint8)
        out[aa] = AA_COLOR
        out[mask] = DIFF_COLOR
        try:
            diff_path.parent.mkdir(parents=True, exist_ok=True)
            Image.fromarray(out).save(diff_path, "PNG")
        except OSError as e:
            raise PersistenceError(f"Failed to write diff image {diff_path}: {e}") from e
        logger.debug("Saved diff image to %s", diff_path)


def failed_result(job: ComparisonJob, threshold: float, error: Exception) -> ComparisonResult:
    """A result recording that the comparison itself could not be done."""
    message = error.message if isinstance(error, VisualRegressionError) else str(error)
    return ComparisonResult(
        name=job.name,
        baseline_path=str(job.baseline_path),
        compare_path=str(job.compare_path),
        diff_path=None,
        passed=False,
        diff_percentage=0.0,
        threshold=threshold,
        error=message,
    )
