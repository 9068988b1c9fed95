"""
Signal primitives shared by every analyzer.

Pure functions over 8-bit pixel buffers: luminance conversion, Sobel
gradients, histogram entropy, Gaussian pyramid, block extraction, SSIM and
lag-1 autocorrelation.  Also hosts the range helpers (:func:`clamp01`,
:func:`scale_to_unity`) so that every score leaving an analyzer is
normalised in one place.
"""
import logging
import math
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .types import CancellationToken

logger = logging.getLogger(__name__)

BT709 = np.array([0.2126, 0.7152, 0.0722])
SSIM_C1 = (0.01 * 255) ** 2
SSIM_C2 = (0.03 * 255) ** 2

SOBEL_X = np.array([[-1, 0, 1], [-2, 0, 2], [-1, 0, 1]], dtype=np.float64)
SOBEL_Y = np.array([[-1, -2, -1], [0, 0, 0], [1, 2, 1]], dtype=np.float64)

# Rows converted per pass; bounds the float64 working set on large images
LUMA_STRIP_ROWS = 256


def clamp(value, low: float, high: float, fallback: float) -> float:
    """Clamp ``value`` to [low, high]; None, NaN and inf become ``fallback``."""
    try:
        v = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(v):
        return fallback
    return min(high, max(low, v))


def clamp01(value, fallback: float = 0.5) -> float:
    return clamp(value, 0.0, 1.0, fallback)


def scale_to_unity(value, maximum, fallback: float = 0.5) -> float:
    """Normalise ``value / maximum`` to [0, 1]."""
    try:
        v, m = float(value), float(maximum)
    except (TypeError, ValueError):
        return fallback
    if not (math.isfinite(v) and math.isfinite(m)) or m <= 0:
        return fallback
    return min(1.0, max(0.0, v / m))


def round_half_up(values: np.ndarray) -> np.ndarray:
    return np.floor(np.asarray(values, dtype=np.float64) + 0.5)


def to_luminance(pixels, width: int, height: int, channels: int,
                 cancel: Optional[CancellationToken] = None) -> np.ndarray:
    """BT.709 luminance, one byte per pixel, shape (height, width).

    Returns an empty array when fewer than three channels are supplied or
    the buffer is shorter than ``width * height * channels``.
    """
    flat = np.asarray(pixels, dtype=np.uint8).reshape(-1)
    needed = width * height * channels
    if channels < 3 or width <= 0 or height <= 0 or flat.size < needed:
        logger.warning(
            f"Luminance conversion skipped: w={width} h={height} c={channels} len={flat.size}"
        )
        return np.zeros(0, dtype=np.uint8)
    view = flat[:needed].reshape(height, width, channels)
    luma = np.empty((height, width), dtype=np.uint8)
    for r0 in range(0, height, LUMA_STRIP_ROWS):
        if cancel is not None:
            cancel.check()
        rgb = view[r0:r0 + LUMA_STRIP_ROWS, :, :3].astype(np.float64)
        luma[r0:r0 + LUMA_STRIP_ROWS] = np.clip(round_half_up(rgb @ BT709), 0, 255)
    return luma


def sobel_valid(block: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Sobel responses for the interior of ``block``, shape (h - 2, w - 2).

    Matches :func:`sobel` at every pixel whose 3x3 neighbourhood lies inside
    the block.
    """
    data = np.asarray(block, dtype=np.float64)
    h, w = data.shape
    gx = np.zeros((max(0, h - 2), max(0, w - 2)), dtype=np.float64)
    gy = np.zeros_like(gx)
    if gx.size == 0:
        return gx, gy
    for ky in range(3):
        for kx in range(3):
            window = data[ky:ky + h - 2, kx:kx + w - 2]
            if SOBEL_X[ky, kx]:
                gx += SOBEL_X[ky, kx] * window
            if SOBEL_Y[ky, kx]:
                gy += SOBEL_Y[ky, kx] * window
    return gx, gy


def sobel_at(buffer: np.ndarray, xs: np.ndarray, ys: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Sobel responses at interior points ``(xs[i], ys[i])``, 1 <= x < w - 1."""
    xs = np.asarray(xs, dtype=np.intp)
    ys = np.asarray(ys, dtype=np.intp)
    gx = np.zeros(xs.shape, dtype=np.float64)
    gy = np.zeros(xs.shape, dtype=np.float64)
    for ky in range(3):
        for kx in range(3):
            values = buffer[ys + ky - 1, xs + kx - 1].astype(np.float64)
            if SOBEL_X[ky, kx]:
                gx += SOBEL_X[ky, kx] * values
            if SOBEL_Y[ky, kx]:
                gy += SOBEL_Y[ky, kx] * values
    return gx, gy


def sobel(buffer: np.ndarray, x: int, y: int) -> Tuple[float, float, float, float]:
    """Sobel response at one pixel: (gx, gy, magnitude, angle in degrees).

    Neighbours that fall outside the image contribute nothing.
    """
    h, w = buffer.shape
    gx = gy = 0.0
    for ky in range(-1, 2):
        for kx in range(-1, 2):
            px, py = x + kx, y + ky
            if 0 <= px < w and 0 <= py < h:
                v = float(buffer[py, px])
                gx += v * SOBEL_X[ky + 1, kx + 1]
                gy += v * SOBEL_Y[ky + 1, kx + 1]
    return gx, gy, math.hypot(gx, gy), math.degrees(math.atan2(gy, gx))


def histogram(buffer: np.ndarray) -> np.ndarray:
    return np.bincount(np.asarray(buffer, dtype=np.uint8).reshape(-1), minlength=256)


def shannon_entropy(hist: np.ndarray) -> float:
    """Shannon entropy in bits of a histogram of counts."""
    total = float(np.sum(hist))
    if total <= 0:
        return 0.0
    p = np.asarray(hist, dtype=np.float64) / total
    p = p[p > 0]
    return float(-np.sum(p * np.log2(p)))


def histogram_entropy(buffer: np.ndarray) -> float:
    """Shannon entropy of the 256-bin histogram, divided by 8 to land in [0, 1]."""
    if np.asarray(buffer).size == 0:
        return 0.0
    return clamp01(shannon_entropy(histogram(buffer)) / 8.0, fallback=0.0)


def downscale_by_2(buffer: np.ndarray) -> np.ndarray:
    """2x2 box filter; odd trailing rows/columns are dropped."""
    h, w = buffer.shape
    h2, w2 = h // 2, w // 2
    blocks = np.asarray(buffer[:h2 * 2, :w2 * 2], dtype=np.float64).reshape(h2, 2, w2, 2)
    return round_half_up(blocks.mean(axis=(1, 3))).astype(np.uint8)


def gaussian_pyramid(buffer: np.ndarray, levels: int, min_size: int = 10) -> List[np.ndarray]:
    """Progressively half-sized copies of ``buffer``, original first.

    Stops early when the next level would drop below ``min_size`` pixels on
    either side; the original level is always present.
    """
    pyramid = [buffer]
    current = buffer
    while len(pyramid) < levels:
        h, w = current.shape
        if h // 2 < min_size or w // 2 < min_size:
            break
        current = downscale_by_2(current)
        pyramid.append(current)
    return pyramid


def extract_block(buffer: np.ndarray, x: int, y: int, size: int) -> Optional[np.ndarray]:
    """Square block with top-left corner (x, y), or None if it leaves the image."""
    h, w = buffer.shape
    if x < 0 or y < 0 or x + size > w or y + size > h:
        return None
    return buffer[y:y + size, x:x + size]


def ssim(block_a: Optional[np.ndarray], block_b: Optional[np.ndarray], window: int = 5,
         c1: float = SSIM_C1, c2: float = SSIM_C2) -> float:
    """Single-window SSIM between two equally sized blocks.

    Returns 0 for missing or size-mismatched inputs.
    """
    if block_a is None or block_b is None:
        return 0.0
    a = np.asarray(block_a, dtype=np.float64).reshape(-1)
    b = np.asarray(block_b, dtype=np.float64).reshape(-1)
    if a.size != b.size or a.size != window * window:
        return 0.0
    mu_a, mu_b = a.mean(), b.mean()
    var_a = np.mean((a - mu_a) ** 2)
    var_b = np.mean((b - mu_b) ** 2)
    cov = np.mean((a - mu_a) * (b - mu_b))
    numerator = (2 * mu_a * mu_b + c1) * (2 * cov + c2)
    denominator = (mu_a ** 2 + mu_b ** 2 + c1) * (var_a + var_b + c2)
    if denominator == 0:
        return 1.0 if numerator == 0 else 0.0
    return max(0.0, float(numerator / denominator))


def autocorrelation(series: Sequence[float]) -> float:
    """Lag-1 autocorrelation of the series after zero-mean, unit-variance scaling."""
    x = np.asarray(series, dtype=np.float64).reshape(-1)
    if x.size < 2:
        return 0.0
    std = x.std()
    z = (x - x.mean()) / (std if std > 0 else 1.0)
    return float(np.dot(z[:-1], z[1:]) / (z.size - 1))
