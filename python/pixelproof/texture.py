"""
Texture / pattern analysis.

Ten texture statistics sampled from the luminance buffer:

    0 complejidadTextura      5 contrasteMicro (inverted)
    1 uniformidadTextura (inv) 6 escalaTextural
    2 patronesRepetitivos (inv) 7 anisotropiaTextural (inverted)
    3 variacionLocal          8 rugosidadEstadistica
    4 densidadBordes          9 entropiaGlobal

Windowed statistics are computed at random positions (at most 500 samples)
with a quadrant illumination check that biases sampling towards dark
quadrants when the lighting is strongly uneven.  The repetitive-pattern
score is the strongest self-similarity (5x5 SSIM against horizontally
shifted blocks) over a three-level Gaussian pyramid.

    score = 10 * sum(weight_i * (1 - p_i if inverted else p_i))

High scores mean organic, natural textures.
"""
import logging
import math
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import numpy as np

from .base import AnalysisContext, ImageAnalyzer
from .primitives import (
    clamp,
    extract_block,
    gaussian_pyramid,
    histogram,
    shannon_entropy,
    sobel_at,
    sobel_valid,
    ssim,
    to_luminance,
)
from .types import AnalysisCancelled, AnalyzerResult, CancellationToken, Confidence, DecodedImage

logger = logging.getLogger(__name__)

PARAMETER_NAMES = [
    'complejidadTextura',
    'uniformidadTextura',
    'patronesRepetitivos',
    'variacionLocal',
    'densidadBordes',
    'contrasteMicro',
    'escalaTextural',
    'anisotropiaTextural',
    'rugosidadEstadistica',
    'entropiaGlobal',
]


@dataclass
class WindowStats:
    """Statistics of one square window around a sample point."""
    media: float = 0.0
    desviacion_normalizada: float = 0.0
    desviacion_media: float = 0.0
    gradiente_sobel: float = 0.0
    rugosidad_sobel: float = 0.0
    entropia_local: float = 0.0


@dataclass
class Illumination:
    """Quadrant lighting balance: max/min mean ratio and per-quadrant map."""
    desbalance: float
    mapa: List[float]


class _Sampler:
    """Luminance buffer plus the random source and cancellation token.

    Sobel responses are computed only around sampled points, never for the
    whole frame.
    """

    def __init__(self, luma: np.ndarray, rng: np.random.Generator, cancel: CancellationToken):
        self.luma = luma
        self.height, self.width = luma.shape
        self.rng = rng
        self.cancel = cancel

    def gradients(self, xs: np.ndarray, ys: np.ndarray):
        """Sobel (gx, gy) at interior points."""
        return sobel_at(self.luma, xs, ys)

    def uniform(self, low: float, span: float) -> int:
        """floor(low + U[0, 1) * span)."""
        return int(math.floor(low + self.rng.random() * span))

    def window(self, cx: int, cy: int, radius: int) -> WindowStats:
        h, w = self.height, self.width
        x0, x1 = max(0, cx - radius), min(w, cx + radius + 1)
        y0, y1 = max(0, cy - radius), min(h, cy + radius + 1)
        if x0 >= x1 or y0 >= y1:
            return WindowStats()

        values = self.luma[y0:y1, x0:x1].astype(np.float64)
        mean = values.mean()
        deviation = math.sqrt(max(0.0, float(np.mean(values * values)) - mean * mean))
        entropy = shannon_entropy(histogram(self.luma[y0:y1, x0:x1])) / 8

        # Gradients only where the full 3x3 neighbourhood exists
        gx0, gx1 = max(x0, 1), min(x1, w - 1)
        gy0, gy1 = max(y0, 1), min(y1, h - 1)
        if gx0 < gx1 and gy0 < gy1:
            gx, gy = sobel_valid(self.luma[gy0 - 1:gy1 + 1, gx0 - 1:gx1 + 1])
            mags = np.hypot(gx, gy)
            grad_mean = float(mags.mean())
            grad_std = math.sqrt(max(0.0, float(np.mean(mags * mags)) - grad_mean * grad_mean))
        else:
            grad_mean = grad_std = 0.0

        divisor = mean or 1
        return WindowStats(
            media=mean / 255,
            desviacion_normalizada=deviation / divisor / 0.5,
            desviacion_media=deviation / divisor,
            gradiente_sobel=min(1.0, grad_mean / 100),
            rugosidad_sobel=min(1.0, grad_std / 50),
            entropia_local=min(1.0, entropy),
        )


class TextureAnalyzer(ImageAnalyzer):
    """Multi-scale texture and repetitive-pattern analyzer."""

    name = "ANALISIS_DE_TEXTURA"
    version = "3.2.2"

    WEIGHTS = [0.18, 0.12, 0.20, 0.10, 0.04, 0.05, 0.02, 0.08, 0.06, 0.15]
    INVERTED = (1, 2, 5, 7)

    THRESHOLDS = {
        'max_samples': 500,
        'illumination_bias': 1.4,
        'illumination_adjust': 2.0,
        'high_resolution_pixels': 10_000_000,
        'pyramid_levels': 3,
        'min_shift': 3,
        'ssim_block': 5,
        'significant_gradient': 20,
        'min_significant_gradients': 50,
        'angle_bins': 18,
    }

    MESSAGES = [
        (7.0, "La imagen presenta texturas con características predominantemente naturales y orgánicas."),
        (5.0, "La imagen muestra texturas con algunas irregularidades o características que podrían "
              "sugerir origen sintético. Requiere análisis cuidadoso."),
        (float("-inf"), "La imagen presenta patrones texturales con fuertes indicios de artificialidad, "
                        "sugestivos de generación por IA."),
    ]

    def _analyze(self, image: DecodedImage, ctx: AnalysisContext) -> AnalyzerResult:
        px = image.pixels
        luma = to_luminance(px.samples, px.width, px.height, px.channels, ctx.cancel)
        if luma.size == 0:
            raise ValueError("Luminance conversion produced no data")

        width, height = px.width, px.height
        window = max(5, min(25, int(math.sqrt(width * height / 1_000_000) * 3)))
        max_samples = min(self.THRESHOLDS['max_samples'], (width * height) // 2000)
        logger.debug(f"Texture window {window}x{window}, up to {max_samples} samples")

        sampler = _Sampler(luma, ctx.rng(), ctx.cancel)
        params, raw_correlation = self._parameters(sampler, window, max_samples)

        if width * height > self.THRESHOLDS['high_resolution_pixels']:
            logger.info("Applying high-resolution texture correction")
            params[0] = max(0.2, params[0])
            params[1] = max(0.1, params[1])
            params[2] = max(0.05, params[2])
            params[6] = max(0.15, params[6])
            params[7] = min(0.85, params[7])

        partial = 0.0
        for i, value in enumerate(params):
            partial += (1 - value if i in self.INVERTED else value) * self.WEIGHTS[i]
        score = round(partial * 10, 2)

        # Windowed statistics need at least one window that fits the image
        sampled = max_samples > 0 and width > 2 * window and height > 2 * window

        return AnalyzerResult(
            name=self.name,
            version=self.version,
            score=score,
            confidence=Confidence.HIGH if sampled else Confidence.LOW,
            details={
                'mensaje': self.message(score),
                'ventana': window,
                'muestrasMaximas': max_samples,
            },
            metadata={
                **dict(zip(PARAMETER_NAMES, params)),
                'correlacionPatronesBruta': raw_correlation,
            },
            feature_vector=list(params),
        )

    @classmethod
    def message(cls, score: Optional[float]) -> str:
        if score is None:
            return "Análisis fallido o no disponible."
        for minimum, text in cls.MESSAGES:
            if score >= minimum:
                return text
        return cls.MESSAGES[-1][1]

    def _parameters(self, s: _Sampler, window: int, max_samples: int) -> Tuple[List[float], Optional[float]]:
        t = self.THRESHOLDS
        light = self.detect_illumination(s)
        uneven = light.desbalance > t['illumination_adjust']
        d = light.desbalance
        params = [0.0] * 10

        params[0] = max(0.01, self._guarded('complexity', lambda: self._windowed(
            s, window, max_samples, lambda st: st.desviacion_media * 0.6 + st.entropia_local * 0.4, light,
        )))
        if uneven:
            params[0] *= min(1.3, 1 + (d - 1) * 0.2)

        params[1] = clamp(
            self._guarded('uniformity', lambda: self._uniformity(s, window, max_samples, light)),
            0.01, 0.99, 0.5,
        )
        if uneven:
            params[1] *= max(0.7, 1 - (d - 1) * 0.15)

        raw_correlation = self._guarded('repetitive patterns', lambda: self.pattern_correlation(s), fallback=None)
        params[2] = 0.5 if raw_correlation is None else self.map_correlation(raw_correlation)

        params[3] = max(0.01, self._guarded('local variation', lambda: self._windowed(
            s, max(2, window // 3), max_samples,
            lambda st: min(1.0, st.desviacion_normalizada * 0.5 + st.gradiente_sobel * 0.5), light,
        )))

        params[4] = max(0.01, self._guarded('edge density', lambda: self._edge_density(s)))
        params[5] = self._guarded('micro-contrast', lambda: self._micro_contrast(s))

        scale = self._guarded('textural scale', lambda: self._windowed(
            s, window, max_samples, lambda st: st.desviacion_normalizada * (st.media * 255) / 15, light,
        ))
        params[6] = max(0.01, clamp(scale, 0.0, 1.0, 0.0))

        params[7] = self._guarded('anisotropy', lambda: self._anisotropy(s))
        if uneven:
            params[7] *= max(0.8, 1 - (d - 1) * 0.1)

        params[8] = max(0.01, self._guarded('roughness', lambda: self._windowed(
            s, window, max_samples / 2, lambda st: st.rugosidad_sobel, light,
        )))

        params[9] = self._guarded('global entropy', lambda: self._global_entropy(s))

        params = [clamp(round(p, 4), 0.0, 1.0, 0.0) for p in params]
        return params, None if raw_correlation is None else round(raw_correlation, 4)

    @staticmethod
    def _guarded(label: str, compute: Callable[[], float], fallback: Optional[float] = 0.5) -> Optional[float]:
        """Run one texture statistic; unexpected failures return ``fallback``."""
        try:
            return compute()
        except AnalysisCancelled:
            raise
        except Exception as e:
            logger.warning(f"Texture {label} computation failed: {e}")
            return fallback

    def detect_illumination(self, s: _Sampler, samples_per_quadrant: int = 50) -> Illumination:
        """Compare mean luminance of the four quadrants from random samples."""
        w, h = s.width, s.height
        quadrants = [
            (0, 0, w // 2, h // 2),
            (w // 2, 0, w, h // 2),
            (0, h // 2, w // 2, h),
            (w // 2, h // 2, w, h),
        ]
        means = []
        for x1, y1, x2, y2 in quadrants:
            total, count = 0.0, 0
            for _ in range(samples_per_quadrant):
                x = s.uniform(x1, x2 - x1)
                y = s.uniform(y1, y2 - y1)
                if 0 <= x < w and 0 <= y < h:
                    total += float(s.luma[y, x])
                    count += 1
            means.append(total / count if count else 0.0)

        max_mean = max(means)
        lit = [m for m in means if m > 0]
        min_mean = max(min(lit) if lit else 255.0, 1e-6)
        if max_mean > 0:
            mapa = [m / max_mean for m in means]
        else:
            mapa = [0.0 if m == 0 else 1.0 for m in means]
        return Illumination(desbalance=max_mean / min_mean, mapa=mapa)

    def _windowed(self, s: _Sampler, radius: int, max_samples: float,
                  transform: Callable[[WindowStats], float], light: Illumination) -> float:
        """Mean of ``transform`` over random windows fully inside the image."""
        w, h = s.width, s.height
        target = min(max_samples, max(100, (w * h) // 2000))
        total, effective = 0.0, 0

        def sample(x: int, y: int) -> None:
            nonlocal total, effective
            if radius <= x < w - radius and radius <= y < h - radius:
                total += transform(s.window(x, y, radius))
                effective += 1

        if light.desbalance > self.THRESHOLDS['illumination_bias'] and len(light.mapa) == 4:
            for idx, level in enumerate(light.mapa):
                if 0 < level < 0.5:
                    factor = 1.5
                elif level > 0.8:
                    factor = 0.7
                else:
                    factor = 1.0
                quota = max(1, int(target * factor / 4))
                x1, x2 = (w // 2, w) if idx % 2 == 1 else (0, w // 2)
                y1, y2 = (h // 2, h) if idx >= 2 else (0, h // 2)
                for _ in range(quota):
                    if effective >= target:
                        break
                    s.cancel.check()
                    sample(s.uniform(x1, x2 - x1), s.uniform(y1, y2 - y1))
        else:
            for _ in range(math.ceil(target)):
                if effective >= target:
                    break
                s.cancel.check()
                sample(s.uniform(0, w), s.uniform(0, h))

        if effective == 0:
            logger.warning("No effective texture samples taken")
            return 0.0
        return total / effective

    def _uniformity(self, s: _Sampler, radius: int, max_samples: int, light: Illumination) -> float:
        """1 - 1.8 * coefficient of variation of regional window contrast."""
        w, h = s.width, s.height
        regions = min(9, max(4, int(math.sqrt(w * h / 40000))))
        cols = int(math.sqrt(regions))
        rows = math.ceil(regions / cols)
        region_w, region_h = w // cols, h // rows
        per_region = max(3, int(max_samples / regions / 5))
        correct = light.desbalance > self.THRESHOLDS['illumination_bias'] and len(light.mapa) == 4

        regional = []
        for r in range(regions):
            rx = (r % cols) * w // cols
            ry = (r // cols) * h // rows
            total, count = 0.0, 0
            for _ in range(per_region):
                s.cancel.check()
                sx = rx + radius + s.uniform(0, max(0, region_w - 2 * radius))
                sy = ry + radius + s.uniform(0, max(0, region_h - 2 * radius))
                if not (radius <= sx < w - radius and radius <= sy < h - radius):
                    continue
                st = s.window(sx, sy, radius)
                corrected = st.desviacion_normalizada * (st.media * 255 or 1)
                if correct:
                    quadrant = (1 if sy >= h / 2 else 0) * 2 + (1 if sx >= w / 2 else 0)
                    level = light.mapa[quadrant]
                    if 0 < level < 0.7:
                        corrected *= min(1.3, 1 / level)
                total += corrected
                count += 1
            if count:
                regional.append(total / count)

        if len(regional) < 2:
            return 0.5
        values = np.asarray(regional)
        mean = float(values.mean())
        cv = float(values.std()) / (mean or 1)
        return min(0.99, max(0.01, 1 - min(1.0, cv * 1.8)))

    def pattern_correlation(self, s: _Sampler) -> float:
        """Strongest shifted-block SSIM over the pyramid, before mapping.

        Level weighting (1 - 0.15 * level) and the 0.8 damping of
        near-perfect matches are applied; images under 10px on a side
        yield 0.
        """
        t = self.THRESHOLDS
        if s.width < 10 or s.height < 10:
            logger.warning("Image too small for the Gaussian pyramid; repetitive patterns not computed")
            return 0.0
        pyramid = gaussian_pyramid(s.luma, t['pyramid_levels'])

        best = 0.0
        for level, data in enumerate(pyramid):
            s.cancel.check()
            lh, lw = data.shape
            shifts = [
                max(t['min_shift'], int(lw * 0.05)),
                max(t['min_shift'], int(lw * 0.15)),
            ]
            for dx in (d for d in shifts if d < lw / 2):
                if lw - dx <= 5:
                    continue
                correlation, samples = self._shifted_similarity(data, dx, s.cancel)
                if samples > 20:
                    weighted = correlation * (1 - 0.15 * level)
                    if correlation > 0.95:
                        weighted *= 0.8
                    best = max(best, weighted)

        logger.debug(f"Repetitive pattern correlation before mapping: {best}")
        return best

    @staticmethod
    def map_correlation(correlation: float) -> float:
        """Map a raw shifted-block correlation onto the repetitive-pattern parameter."""
        return min(1.0, max(0.01, max(0.0, correlation) ** 1.5))

    def _shifted_similarity(self, data: np.ndarray, dx: int, cancel: CancellationToken):
        block = self.THRESHOLDS['ssim_block']
        h, w = data.shape
        step_y = max(1, h // 30)
        step_x = max(1, (w - dx) // 50)
        total, samples = 0.0, 0
        for y in range(0, h - block, step_y):
            cancel.check()
            for x in range(0, w - dx - block, step_x):
                original = extract_block(data, x, y, block)
                shifted = extract_block(data, x + dx, y, block)
                if original is None or shifted is None:
                    continue
                total += ssim(original, shifted, block)
                samples += 1
        return (total / samples if samples else 0.0), samples

    def _edge_density(self, s: _Sampler) -> float:
        w, h = s.width, s.height
        if w < 3 or h < 3:
            return 0.1
        samples = min(20000, max(100, (w * h) // 10))
        s.cancel.check()
        xs = np.floor(1 + s.rng.random(samples) * (w - 2)).astype(np.intp)
        ys = np.floor(1 + s.rng.random(samples) * (h - 2)).astype(np.intp)
        gx, gy = s.gradients(xs, ys)
        mean_magnitude = float(np.hypot(gx, gy).mean())
        return max(0.01, min(1.0, mean_magnitude / 70))

    def _micro_contrast(self, s: _Sampler, samples: int = 200) -> float:
        """1 - mean 3x3 standard deviation / 40."""
        w, h = s.width, s.height
        if w < 3 or h < 3:
            return 0.5
        s.cancel.check()
        cx = np.floor(1 + s.rng.random(samples) * (w - 2)).astype(np.intp)
        cy = np.floor(1 + s.rng.random(samples) * (h - 2)).astype(np.intp)
        offsets = np.arange(-1, 2)
        ys = cy[:, None, None] + offsets[None, :, None]
        xs = cx[:, None, None] + offsets[None, None, :]
        windows = s.luma[ys, xs].reshape(samples, 9).astype(np.float64)
        means = windows.mean(axis=1)
        variances = np.maximum(0.0, np.mean(windows * windows, axis=1) - means * means)
        contrast = float(np.sqrt(variances).mean())
        return max(0.01, min(0.99, 1 - min(1.0, contrast / 40)))

    def _anisotropy(self, s: _Sampler) -> float:
        """1 - normalised entropy of the orientation histogram of strong gradients."""
        t = self.THRESHOLDS
        w, h = s.width, s.height
        if w < 3 or h < 3:
            return 0.5
        samples = min(1000, max(100, (w * h) // 500))
        s.cancel.check()
        xs = np.floor(1 + s.rng.random(samples) * (w - 2)).astype(np.intp)
        ys = np.floor(1 + s.rng.random(samples) * (h - 2)).astype(np.intp)
        gx, gy = s.gradients(xs, ys)
        strong = np.hypot(gx, gy) > t['significant_gradient']
        if int(strong.sum()) < t['min_significant_gradients']:
            return 0.5

        angles = np.degrees(np.arctan2(gy[strong], gx[strong]))
        angles = np.where(angles < 0, angles + 180, angles)
        angles = np.minimum(angles, 179.9)
        bins = np.bincount((angles // 10).astype(np.intp), minlength=t['angle_bins'])[:t['angle_bins']]
        if bins.sum() == 0:
            return 0.5
        normalised = shannon_entropy(bins) / math.log2(t['angle_bins'])
        return min(0.99, max(0.01, 1 - normalised))

    def _global_entropy(self, s: _Sampler) -> float:
        step = max(1, (s.width * s.height) // 50000)
        sampled = s.luma.reshape(-1)[::step]
        if sampled.size == 0:
            return 0.1
        return max(0.01, min(1.0, shannon_entropy(histogram(sampled)) / 8))
