"""
Definition / sharpness analysis.

Three luminance statistics, each mapped to a "human-likelihood" in [0, 1]:

1. **Nitidez** - mean absolute vertical pixel-to-pixel difference.  Camera
   photos carry optical softness; very crisp transitions are typical of
   rendered content, so low gradients score high.
2. **Variabilidad** - tonal spread, ``1 - clamp(stddev / 128)`` inverted.
3. **Complejidad** - normalised Shannon entropy through a Gaussian bump
   centred at 0.6, penalising both flat and noise-like images.

The weighted sum (0.50 / 0.30 / 0.20) is reported on a 0-10 scale.
"""
import logging
import math
from typing import Any, Dict, Optional

import numpy as np

from .base import AnalysisContext, ImageAnalyzer
from .primitives import clamp01, histogram_entropy, to_luminance
from .types import AnalyzerResult, Confidence, DecodedImage

logger = logging.getLogger(__name__)


class DefinitionAnalyzer(ImageAnalyzer):
    """Sharpness, tonal variability and complexity analyzer."""

    name = "ANALIZADOR_DEFINICION"
    version = "3.0.0"

    # Single-pixel rows or columns get the zero-definition result
    MIN_DIMENSION = 1

    THRESHOLDS = {
        'low_sharpness': 8,
        'high_sharpness': 15,
        'entropy_peak': 0.6,
        'entropy_width': 15,
    }

    WEIGHTS = {
        'nitidez': 0.50,
        'variabilidad': 0.30,
        'complejidad': 0.20,
    }

    # (minimum score, label), checked top-down
    BANDS = [
        (8.0, "Muy Alta Probabilidad Humano"),
        (6.0, "Alta Probabilidad Humano"),
        (4.0, "Indeterminado / Mixto"),
        (2.0, "Alta Probabilidad IA"),
        (float("-inf"), "Muy Alta Probabilidad IA"),
    ]

    def _analyze(self, image: DecodedImage, ctx: AnalysisContext) -> AnalyzerResult:
        px = image.pixels
        meta = image.metadata
        metadata: Dict[str, Any] = {
            'formato': meta.format,
            'ancho': px.width,
            'alto': px.height,
            'densidad': meta.density,
        }

        if px.width <= 1 or px.height <= 1:
            return AnalyzerResult(
                name=self.name,
                version=self.version,
                score=0.0,
                confidence=Confidence.LOW,
                details={
                    'gradientePromedioBruto': None,
                    'nitidezEvaluada': "Indeterminable",
                    'evaluacionScore': "Indeterminado (Dimensiones)",
                    'mensajeScore': "Dimensiones insuficientes para análisis.",
                    'mensaje': "Dimensiones insuficientes para análisis.",
                },
                metadata=metadata,
            )

        gray = to_luminance(px.samples, px.width, px.height, px.channels, ctx.cancel)
        if gray.size == 0:
            raise ValueError("Luminance conversion produced no data")

        fallbacks = 0
        ctx.cancel.check()

        sharpness = self._sharpness(gray)
        if sharpness['error']:
            fallbacks += 1
        ctx.cancel.check()

        uniformity = self._uniformity(gray)
        s_variability = 0.5 if uniformity is None else 1 - uniformity
        if uniformity is None:
            fallbacks += 1
        ctx.cancel.check()

        complexity = self._complexity(gray)
        if complexity is None:
            s_complexity = 0.5
            fallbacks += 1
        else:
            s_complexity = math.exp(
                -self.THRESHOLDS['entropy_width'] * (complexity - self.THRESHOLDS['entropy_peak']) ** 2
            )

        weighted = clamp01(
            sharpness['human'] * self.WEIGHTS['nitidez']
            + s_variability * self.WEIGHTS['variabilidad']
            + s_complexity * self.WEIGHTS['complejidad']
        )
        score = round(weighted * 10, 1)
        band = self._band(score)
        label = sharpness['label']
        gradient = sharpness['gradient']

        metadata['complejidad'] = None if complexity is None else round(complexity, 4)
        metadata['uniformidad'] = None if uniformity is None else round(uniformity, 4)
        metadata['subscores'] = {
            'nitidez': round(sharpness['human'], 4),
            'variabilidad': round(s_variability, 4),
            'complejidad': round(s_complexity, 4),
        }

        return AnalyzerResult(
            name=self.name,
            version=self.version,
            score=score,
            confidence=Confidence.HIGH if fallbacks == 0 else Confidence.MEDIUM,
            details={
                'gradientePromedioBruto': None if gradient is None else round(gradient, 2),
                'nitidezEvaluada': label,
                'evaluacionScore': band,
                'mensajeScore': f"Análisis completado. Nitidez: {label}. Score: {score}/10 ({band}).",
            },
            metadata=metadata,
        )

    def _sharpness(self, gray: np.ndarray) -> Dict[str, Any]:
        """Mean absolute vertical gradient mapped to a human-likelihood."""
        try:
            diffs = np.abs(np.diff(gray.astype(np.int16), axis=0))
            gradient = float(diffs.mean()) if diffs.size else 0.0
            low, high = self.THRESHOLDS['low_sharpness'], self.THRESHOLDS['high_sharpness']
            if gradient >= high:
                human, label = 0.1, "Alta"
            elif gradient < low:
                human, label = 0.9, "Baja"
            else:
                fraction = (gradient - low) / (high - low)
                human, label = 0.9 - fraction * 0.8, "Moderada"
            return {'gradient': gradient, 'human': human, 'label': label, 'error': False}
        except Exception as e:
            logger.warning(f"Sharpness computation failed: {e}")
            return {'gradient': None, 'human': 0.5, 'label': "Indeterminable", 'error': True}

    def _uniformity(self, gray: np.ndarray) -> Optional[float]:
        try:
            sigma = float(np.std(gray.astype(np.float64)))
            return clamp01(1 - sigma / 128, fallback=None)
        except Exception as e:
            logger.warning(f"Tonal variability computation failed: {e}")
            return None

    def _complexity(self, gray: np.ndarray) -> Optional[float]:
        try:
            return histogram_entropy(gray)
        except Exception as e:
            logger.warning(f"Entropy computation failed: {e}")
            return None

    def _band(self, score: float) -> str:
        for minimum, label in self.BANDS:
            if score >= minimum:
                return label
        return self.BANDS[-1][1]
