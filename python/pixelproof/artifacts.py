"""
Artifact / blockiness analysis on the luminance channel.

Computes global luminance statistics and an 8x8 grid blockiness metric,
derives heuristic anomaly flags (excessive smoothness, GAN/diffusion
histogram signature, checkerboard, inconsistent edges or regions, extreme
contrast, JPEG blockiness) and scores the *absence* of each flag.

Also emits the fixed 10-element feature vector consumed by the external
classifier.  Its order is a public contract versioned with ``version``:

    0 width / 8000           5 min(w, h) / max(w, h)
    1 height / 8000          6 entropy / 8
    2 dpi / 1200             7 1 - entropy / 8
    3 dpi / 1200             8 mean gradient / 80
    4 dpi / 1200             9 1 - score / 10
"""
import logging
from typing import Any, Dict

import numpy as np

from .base import AnalysisContext, ImageAnalyzer
from .primitives import clamp01, histogram, scale_to_unity, shannon_entropy, to_luminance
from .types import AnalyzerResult, Confidence, DecodedImage

logger = logging.getLogger(__name__)


class ArtifactAnalyzer(ImageAnalyzer):
    """Compression-block and generative-artifact detector."""

    name = "ANALIZADOR_ARTEFACTOS"
    version = "3.0.0"

    # Normalisation ceilings for the feature vector
    MAX_DIMENSION = 8000
    MAX_DPI = 1200
    MAX_GRADIENT = 80
    MAX_ENTROPY = 8

    THRESHOLDS = {
        'natural_gradient_min': 10,
        'smooth_entropy': 7.0,
        'smooth_stddev': 50,
        'gan_gradient': 11,
        'gan_peaks_min': 10,
        'gan_peaks_max': 60,
        'gan_entropy': 7.1,
        'checker_peaks': 8,
        'checker_blockiness': 10,
        'checker_entropy': 6.85,
        'blockiness_moderate': 10,
        'blockiness_high': 12,
        'edge_gradient': 20,
        'edge_stddev': 65,
        'contrast_stddev': 70,
        'region_mean_diff': 28,
        'peak_fraction': 0.06,
    }

    WEIGHTS = {
        'suavidadIA': 0.28,
        'patronesGAN': 0.20,
        'checkerboardGAN': 0.12,
        'bordes': 0.10,
        'texturas': 0.10,
        'contraste': 0.08,
        'blockinessMod': 0.07,
        'blockinessHigh': 0.05,
    }

    FINDINGS = {
        'suavidadIA': "Detectada suavidad excesiva y complejidad anómala, característica común en imágenes generadas por IA.",
        'patronesGAN': "Patrones espectrales de luminancia anómalos coincidentes con GAN/diffusion.",
        'checkerboardGAN': "Checkerboard/falsos contornos detectados, típico de IA (GAN/diffusion).",
        'bordes': "Se observan bordes con contraste o variaciones abruptas en la luminancia.",
        'texturas': "Detectada posible inconsistencia en la luminosidad promedio entre grandes regiones.",
        'contraste': "El contraste general de la luminancia es extremadamente alto.",
    }

    def _analyze(self, image: DecodedImage, ctx: AnalysisContext) -> AnalyzerResult:
        px = image.pixels
        luma = to_luminance(px.samples, px.width, px.height, px.channels, ctx.cancel)
        if luma.size != px.width * px.height or luma.size == 0:
            raise ValueError("Luminance conversion failed or produced inconsistent data")

        ctx.cancel.check()
        stats = self._luminance_stats(luma)
        ctx.cancel.check()
        blockiness = self._blockiness(luma, ctx)
        entropy = shannon_entropy(stats['histogram'])
        ctx.cancel.check()

        flags = self._flags(luma, stats, blockiness, entropy)
        t = self.THRESHOLDS

        score_01 = sum(weight * (0 if flags[key] else 1) for key, weight in self.WEIGHTS.items())
        score = round(score_01 * 10, 1)

        density = image.metadata.density
        dpi_feature = scale_to_unity(density, self.MAX_DPI) if density else 0.5
        width, height = px.width, px.height
        feature_vector = [
            scale_to_unity(width, self.MAX_DIMENSION),
            scale_to_unity(height, self.MAX_DIMENSION),
            dpi_feature,
            dpi_feature,
            dpi_feature,
            min(width, height) / max(width, height) if width > 0 and height > 0 else 0.5,
            scale_to_unity(entropy, self.MAX_ENTROPY),
            clamp01(1 - scale_to_unity(entropy, self.MAX_ENTROPY)),
            scale_to_unity(stats['gradient'], self.MAX_GRADIENT),
            clamp01(1 - score / 10),
        ]

        findings = [self.FINDINGS[k] for k in self.FINDINGS if flags[k]]
        if flags['blockinessMod']:
            findings.append(
                f"Detectados artefactos de compresión tipo bloque moderados (blockiness: {blockiness:.1f})."
            )
        if flags['blockinessHigh']:
            findings.append(
                f"Detectados artefactos de compresión tipo bloque altos (blockiness: {blockiness:.1f})."
            )
        if not findings:
            findings = ["No se identificaron artefactos relevantes ni características de IA/GAN."]

        if flags['blockinessMod']:
            blockiness_text = f"Moderada ({blockiness:.1f})"
        elif flags['blockinessHigh']:
            blockiness_text = f"Alta ({blockiness:.1f})"
        else:
            blockiness_text = f"No significativa ({blockiness:.1f})"

        if score >= 8:
            overall = "Sin alertas de artefactos ni patrones IA/GAN."
            headline = "Imagen con patrones naturales o sin indicios fuertes de IA/GAN."
        elif score >= 5:
            overall = "Algunos artefactos o características IA/GAN detectados; se recomienda cautela."
            headline = "Se detectan indicios compatibles con IA/GAN o compresión fuerte."
        else:
            overall = "Indicios notables de artefactos o fuerte sospecha de IA/GAN; revisión detallada sugerida."
            headline = "Patrones o artefactos típicos de IA/GAN/diffusion presentes."

        synthetic_hint = (
            flags['patronesRepetitivosIA'] or flags['suavidadIA']
            or flags['patronesGAN'] or flags['checkerboardGAN']
        )
        montage_hint = flags['texturas'] or (flags['bordes'] and not flags['suavidadIA'])

        # Blockiness needs at least two blocks per axis
        enough_blocks = width >= 16 and height >= 16

        return AnalyzerResult(
            name=self.name,
            version=self.version,
            score=score,
            confidence=Confidence.HIGH if enough_blocks else Confidence.LOW,
            details={
                'puntuacionArtefactos': f"{score}/10",
                'dimensiones': f"{width}x{height} px",
                'resolucion': f"{density:g} DPI" if density else "No disponible",
                'formato': image.metadata.format or "No disponible",
                'blockinessDetectada': blockiness_text,
                'evaluacionGeneral': overall,
                'mensajePrincipal': headline,
                'indiciosFotomontaje': "Posible" if montage_hint else "Bajo",
                'indiciosGeneracionIA': "Alto" if synthetic_hint else "Medio",
            },
            metadata={
                'hallazgosClave': findings,
                'flags': {k: bool(v) for k, v in flags.items()},
                'EntropiaLuminancia_raw': round(entropy, 3),
                'GradientePromedioLuminancia_raw': round(stats['gradient'], 2),
                'MediaLuminancia_raw': round(stats['mean'], 2),
                'DesviacionEstandarLuminancia_raw': round(stats['stddev'], 2),
                'Blockiness_raw': round(blockiness, 2),
                'PicosAltosY_raw': stats['peaks'],
                'thresholds': dict(t),
            },
            feature_vector=feature_vector,
        )

    def _luminance_stats(self, luma: np.ndarray) -> Dict[str, Any]:
        """Histogram, mean, stddev, mean 2-D gradient and histogram peak count."""
        total = luma.size
        hist = histogram(luma)
        values = np.arange(256, dtype=np.float64)
        mean = float(np.dot(hist, values) / total)
        stddev = float(np.sqrt(np.dot(hist, (values - mean) ** 2) / total))

        # Horizontal and vertical differences at pixels with both neighbours
        data = luma.astype(np.int16)
        core = data[:-1, :-1]
        if core.size:
            grad_h = np.abs(core - data[:-1, 1:])
            grad_v = np.abs(core - data[1:, :-1])
            gradient = float((grad_h.sum() + grad_v.sum()) / (2 * core.size))
        else:
            gradient = 0.0

        peaks = int(np.sum(hist > total * self.THRESHOLDS['peak_fraction']))
        return {'histogram': hist, 'mean': mean, 'stddev': stddev, 'gradient': gradient, 'peaks': peaks}

    def _blockiness(self, luma: np.ndarray, ctx: AnalysisContext, block_size: int = 8) -> float:
        """Mean absolute luminance step across 8x8 block boundaries."""
        h, w = luma.shape
        if w < block_size * 2 or h < block_size * 2:
            return 0.0
        data = luma.astype(np.int16)
        total = 0.0
        count = 0
        # Columns x and x+1 for x = 7, 15, ... < w - 1
        cols = np.arange(block_size - 1, w - 1, block_size)
        if cols.size:
            total += float(np.abs(data[:, cols] - data[:, cols + 1]).sum())
            count += h * cols.size
        ctx.cancel.check()
        rows = np.arange(block_size - 1, h - 1, block_size)
        if rows.size:
            total += float(np.abs(data[rows, :] - data[rows + 1, :]).sum())
            count += w * rows.size
        return total / count if count else 0.0

    def _flags(self, luma: np.ndarray, stats: Dict[str, Any], blockiness: float,
               entropy: float) -> Dict[str, bool]:
        t = self.THRESHOLDS
        gradient, stddev, peaks = stats['gradient'], stats['stddev'], stats['peaks']

        smooth = gradient < t['natural_gradient_min'] and (
            entropy > t['smooth_entropy'] or stddev > t['smooth_stddev']
        )
        checkerboard = peaks < t['checker_peaks'] and blockiness < t['checker_blockiness'] \
            and entropy > t['checker_entropy']
        gan = gradient < t['gan_gradient'] and t['gan_peaks_min'] < peaks < t['gan_peaks_max'] \
            and entropy > t['gan_entropy']
        repetitive = gan or checkerboard or (blockiness < t['blockiness_high'] and smooth)
        moderate_blocks = t['blockiness_moderate'] < blockiness < t['blockiness_high']
        high_blocks = blockiness >= t['blockiness_high']
        edges = (gradient > t['edge_gradient'] or stddev > t['edge_stddev']) and not smooth
        contrast = stddev > t['contrast_stddev']

        return {
            'suavidadIA': smooth,
            'patronesGAN': gan,
            'checkerboardGAN': checkerboard,
            'bordes': edges,
            'texturas': self._regional_inconsistency(luma),
            'contraste': contrast,
            'blockinessMod': moderate_blocks,
            'blockinessHigh': high_blocks,
            'patronesRepetitivosIA': repetitive,
        }

    def _regional_inconsistency(self, luma: np.ndarray) -> bool:
        """Upper vs lower half (in raster order) mean luminance differ by more than 28."""
        try:
            flat = luma.reshape(-1).astype(np.float64)
            half = flat.size // 2
            if half == 0 or flat.size - half == 0:
                return False
            return bool(abs(flat[:half].mean() - flat[half:].mean()) > self.THRESHOLDS['region_mean_diff'])
        except Exception as e:
            logger.warning(f"Regional luminance comparison failed: {e}")
            return False
