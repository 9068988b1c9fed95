"""Tests for TextureAnalyzer."""

import io

import numpy as np
import pytest
from PIL import Image

from pixelproof.texture import PARAMETER_NAMES, TextureAnalyzer, _Sampler
from pixelproof.types import AnalysisConfig, CancellationToken, Confidence


def _encode(arr: np.ndarray) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(arr).save(buf, format="PNG")
    return buf.getvalue()


def _stripes(w: int = 200, h: int = 200, period: int = 10) -> np.ndarray:
    """Perfectly periodic vertical stripes."""
    x = np.arange(w)
    row = np.where((x // (period // 2)) % 2 == 0, 30, 220).astype(np.uint8)
    return np.repeat(np.tile(row, (h, 1))[..., None], 3, axis=2)


class TestTextureUniformGray:
    def test_low_naturalness(self, sample_png_bytes):
        result = TextureAnalyzer().analyze(sample_png_bytes, config=AnalysisConfig(seed=1))
        assert result.score < 5.0
        assert result.score == pytest.approx(1.04, abs=0.01)

    def test_repetitive_pattern_discounted(self, sample_png_bytes):
        result = TextureAnalyzer().analyze(sample_png_bytes, config=AnalysisConfig(seed=1))
        # raw correlation 1.0 -> 0.8 discount -> 0.8 ** 1.5
        assert result.metadata["patronesRepetitivos"] == pytest.approx(0.7155, abs=1e-4)

    def test_raw_correlation_exposed(self, sample_png_bytes):
        meta = TextureAnalyzer().analyze(sample_png_bytes, config=AnalysisConfig(seed=1)).metadata
        assert meta["correlacionPatronesBruta"] == pytest.approx(0.8)
        assert TextureAnalyzer.map_correlation(meta["correlacionPatronesBruta"]) == pytest.approx(
            meta["patronesRepetitivos"], abs=1e-4
        )

    def test_flat_parameters(self, sample_png_bytes):
        meta = TextureAnalyzer().analyze(sample_png_bytes, config=AnalysisConfig(seed=1)).metadata
        assert meta["complejidadTextura"] == 0.01
        assert meta["uniformidadTextura"] == 0.99
        assert meta["contrasteMicro"] == 0.99
        assert meta["anisotropiaTextural"] == 0.5
        assert meta["entropiaGlobal"] == 0.01

    def test_message(self, sample_png_bytes):
        result = TextureAnalyzer().analyze(sample_png_bytes, config=AnalysisConfig(seed=1))
        assert "artificialidad" in result.details["mensaje"]


class TestTextureProperties:
    def test_identity(self):
        analyzer = TextureAnalyzer()
        assert analyzer.name == "ANALISIS_DE_TEXTURA"
        assert analyzer.version == "3.2.2"
        assert sum(analyzer.WEIGHTS) == pytest.approx(1.0)

    def test_feature_vector(self, noise_png_bytes):
        result = TextureAnalyzer().analyze(noise_png_bytes, config=AnalysisConfig(seed=3))
        assert len(result.feature_vector) == 10
        assert all(0.0 <= v <= 1.0 for v in result.feature_vector)
        assert result.feature_vector == [result.metadata[k] for k in PARAMETER_NAMES]

    def test_seeded_runs_are_deterministic(self, noise_png_bytes):
        analyzer = TextureAnalyzer()
        first = analyzer.analyze(noise_png_bytes, config=AnalysisConfig(seed=99))
        second = analyzer.analyze(noise_png_bytes, config=AnalysisConfig(seed=99))
        assert first.score == second.score
        assert first.feature_vector == second.feature_vector

    def test_score_range(self, sample_jpeg_bytes, noise_png_bytes):
        analyzer = TextureAnalyzer()
        for data in (sample_jpeg_bytes, noise_png_bytes, _encode(_stripes())):
            result = analyzer.analyze(data, config=AnalysisConfig(seed=5))
            assert 0.0 <= result.score <= 10.0
            assert result.confidence is Confidence.HIGH

    def test_noise_more_natural_than_flat(self, sample_png_bytes, noise_png_bytes):
        analyzer = TextureAnalyzer()
        flat = analyzer.analyze(sample_png_bytes, config=AnalysisConfig(seed=5))
        noisy = analyzer.analyze(noise_png_bytes, config=AnalysisConfig(seed=5))
        assert noisy.score > flat.score

    def test_stripes_are_repetitive(self):
        result = TextureAnalyzer().analyze(_encode(_stripes()), config=AnalysisConfig(seed=5))
        assert result.metadata["patronesRepetitivos"] > 0.5

    def test_single_pixel_is_indeterminable(self, tiny_png_bytes):
        result = TextureAnalyzer().analyze(tiny_png_bytes, config=AnalysisConfig(seed=1))
        assert result.score is None
        assert result.confidence is Confidence.ERROR
        assert result.details["mensaje"].startswith("Imagen indeterminable")

    def test_small_image_low_confidence(self):
        arr = np.full((20, 20, 3), 90, dtype=np.uint8)
        result = TextureAnalyzer().analyze(_encode(arr), config=AnalysisConfig(seed=1))
        assert result.score is not None
        assert result.confidence is Confidence.LOW

    def test_cancelled(self, sample_png_bytes):
        token = CancellationToken()
        token.cancel()
        result = TextureAnalyzer().analyze(sample_png_bytes, cancel=token)
        assert result.score is None
        assert result.confidence is Confidence.ERROR
        assert result.details["motivo"] == "timeout"


class TestIllumination:
    def test_balanced(self, gray_array):
        luma = gray_array[..., 0].copy()
        sampler = _Sampler(luma, np.random.default_rng(0), CancellationToken())
        light = TextureAnalyzer().detect_illumination(sampler)
        assert light.desbalance == pytest.approx(1.0)
        assert light.mapa == [1.0, 1.0, 1.0, 1.0]

    def test_dark_left_half(self):
        luma = np.full((100, 100), 200, dtype=np.uint8)
        luma[:, :50] = 40
        sampler = _Sampler(luma, np.random.default_rng(0), CancellationToken())
        light = TextureAnalyzer().detect_illumination(sampler)
        assert light.desbalance == pytest.approx(5.0)
        assert light.mapa == pytest.approx([0.2, 1.0, 0.2, 1.0])

    def test_uneven_lighting_still_in_range(self):
        y, x = np.mgrid[0:160, 0:160]
        luma = (20 + x * 1.4).astype(np.uint8)
        arr = np.repeat(luma[..., None], 3, axis=2)
        result = TextureAnalyzer().analyze(_encode(arr), config=AnalysisConfig(seed=2))
        assert 0.0 <= result.score <= 10.0
        assert all(0.0 <= v <= 1.0 for v in result.feature_vector)


class TestMessages:
    def test_bands(self):
        assert "naturales" in TextureAnalyzer.message(7.5)
        assert "irregularidades" in TextureAnalyzer.message(5.0)
        assert "artificialidad" in TextureAnalyzer.message(1.0)
        assert TextureAnalyzer.message(None) == "Análisis fallido o no disponible."


class TestPatternCorrelation:
    def _sampler(self, luma: np.ndarray) -> _Sampler:
        return _Sampler(luma, np.random.default_rng(0), CancellationToken())

    def test_similarity_drops_as_noise_grows(self):
        stripes = _stripes()[..., 0].astype(np.float64)
        rng = np.random.default_rng(7)
        analyzer = TextureAnalyzer()
        similarities = []
        for sigma in (0, 25, 80):
            noisy = np.clip(stripes + rng.normal(0, sigma, stripes.shape), 0, 255).astype(np.uint8)
            # one full stripe period
            value, samples = analyzer._shifted_similarity(noisy, 10, CancellationToken())
            assert samples > 20
            similarities.append(value)
        assert similarities[0] == pytest.approx(1.0)
        assert similarities[0] > similarities[1] > similarities[2]

    def test_small_buffer_has_no_correlation(self):
        luma = np.full((8, 8), 100, dtype=np.uint8)
        assert TextureAnalyzer().pattern_correlation(self._sampler(luma)) == 0.0

    def test_mapping(self):
        assert TextureAnalyzer.map_correlation(0.0) == 0.01
        assert TextureAnalyzer.map_correlation(-0.3) == 0.01
        assert TextureAnalyzer.map_correlation(0.64) == pytest.approx(0.512)
        assert TextureAnalyzer.map_correlation(1.0) == 1.0
