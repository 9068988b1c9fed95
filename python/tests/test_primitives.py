"""Tests for the signal primitives."""

import math

import numpy as np
import pytest

from pixelproof.primitives import (
    LUMA_STRIP_ROWS,
    autocorrelation,
    clamp,
    clamp01,
    downscale_by_2,
    extract_block,
    gaussian_pyramid,
    histogram_entropy,
    scale_to_unity,
    shannon_entropy,
    sobel,
    sobel_at,
    sobel_valid,
    ssim,
    to_luminance,
)
from pixelproof.types import AnalysisCancelled, CancellationToken


class TestRangeHelpers:
    def test_clamp01(self):
        assert clamp01(1.5) == 1.0
        assert clamp01(-0.2) == 0.0
        assert clamp01(0.3) == 0.3

    def test_non_finite_fallback(self):
        assert clamp01(math.nan) == 0.5
        assert clamp01(math.inf, fallback=0.1) == 0.1
        assert clamp01(None) == 0.5
        assert clamp("x", 0, 10, 5.0) == 5.0

    def test_scale_to_unity(self):
        assert scale_to_unity(4000, 8000) == 0.5
        assert scale_to_unity(16000, 8000) == 1.0
        assert scale_to_unity(5, 0) == 0.5


class TestLuminance:
    def test_bt709_weights(self):
        pixels = np.array([[[255, 0, 0], [0, 255, 0], [0, 0, 255]]], dtype=np.uint8)
        luma = to_luminance(pixels, 3, 1, 3)
        assert luma.shape == (1, 3)
        assert luma.tolist() == [[54, 182, 18]]

    def test_gray_is_identity(self):
        pixels = np.full((4, 5, 3), 77, dtype=np.uint8)
        assert np.all(to_luminance(pixels, 5, 4, 3) == 77)

    def test_too_few_channels(self):
        pixels = np.zeros((4, 4), dtype=np.uint8)
        assert to_luminance(pixels, 4, 4, 1).size == 0

    def test_short_buffer(self):
        pixels = np.zeros(10, dtype=np.uint8)
        assert to_luminance(pixels, 4, 4, 3).size == 0

    def test_tall_image_converted_in_strips(self):
        rng = np.random.default_rng(5)
        h = LUMA_STRIP_ROWS * 2 + 13
        pixels = rng.integers(0, 256, (h, 6, 3), dtype=np.uint8)
        expected = np.clip(np.floor(pixels.astype(np.float64) @ np.array([0.2126, 0.7152, 0.0722]) + 0.5), 0, 255)
        luma = to_luminance(pixels, 6, h, 3)
        assert luma.shape == (h, 6)
        assert np.array_equal(luma, expected.astype(np.uint8))

    def test_cancelled_conversion(self):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(AnalysisCancelled):
            to_luminance(np.zeros((4, 4, 3), dtype=np.uint8), 4, 4, 3, token)


class TestSobel:
    def test_flat_interior_is_zero(self):
        buf = np.full((5, 5), 100, dtype=np.uint8)
        gx, gy, mag, _ = sobel(buf, 2, 2)
        assert (gx, gy, mag) == (0.0, 0.0, 0.0)

    def test_vertical_edge(self):
        buf = np.zeros((5, 5), dtype=np.uint8)
        buf[:, 3:] = 100
        gx, gy, mag, angle = sobel(buf, 2, 2)
        assert gx == 400.0
        assert gy == 0.0
        assert mag == 400.0
        assert angle == 0.0

    def test_valid_region_matches_point(self):
        buf = np.random.default_rng(1).integers(0, 256, (9, 11)).astype(np.uint8)
        vx, vy = sobel_valid(buf)
        assert vx.shape == (7, 9)
        for y, x in [(1, 1), (4, 6), (7, 9)]:
            px, py, _, _ = sobel(buf, x, y)
            assert vx[y - 1, x - 1] == pytest.approx(px)
            assert vy[y - 1, x - 1] == pytest.approx(py)

    def test_valid_region_of_tiny_block(self):
        vx, vy = sobel_valid(np.zeros((2, 5), dtype=np.uint8))
        assert vx.size == 0
        assert vy.size == 0

    def test_points_match_point(self):
        buf = np.random.default_rng(2).integers(0, 256, (8, 8)).astype(np.uint8)
        xs, ys = np.array([1, 3, 6]), np.array([1, 5, 6])
        gx, gy = sobel_at(buf, xs, ys)
        for i, (x, y) in enumerate(zip(xs, ys)):
            px, py, _, _ = sobel(buf, int(x), int(y))
            assert gx[i] == pytest.approx(px)
            assert gy[i] == pytest.approx(py)


class TestEntropy:
    def test_uniform_buffer(self):
        assert histogram_entropy(np.full((8, 8), 3, dtype=np.uint8)) == 0.0

    def test_all_values(self):
        buf = np.arange(256, dtype=np.uint8)
        assert histogram_entropy(buf) == pytest.approx(1.0)

    def test_two_values(self):
        assert shannon_entropy(np.array([5, 5])) == pytest.approx(1.0)

    def test_empty(self):
        assert histogram_entropy(np.zeros(0, dtype=np.uint8)) == 0.0


class TestPyramid:
    def test_downscale(self):
        buf = np.array([[0, 2, 9], [4, 6, 9], [9, 9, 9]], dtype=np.uint8)
        assert downscale_by_2(buf).tolist() == [[3]]

    def test_levels(self):
        pyramid = gaussian_pyramid(np.zeros((64, 48), dtype=np.uint8), 3)
        assert [p.shape for p in pyramid] == [(64, 48), (32, 24), (16, 12)]

    def test_stops_below_min_size(self):
        pyramid = gaussian_pyramid(np.zeros((30, 30), dtype=np.uint8), 3)
        assert [p.shape for p in pyramid] == [(30, 30), (15, 15)]

    def test_original_always_present(self):
        assert len(gaussian_pyramid(np.zeros((4, 4), dtype=np.uint8), 3)) == 1


class TestBlocksAndSsim:
    def test_extract_block(self):
        buf = np.arange(100, dtype=np.uint8).reshape(10, 10)
        block = extract_block(buf, 2, 3, 5)
        assert block.shape == (5, 5)
        assert block[0, 0] == 32

    def test_extract_block_out_of_bounds(self):
        buf = np.zeros((10, 10), dtype=np.uint8)
        assert extract_block(buf, 6, 0, 5) is None
        assert extract_block(buf, -1, 0, 5) is None

    def test_identical_blocks(self):
        block = np.arange(25, dtype=np.uint8).reshape(5, 5)
        assert ssim(block, block) == pytest.approx(1.0)

    def test_constant_blocks(self):
        block = np.full((5, 5), 128, dtype=np.uint8)
        assert ssim(block, block) == pytest.approx(1.0)

    def test_anticorrelated_is_non_negative(self):
        a = np.tile([0, 255], 13)[:25].reshape(5, 5)
        b = 255 - a
        assert ssim(a, b) >= 0.0

    def test_invalid_inputs(self):
        block = np.zeros((5, 5), dtype=np.uint8)
        assert ssim(None, block) == 0.0
        assert ssim(block, np.zeros((4, 4))) == 0.0


class TestAutocorrelation:
    def test_short_series(self):
        assert autocorrelation([1.0]) == 0.0

    def test_alternating(self):
        assert autocorrelation([1, -1] * 50) == pytest.approx(-0.99, abs=0.01)

    def test_smooth_series(self):
        series = np.sin(np.linspace(0, 4 * np.pi, 500))
        assert autocorrelation(series) > 0.9
