"""Shared pytest fixtures for pixelproof tests."""

import io

import numpy as np
import pytest
from PIL import Image

from pixelproof.decoding import ImageDecoder
from pixelproof.types import AnalysisConfig


def _encode(arr: np.ndarray, fmt: str = "PNG", **params) -> bytes:
    """Encode an RGB uint8 array to image bytes."""
    buf = io.BytesIO()
    Image.fromarray(arr.astype(np.uint8)).save(buf, format=fmt, **params)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Pixel arrays
# ---------------------------------------------------------------------------


@pytest.fixture()
def gray_array():
    """Uniform mid-gray 256x256 image."""
    return np.full((256, 256, 3), 128, dtype=np.uint8)


@pytest.fixture()
def gradient_array():
    """Smooth diagonal colour gradient, 128x128."""
    y, x = np.mgrid[0:128, 0:128]
    return np.stack([x * 2, y * 2, np.full_like(x, 128)], axis=-1).astype(np.uint8)


@pytest.fixture()
def noise_array():
    """Seeded random noise, 128x128."""
    rng = np.random.default_rng(1234)
    return rng.integers(0, 256, (128, 128, 3), dtype=np.uint8)


# ---------------------------------------------------------------------------
# Encoded buffers
# ---------------------------------------------------------------------------


@pytest.fixture()
def sample_png_bytes(gray_array):
    return _encode(gray_array, "PNG")


@pytest.fixture()
def sample_jpeg_bytes(gradient_array):
    """Synthetic JPEG buffer (gradient image)."""
    return _encode(gradient_array, "JPEG", quality=90)


@pytest.fixture()
def noise_png_bytes(noise_array):
    return _encode(noise_array, "PNG")


@pytest.fixture()
def tiny_png_bytes():
    """1x1 image."""
    return _encode(np.full((1, 1, 3), 200, dtype=np.uint8), "PNG")


@pytest.fixture()
def exif_jpeg_bytes(gradient_array):
    """JPEG carrying camera EXIF tags."""
    img = Image.fromarray(gradient_array)
    exif = Image.Exif()
    exif[0x010F] = "Canon"  # Make
    exif[0x0110] = "EOS 80D"  # Model
    exif[0x0132] = "2024:05:01 10:00:00"  # DateTime
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=90, exif=exif.tobytes())
    return buf.getvalue()


@pytest.fixture()
def double_jpeg_bytes(noise_array):
    """Noise saved as JPEG at quality 90, decoded and saved again at 75."""
    first = Image.open(io.BytesIO(_encode(noise_array, "JPEG", quality=90))).convert("RGB")
    return _encode(np.array(first), "JPEG", quality=75)


@pytest.fixture()
def mpo_bytes(gradient_array):
    """Two-frame MPO (multi-picture JPEG), as written by stereo and some phone cameras."""
    first = Image.fromarray(gradient_array)
    second = Image.fromarray(gradient_array[::-1].copy())
    buf = io.BytesIO()
    first.save(buf, format="MPO", quality=90, save_all=True, append_images=[second])
    return buf.getvalue()


@pytest.fixture()
def image_file(tmp_path, sample_jpeg_bytes):
    path = tmp_path / "photo.jpg"
    path.write_bytes(sample_jpeg_bytes)
    return path


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@pytest.fixture()
def decoder():
    return ImageDecoder()


@pytest.fixture()
def seeded_config():
    return AnalysisConfig(seed=42, max_workers=2)
