"""Tests for the image decoding collaborator."""

import io
import struct

import numpy as np
import pytest
from PIL import Image

from pixelproof.decoding import ImageDecoder, read_exif, recompress_jpeg, resize_gray
from pixelproof.types import ImageDecodeError


class TestImageDecoder:
    def test_decode_png_bytes(self, decoder, sample_png_bytes):
        image = decoder.decode(sample_png_bytes)
        assert image.pixels.width == 256
        assert image.pixels.height == 256
        assert image.pixels.channels == 3
        assert image.metadata.format == "png"
        assert image.metadata.size_bytes == len(sample_png_bytes)
        assert image.raw == sample_png_bytes

    def test_pixels_read_only(self, decoder, sample_png_bytes):
        image = decoder.decode(sample_png_bytes)
        with pytest.raises(ValueError):
            image.pixels.samples[0, 0, 0] = 1

    def test_decode_path(self, decoder, image_file):
        image = decoder.decode(image_file)
        assert image.metadata.format == "jpeg"
        assert image.source_name == str(image_file)

    def test_missing_file(self, decoder, tmp_path):
        with pytest.raises(ImageDecodeError, match="not found"):
            decoder.decode(tmp_path / "missing.jpg")

    def test_garbage_bytes(self, decoder):
        with pytest.raises(ImageDecodeError):
            decoder.decode(b"definitely not an image")

    def test_decompression_bomb(self, decoder, sample_png_bytes, monkeypatch):
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)
        with pytest.raises(ImageDecodeError, match="Undecodable"):
            decoder.decode(sample_png_bytes)

    def test_truncated_png(self, decoder, sample_png_bytes):
        with pytest.raises(ImageDecodeError):
            decoder.decode(sample_png_bytes[:len(sample_png_bytes) // 2])

    @pytest.mark.parametrize("error", [
        SyntaxError("broken chunk"),
        EOFError(),
        struct.error("unpack requires a buffer of 4 bytes"),
    ])
    def test_parser_errors_become_decode_errors(self, decoder, sample_png_bytes, monkeypatch, error):
        def broken_open(fp, *args, **kwargs):
            raise error

        monkeypatch.setattr(Image, "open", broken_open)
        with pytest.raises(ImageDecodeError) as exc:
            decoder.decode(sample_png_bytes)
        assert exc.value.__cause__ is error

    def test_multi_picture_jpeg_reported_as_jpeg(self, decoder, mpo_bytes):
        image = decoder.decode(mpo_bytes)
        assert image.metadata.format == "jpeg"
        assert (image.pixels.width, image.pixels.height) == (128, 128)

    def test_empty_bytes(self, decoder):
        with pytest.raises(ImageDecodeError):
            decoder.decode(b"")

    def test_unsupported_source(self, decoder):
        with pytest.raises(ImageDecodeError):
            decoder.decode(12345)

    def test_oversized_input_still_decoded(self, sample_png_bytes, caplog):
        decoder = ImageDecoder(max_image_bytes=10)
        image = decoder.decode(sample_png_bytes)
        assert image.pixels.width == 256
        assert "above the recommended" in caplog.text

    def test_density(self, decoder, gradient_array):
        buf = io.BytesIO()
        Image.fromarray(gradient_array).save(buf, format="JPEG", dpi=(300, 300))
        image = decoder.decode(buf.getvalue())
        assert image.metadata.density == pytest.approx(300)

    def test_grayscale_converted_to_rgb(self, decoder):
        buf = io.BytesIO()
        Image.new("L", (10, 12), color=50).save(buf, format="PNG")
        image = decoder.decode(buf.getvalue())
        assert image.pixels.samples.shape == (12, 10, 3)
        assert image.metadata.mode == "L"


class TestExif:
    def test_no_exif(self, sample_png_bytes):
        assert read_exif(sample_png_bytes) == {}

    def test_named_tags(self, exif_jpeg_bytes):
        tags = read_exif(exif_jpeg_bytes)
        assert tags["Make"] == "Canon"
        assert tags["Model"] == "EOS 80D"
        assert tags["DateTime"] == "2024:05:01 10:00:00"


class TestHelpers:
    def test_resize_gray(self):
        gray = np.zeros((100, 300), dtype=np.uint8)
        assert resize_gray(gray).shape == (256, 256)

    def test_recompress_jpeg_shape(self, gradient_array):
        out = recompress_jpeg(gradient_array, 90)
        assert out.shape == gradient_array.shape
        assert out.dtype == np.uint8
