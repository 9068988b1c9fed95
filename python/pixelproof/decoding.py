"""Image decoding collaborator: raw pixels, best-effort metadata and EXIF."""
import io
import logging
import os
import struct
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import cv2
import numpy as np
from PIL import ExifTags, Image, UnidentifiedImageError

from .types import DecodedImage, ImageDecodeError, ImageMetadata, ImageSource, PixelBuffer

logger = logging.getLogger(__name__)

EXIF_IFD_POINTER = 0x8769

# Container formats whose primary frame is a plain baseline JPEG
FORMAT_ALIASES = {"mpo": "jpeg"}

# Exceptions Pillow raises on hostile or truncated input
DECODE_ERRORS = (
    UnidentifiedImageError,
    Image.DecompressionBombError,
    OSError,
    ValueError,
    SyntaxError,
    EOFError,
    struct.error,
)


class ImageDecoder:
    """Decode a file path or byte buffer into an RGB :class:`DecodedImage`."""

    def __init__(self, max_image_bytes: int = 15 * 1024 * 1024):
        self.max_image_bytes = max_image_bytes

    def decode(self, source: ImageSource) -> DecodedImage:
        raw, name = self._read(source)
        if len(raw) > self.max_image_bytes:
            logger.warning(
                f"Image {name or '<bytes>'} is {len(raw)} bytes, above the recommended "
                f"{self.max_image_bytes}; analysis may be slow"
            )

        try:
            img = Image.open(io.BytesIO(raw))
            img.load()
            samples = np.array(img.convert("RGB"), dtype=np.uint8)
        except DECODE_ERRORS as e:
            raise ImageDecodeError(f"Undecodable image data: {e}") from e

        metadata = ImageMetadata(
            format=_format_name(img.format),
            density=_density(img.info),
            size_bytes=len(raw),
            mode=img.mode,
            has_exif="exif" in img.info,
        )

        samples.setflags(write=False)
        height, width = samples.shape[:2]
        pixels = PixelBuffer(width=width, height=height, channels=3, samples=samples)
        return DecodedImage(pixels=pixels, metadata=metadata, raw=raw, source_name=name)

    @staticmethod
    def _read(source: ImageSource) -> Tuple[bytes, Optional[str]]:
        if isinstance(source, (bytes, bytearray)):
            if not source:
                raise ImageDecodeError("Empty image buffer")
            return bytes(source), None
        if isinstance(source, (str, os.PathLike)):
            path = Path(source)
            if not path.is_file():
                raise ImageDecodeError(f"File not found: {path}")
            try:
                return path.read_bytes(), str(path)
            except OSError as e:
                raise ImageDecodeError(f"Cannot read {path}: {e}") from e
        raise ImageDecodeError(f"Unsupported image source type: {type(source).__name__}")


def _format_name(name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    name = name.lower()
    return FORMAT_ALIASES.get(name, name)


def _density(info: Dict[str, Any]) -> Optional[float]:
    """Horizontal DPI from Pillow's info dict, if any."""
    dpi = info.get("dpi")
    if isinstance(dpi, (tuple, list)) and dpi:
        try:
            value = float(dpi[0])
        except (TypeError, ValueError):
            return None
        return value if value > 0 else None
    return None


def read_exif(raw: bytes) -> Dict[str, Any]:
    """Named EXIF tags (base IFD merged with the Exif sub-IFD).

    Returns an empty dict when the image carries no EXIF block.
    """
    with Image.open(io.BytesIO(raw)) as img:
        exif = img.getexif()
        if not exif:
            return {}
        tags = {ExifTags.TAGS.get(k, k): v for k, v in exif.items()}
        try:
            sub_ifd = exif.get_ifd(EXIF_IFD_POINTER)
        except (KeyError, ValueError, TypeError):
            sub_ifd = {}
        for k, v in sub_ifd.items():
            tags.setdefault(ExifTags.TAGS.get(k, k), v)
    return tags


def resize_gray(gray: np.ndarray, size: int = 256) -> np.ndarray:
    """Resize a single-channel image to ``size`` x ``size``."""
    return cv2.resize(np.ascontiguousarray(gray), (size, size), interpolation=cv2.INTER_AREA)


def recompress_jpeg(rgb: np.ndarray, quality: int = 90) -> np.ndarray:
    """Encode an RGB array as JPEG at ``quality`` and decode it back."""
    buffer = io.BytesIO()
    Image.fromarray(np.ascontiguousarray(rgb)).save(buffer, "JPEG", quality=quality)
    buffer.seek(0)
    with Image.open(buffer) as recompressed:
        return np.array(recompressed.convert("RGB"), dtype=np.uint8)
