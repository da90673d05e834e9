"""Tests for decoding uploaded image bytes."""

from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from snaplabel.ml.errors import InvalidImageError
from snaplabel.ml.preprocessing import decode_image


def _encode(image: Image.Image, fmt: str = "PNG", **save_args: object) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format=fmt, **save_args)
    return buf.getvalue()


class TestDecodeImage:
    def test_png_roundtrip_shape(self) -> None:
        data = _encode(Image.new("RGB", (30, 20), (10, 20, 30)))
        pixels = decode_image(data)
        assert pixels.shape == (20, 30, 3)
        assert pixels.dtype == np.uint8
        assert pixels[0, 0].tolist() == [10, 20, 30]

    def test_rgba_converted_to_rgb(self) -> None:
        data = _encode(Image.new("RGBA", (8, 8), (255, 255, 255, 0)))
        pixels = decode_image(data)
        assert pixels.shape == (8, 8, 3)

    def test_grayscale_converted_to_rgb(self) -> None:
        data = _encode(Image.new("L", (5, 7), 200))
        pixels = decode_image(data)
        assert pixels.shape == (7, 5, 3)
        assert np.all(pixels == 200)

    def test_jpeg_decodes(self) -> None:
        data = _encode(Image.new("RGB", (16, 16), (0, 0, 0)), fmt="JPEG")
        assert decode_image(data).shape == (16, 16, 3)

    def test_exif_orientation_applied(self) -> None:
        image = Image.new("RGB", (40, 10), (255, 0, 0))
        exif = image.getexif()
        exif[0x0112] = 6  # rotate 90 degrees clockwise on display
        data = _encode(image, fmt="JPEG", exif=exif.tobytes())
        assert decode_image(data).shape == (40, 10, 3)

    def test_empty_bytes_raise(self) -> None:
        with pytest.raises(InvalidImageError, match="empty"):
            decode_image(b"")

    def test_garbage_raises(self) -> None:
        with pytest.raises(InvalidImageError, match="Cannot decode"):
            decode_image(b"fake image data")

    def test_truncated_raises(self) -> None:
        noise = np.random.default_rng(0).integers(0, 256, size=(64, 64, 3), dtype=np.uint8)
        data = _encode(Image.fromarray(noise))
        with pytest.raises(InvalidImageError):
            decode_image(data[: len(data) // 2])

    def test_pixel_limit(self) -> None:
        data = _encode(Image.new("RGB", (100, 100)))
        with pytest.raises(InvalidImageError, match="limit"):
            decode_image(data, max_pixels=9_999)
        assert decode_image(data, max_pixels=10_000).shape == (100, 100, 3)
