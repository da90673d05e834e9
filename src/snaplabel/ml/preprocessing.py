"""Image preprocessing pipeline.

Handles decoding of uploaded bytes (format detection, EXIF orientation,
color space conversion, size validation) and conversion of an RGB pixel
grid into the flat, normalized float tensor a fixed-input classifier expects.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING, Union

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from snaplabel.ml.errors import InvalidImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

ImageLike = Union["NDArray[np.uint8]", Image.Image]

_DECODE_ERRORS = (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError)


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        max_pixels: Reject images with more pixels than this. None disables the check.

    Returns:
        HxWx3 RGB uint8 numpy array, rotated according to its EXIF orientation.

    Raises:
        InvalidImageError: If the bytes are empty, cannot be decoded, or the
            image is zero-sized or exceeds ``max_pixels``.
    """
    if not image_bytes:
        raise InvalidImageError("Image data is empty")

    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
            if width == 0 or height == 0:
                raise InvalidImageError(f"Image has zero size ({width}x{height})")
            if max_pixels is not None and width * height > max_pixels:
                raise InvalidImageError(f"Image has {width * height} pixels, limit is {max_pixels}")
            oriented = ImageOps.exif_transpose(img)
            rgb = oriented.convert("RGB")
    except _DECODE_ERRORS as exc:
        raise InvalidImageError(f"Cannot decode image: {exc}") from exc

    logger.debug("Decoded %dx%d image", rgb.width, rgb.height)
    return np.asarray(rgb, dtype=np.uint8)


def to_rgb_image(image: ImageLike) -> Image.Image:
    """Convert a pixel array or Pillow image into a non-empty RGB Pillow image.

    Arrays may be HxW (grayscale), HxWx3 (RGB) or HxWx4 (RGBA, alpha ignored)
    and must have dtype uint8.
    """
    if isinstance(image, Image.Image):
        if image.width == 0 or image.height == 0:
            raise InvalidImageError(f"Image has zero size ({image.width}x{image.height})")
        try:
            return image.convert("RGB")
        except _DECODE_ERRORS as exc:
            raise InvalidImageError(f"Cannot decode image: {exc}") from exc

    if not isinstance(image, np.ndarray):
        raise InvalidImageError(f"Unsupported image type: {type(image).__name__}")
    if image.dtype != np.uint8:
        raise InvalidImageError(f"Expected uint8 pixels, got {image.dtype}")
    if image.ndim not in (2, 3):
        raise InvalidImageError(f"Expected a 2D pixel grid, got shape {image.shape}")
    if image.shape[0] == 0 or image.shape[1] == 0:
        raise InvalidImageError(f"Image has zero size ({image.shape[1]}x{image.shape[0]})")

    if image.ndim == 2:
        return Image.fromarray(np.ascontiguousarray(image)).convert("RGB")
    if image.shape[2] not in (3, 4):
        raise InvalidImageError(f"Expected 3 or 4 channels, got {image.shape[2]}")
    return Image.fromarray(np.ascontiguousarray(image[:, :, :3]))


def resize_and_normalize(
    image: ImageLike,
    size: int,
    offset: float,
    scale: float,
) -> NDArray[np.float32]:
    """Resize to ``size``x``size`` with bilinear interpolation and normalize.

    Pixels are laid out row-major (row outer, column inner) with R, G, B
    interleaved per pixel; each channel becomes ``(value - offset) / scale``.

    Returns:
        Flat float32 array of length ``size * size * 3``.
    """
    rgb = to_rgb_image(image)
    resized = rgb.resize((size, size), Image.Resampling.BILINEAR)
    pixels = np.asarray(resized, dtype=np.uint8).astype(np.float32)
    normalized = (pixels - np.float32(offset)) / np.float32(scale)
    return normalized.reshape(-1)
