"""Image preprocessing pipeline.

Resize an arbitrary source image down to the model input resolution, decode
the resized JPEG into RGBA pixels and normalize those pixels into a flat
float32 tensor laid out as [1, size, size, 3] (NHWC, channel-last).
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import unquote_to_bytes, urlparse
from urllib.request import url2pathname

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from yorubaocr.errors import DecodeError, DimensionMismatchError, ResizeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from yorubaocr.config import Settings

logger = logging.getLogger(__name__)

INPUT_SIZE: int = 32
CHANNELS: int = 3
TENSOR_LENGTH: int = INPUT_SIZE * INPUT_SIZE * CHANNELS


@dataclass(frozen=True)
class SourceImage:
    """Reference to a captured or selected image of arbitrary resolution.

    ``uri`` is a filesystem path, a ``file://`` URI or a ``data:`` URI. Uploads
    carry their bytes in ``content`` and use ``uri`` only as a display reference.
    """

    uri: str
    content: bytes | None = None


@dataclass(frozen=True)
class RawPixelBuffer:
    """Decoded pixels, four bytes per pixel in R, G, B, A order."""

    width: int
    height: int
    data: bytes

    @property
    def is_consistent(self) -> bool:
        return self.width > 0 and self.height > 0 and len(self.data) == self.width * self.height * 4


# ---------------------------------------------------------------------------
# Resizer
# ---------------------------------------------------------------------------


def _read_source(source: SourceImage) -> bytes:
    if source.content is not None:
        return source.content

    uri = source.uri
    if uri.startswith("data:"):
        header, sep, payload = uri.partition(",")
        if not sep:
            raise ResizeError(f"Malformed data URI for {header[:32]!r}")
        if header.endswith(";base64"):
            try:
                return base64.b64decode(payload, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise ResizeError(f"Malformed base64 in data URI: {exc}") from exc
        return unquote_to_bytes(payload)

    path = Path(url2pathname(urlparse(uri).path)) if uri.startswith("file://") else Path(uri)
    try:
        return path.read_bytes()
    except OSError as exc:
        raise ResizeError(f"Could not read image {uri!r}: {exc}") from exc


def resize_image(
    source: SourceImage,
    width: int = INPUT_SIZE,
    height: int = INPUT_SIZE,
    *,
    as_base64: bool = True,
    quality: int = 95,
    max_pixels: int | None = None,
) -> str | bytes:
    """Scale a source image to exactly ``width`` x ``height`` and re-encode it as JPEG.

    The aspect ratio is not preserved. EXIF orientation is applied before
    resizing so camera photos are not fed to the model sideways.

    Returns:
        Base64-encoded JPEG when ``as_base64`` is true, raw JPEG bytes otherwise.

    Raises:
        ResizeError: If the image cannot be read, decoded or exceeds ``max_pixels``.
    """
    raw = _read_source(source)
    try:
        with Image.open(io.BytesIO(raw)) as img:
            if max_pixels is not None and img.width * img.height > max_pixels:
                raise ResizeError(f"Image {img.width}x{img.height} exceeds the {max_pixels} pixel limit")
            oriented = ImageOps.exif_transpose(img)
            resized = oriented.convert("RGB").resize((width, height), Image.Resampling.BILINEAR)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ResizeError(f"Could not resize image {source.uri!r}: {exc}") from exc

    buf = io.BytesIO()
    resized.save(buf, format="JPEG", quality=quality)
    encoded = buf.getvalue()
    if not as_base64:
        return encoded
    return base64.b64encode(encoded).decode("ascii")


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------


def decode_image(image_b64: str) -> RawPixelBuffer:
    """Decode a base64 JPEG into an RGBA pixel buffer.

    Raises:
        DecodeError: On malformed base64, non-JPEG or corrupt JPEG data.
    """
    try:
        raw = base64.b64decode(image_b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"Invalid base64 image payload: {exc}") from exc
    if not raw:
        raise DecodeError("Empty image payload")

    try:
        with Image.open(io.BytesIO(raw), formats=["JPEG"]) as img:
            rgba = img.convert("RGBA")
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise DecodeError(f"Malformed JPEG data: {exc}") from exc

    pixels = RawPixelBuffer(width=rgba.width, height=rgba.height, data=rgba.tobytes())
    if not pixels.is_consistent:
        raise DecodeError(f"Decoder returned {len(pixels.data)} bytes for {pixels.width}x{pixels.height}")
    return pixels


# ---------------------------------------------------------------------------
# Tensor normalizer
# ---------------------------------------------------------------------------


def normalize(pixels: RawPixelBuffer, size: int = INPUT_SIZE) -> NDArray[np.float32]:
    """Convert a ``size`` x ``size`` RGBA buffer into a flat normalized RGB tensor.

    Pixels are visited in row-major order; alpha is dropped and each of R, G, B
    is divided by 255. Element ``3*k + c`` is channel ``c`` of pixel ``k``.

    The model input resolution is fixed: this never resamples.

    Raises:
        DimensionMismatchError: If the buffer is not ``size`` x ``size`` or its
            length disagrees with its declared dimensions.
    """
    if pixels.width != size or pixels.height != size:
        raise DimensionMismatchError(
            f"Unexpected image dimensions {pixels.width}x{pixels.height}. Expected {size}x{size}."
        )
    expected = size * size * 4
    if len(pixels.data) != expected:
        raise DimensionMismatchError(f"Pixel buffer holds {len(pixels.data)} bytes, expected {expected}")

    rgba = np.frombuffer(pixels.data, dtype=np.uint8).reshape(size * size, 4)
    tensor = rgba[:, :CHANNELS].astype(np.float32) / np.float32(255.0)
    return tensor.reshape(-1)


def to_model_input(tensor: NDArray[np.float32], size: int = INPUT_SIZE) -> NDArray[np.float32]:
    """Reshape a flat tensor to the model's logical [1, size, size, 3] shape."""
    expected = size * size * CHANNELS
    if tensor.shape != (expected,):
        raise DimensionMismatchError(f"Tensor has shape {tensor.shape}, expected ({expected},)")
    return tensor.reshape(1, size, size, CHANNELS)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class ImagePreprocessor:
    """Resize, decode and normalize a source image with configured limits."""

    def __init__(self, settings: Settings) -> None:
        self._size = settings.input_size
        self._quality = settings.jpeg_quality
        self._max_pixels = settings.max_image_pixels

    @property
    def input_size(self) -> int:
        return self._size

    def resize(self, source: SourceImage) -> str:
        encoded = resize_image(
            source,
            self._size,
            self._size,
            as_base64=True,
            quality=self._quality,
            max_pixels=self._max_pixels,
        )
        if not encoded:
            raise ResizeError("Failed to get base64 image.")
        return str(encoded)

    def decode(self, image_b64: str) -> RawPixelBuffer:
        return decode_image(image_b64)

    def normalize(self, pixels: RawPixelBuffer) -> NDArray[np.float32]:
        return normalize(pixels, self._size)

    def preprocess(self, source: SourceImage) -> NDArray[np.float32]:
        """Run resize -> decode -> normalize for one source image."""
        tensor = self.normalize(self.decode(self.resize(source)))
        logger.debug("Preprocessed %s into tensor of %d values", source.uri, tensor.size)
        return tensor
