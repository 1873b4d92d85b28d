"""Pixel buffers and CPU image transforms.

A ``PixelBuffer`` holds one of two storages:

- ``YUV_420_888``: the dense luma plane, one uint8 per pixel
- ``RGBA_PACKED``: decoded colour, one uint32 ``0xAARRGGBB`` per pixel

Transforms (rotate, crop, downscale2x) keep the storage kind and format.
They work on flat row-major arrays reshaped to (height, width) and never
interpolate. JPEG encode/decode and colour conversion go through an
``ImageCodec`` (OpenCV by default, imported lazily).

Example:
    buffer = image_to_buffer(image)          # from a reader Image
    buffer = rotate(buffer, 90)
    buffer = crop(buffer, 10, 10, 0, 0)
    half = downscale2x(buffer)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import numpy as np

from camera_scanner.devices.errors import FrameDecodeError, InvalidArgumentError
from camera_scanner.drivers.cameras.types import Image, ImageFormat, ImagePlane, Rect

if TYPE_CHECKING:
    from numpy.typing import NDArray

__all__ = [
    "CV2ImageCodec",
    "ImageCodec",
    "PixelBuffer",
    "PixelFormat",
    "bgr_to_buffer",
    "buffer_to_bgr",
    "crop",
    "downscale2x",
    "encode_jpeg",
    "image_to_bgr",
    "image_to_buffer",
    "jpeg_to_rgba",
    "luminance",
    "pack_argb",
    "remove_strides",
    "rotate",
    "scale_to_long_side",
    "unpack_argb",
]


class PixelFormat(Enum):
    """Storage kind of a PixelBuffer."""

    YUV_420_888 = "yuv_420_888"
    RGBA_PACKED = "rgba_packed"


_DTYPES = {
    PixelFormat.YUV_420_888: np.uint8,
    PixelFormat.RGBA_PACKED: np.uint32,
}


@dataclass(slots=True)
class PixelBuffer:
    """Row-major pixel buffer.

    Attributes:
        width: Width in pixels.
        height: Height in pixels.
        format: Storage kind.
        data: Flat array of ``width * height`` samples; uint8 luma for
            YUV_420_888, uint32 ARGB for RGBA_PACKED.

    Raises:
        ValueError: If the array is not flat, has the wrong length or the
            wrong dtype for the format.
    """

    width: int
    height: int
    format: PixelFormat
    data: NDArray[Any]

    def __post_init__(self) -> None:
        if self.width < 0 or self.height < 0:
            raise ValueError(f"Invalid size {self.width}x{self.height}")
        if self.data.ndim != 1:
            raise ValueError(f"Pixel data must be flat, got shape {self.data.shape}")
        if self.data.size != self.width * self.height:
            raise ValueError(
                f"Pixel data length {self.data.size} does not match "
                f"{self.width}x{self.height}"
            )
        expected = _DTYPES[self.format]
        if self.data.dtype != expected:
            raise ValueError(
                f"{self.format.value} needs dtype {np.dtype(expected).name}, "
                f"got {self.data.dtype}"
            )

    @property
    def luma(self) -> NDArray[Any] | None:
        """Luma bytes, or None for RGBA buffers."""
        return self.data if self.format == PixelFormat.YUV_420_888 else None

    @property
    def pixels(self) -> NDArray[Any] | None:
        """ARGB ints, or None for luma buffers."""
        return self.data if self.format == PixelFormat.RGBA_PACKED else None

    def as_2d(self) -> NDArray[Any]:
        """View of the data shaped (height, width)."""
        return self.data.reshape(self.height, self.width)

    @classmethod
    def from_2d(cls, arr: NDArray[Any], format: PixelFormat) -> PixelBuffer:
        """Build a buffer from a (height, width) array (copied if needed)."""
        arr = np.ascontiguousarray(arr, dtype=_DTYPES[format])
        height, width = arr.shape
        return cls(width, height, format, arr.reshape(-1))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PixelBuffer):
            return NotImplemented
        return (
            self.width == other.width
            and self.height == other.height
            and self.format == other.format
            and np.array_equal(self.data, other.data)
        )

    def __repr__(self) -> str:
        return f"PixelBuffer({self.width}x{self.height}, format={self.format.value})"


# =============================================================================
# Geometric transforms
# =============================================================================

_CLOCKWISE = (90, -270)
_COUNTER_CLOCKWISE = (-90, 270)
_FLIP = (180, -180)


def rotate(buffer: PixelBuffer, angle: int) -> PixelBuffer:
    """Rotate by a multiple of 90 degrees.

    90/-270 turn clockwise, -90/270 counter-clockwise and 180/-180 flip.
    Any other angle returns the buffer unchanged. Width and height swap
    for quarter turns.

    Example:
        rows [a, b], [c, d], [e, f] rotated 90 become [e, c, a], [f, d, b].
    """
    if angle in _CLOCKWISE:
        k = -1
    elif angle in _COUNTER_CLOCKWISE:
        k = 1
    elif angle in _FLIP:
        k = 2
    else:
        return buffer
    return PixelBuffer.from_2d(np.rot90(buffer.as_2d(), k), buffer.format)


def _margin_offsets(size: int, first: float, second: float) -> tuple[int, int]:
    """Offsets for one axis; (0, 0) unless both margins are set and sum < 100."""
    if first > 0 and second > 0 and first + second < 100:
        return int(size * first // 100), int(size * second // 100)
    return 0, 0


def crop(
    buffer: PixelBuffer,
    left: float,
    right: float,
    top: float,
    bottom: float,
) -> PixelBuffer:
    """Crop by percentage margins.

    An axis is cropped only when both of its margins are positive and
    their sum is below 100; otherwise that axis is left alone. Offsets are
    ``size * pct // 100``.

    Args:
        buffer: Source buffer.
        left: Left margin percentage.
        right: Right margin percentage.
        top: Top margin percentage.
        bottom: Bottom margin percentage.

    Returns:
        Cropped buffer, or the input when neither axis is cropped.
    """
    left_off, right_off = _margin_offsets(buffer.width, left, right)
    top_off, bottom_off = _margin_offsets(buffer.height, top, bottom)
    if not (left_off or right_off or top_off or bottom_off):
        return buffer

    arr = buffer.as_2d()
    cropped = arr[
        top_off : buffer.height - bottom_off,
        left_off : buffer.width - right_off,
    ]
    return PixelBuffer.from_2d(cropped, buffer.format)


def downscale2x(buffer: PixelBuffer) -> PixelBuffer:
    """Halve both dimensions (floored).

    Luma samples become the minimum of their 2x2 source block so dark bar
    edges survive; RGBA keeps the top-left pixel of each block.
    """
    w2, h2 = buffer.width // 2, buffer.height // 2
    arr = buffer.as_2d()[: h2 * 2, : w2 * 2]
    if buffer.format == PixelFormat.YUV_420_888:
        out = arr.reshape(h2, 2, w2, 2).min(axis=(1, 3))
    else:
        out = arr[::2, ::2]
    return PixelBuffer.from_2d(out, buffer.format)


def remove_strides(plane: ImagePlane, crop_rect: Rect) -> PixelBuffer:
    """Dense luma buffer from a strided Y plane.

    Sample (x, y) of the crop rect is read from
    ``(top + y) * row_stride + (left + x) * pixel_stride``. Rows are bulk
    copied when ``pixel_stride == 1``.
    """
    width, height = crop_rect.width, crop_rect.height
    src = plane.buffer
    start = plane.row_stride * crop_rect.top + plane.pixel_stride * crop_rect.left
    out = np.empty((height, width), dtype=np.uint8)

    if plane.pixel_stride == 1:
        if plane.row_stride == width:
            out[:] = src[start : start + width * height].reshape(height, width)
        else:
            for row in range(height):
                pos = start + row * plane.row_stride
                out[row] = src[pos : pos + width]
    else:
        for row in range(height):
            pos = start + row * plane.row_stride
            out[row] = src[pos : pos + (width - 1) * plane.pixel_stride + 1][
                :: plane.pixel_stride
            ]
    return PixelBuffer(width, height, PixelFormat.YUV_420_888, out.reshape(-1))


# =============================================================================
# Colour packing
# =============================================================================


def pack_argb(bgr: NDArray[Any]) -> NDArray[Any]:
    """Pack an (h, w, 3) BGR uint8 image into (h, w) uint32 0xAARRGGBB."""
    b = bgr[..., 0].astype(np.uint32)
    g = bgr[..., 1].astype(np.uint32)
    r = bgr[..., 2].astype(np.uint32)
    return np.uint32(0xFF000000) | (r << 16) | (g << 8) | b


def unpack_argb(pixels: NDArray[Any]) -> NDArray[Any]:
    """Unpack (h, w) uint32 ARGB into an (h, w, 3) BGR uint8 image."""
    b = (pixels & 0xFF).astype(np.uint8)
    g = ((pixels >> 8) & 0xFF).astype(np.uint8)
    r = ((pixels >> 16) & 0xFF).astype(np.uint8)
    return np.dstack((b, g, r))


def bgr_to_buffer(bgr: NDArray[Any]) -> PixelBuffer:
    """RGBA_PACKED buffer from a BGR image."""
    return PixelBuffer.from_2d(pack_argb(bgr), PixelFormat.RGBA_PACKED)


def buffer_to_bgr(buffer: PixelBuffer) -> NDArray[Any]:
    """BGR image from any buffer; luma is replicated to three channels."""
    arr = buffer.as_2d()
    if buffer.format == PixelFormat.RGBA_PACKED:
        return unpack_argb(arr)
    return np.dstack((arr, arr, arr))


def luminance(buffer: PixelBuffer) -> NDArray[Any]:
    """(h, w) uint8 luminance; RGBA uses (r + 2g + b) / 4."""
    arr = buffer.as_2d()
    if buffer.format == PixelFormat.YUV_420_888:
        return arr
    r = (arr >> 16) & 0xFF
    g = (arr >> 8) & 0xFF
    b = arr & 0xFF
    return ((r + 2 * g + b) // 4).astype(np.uint8)


# =============================================================================
# Codec
# =============================================================================


@runtime_checkable
class ImageCodec(Protocol):
    """JPEG and colour conversion operations used by the pipeline."""

    def encode_jpeg(self, img: NDArray[Any], quality: int = 100) -> bytes:
        """Encode a BGR image as baseline JPEG."""
        ...  # pragma: no cover

    def decode_jpeg(self, data: bytes) -> NDArray[Any] | None:
        """Decode JPEG bytes to BGR, or None when undecodable."""
        ...  # pragma: no cover

    def resize(self, img: NDArray[Any], width: int, height: int) -> NDArray[Any]:
        """Resize an image."""
        ...  # pragma: no cover

    def i420_to_bgr(self, i420: NDArray[Any], width: int, height: int) -> NDArray[Any]:
        """Convert planar I420 (Y, then U, then V) to BGR."""
        ...  # pragma: no cover


class CV2ImageCodec(ImageCodec):
    """OpenCV implementation of ImageCodec.

    cv2 is imported on construction so importing this module stays cheap.
    """

    def __init__(self) -> None:
        import cv2

        self._cv2 = cv2

    def encode_jpeg(self, img: NDArray[Any], quality: int = 100) -> bytes:
        """Encode to JPEG at ``quality`` in [0, 100].

        Raises:
            InvalidArgumentError: If quality is out of range.
            ValueError: If OpenCV reports a failure.
        """
        if not 0 <= quality <= 100:
            raise InvalidArgumentError(f"quality must be 0-100, got {quality}")
        success, data = self._cv2.imencode(
            ".jpg", img, [self._cv2.IMWRITE_JPEG_QUALITY, int(quality)]
        )
        if not success:
            raise ValueError(
                f"JPEG encoding failed for image shape={img.shape}, dtype={img.dtype}"
            )
        return data.tobytes()

    def decode_jpeg(self, data: bytes) -> NDArray[Any] | None:
        arr = np.frombuffer(data, dtype=np.uint8)
        if arr.size == 0:
            return None
        return self._cv2.imdecode(arr, self._cv2.IMREAD_COLOR)

    def resize(self, img: NDArray[Any], width: int, height: int) -> NDArray[Any]:
        return self._cv2.resize(
            img, (width, height), interpolation=self._cv2.INTER_AREA
        )

    def i420_to_bgr(self, i420: NDArray[Any], width: int, height: int) -> NDArray[Any]:
        return self._cv2.cvtColor(
            i420.reshape(height * 3 // 2, width), self._cv2.COLOR_YUV2BGR_I420
        )


_default_codec: ImageCodec | None = None


def _codec(codec: ImageCodec | None) -> ImageCodec:
    global _default_codec
    if codec is not None:
        return codec
    if _default_codec is None:
        _default_codec = CV2ImageCodec()
    return _default_codec


def jpeg_to_rgba(data: bytes, codec: ImageCodec | None = None) -> PixelBuffer:
    """Decode JPEG bytes to an RGBA_PACKED buffer.

    Raises:
        FrameDecodeError: If the size cannot be inferred from the data.
    """
    bgr = _codec(codec).decode_jpeg(data)
    if bgr is None:
        raise FrameDecodeError("JPEG conversion error")
    return bgr_to_buffer(bgr)


def encode_jpeg(
    buffer: PixelBuffer, quality: int, codec: ImageCodec | None = None
) -> bytes:
    """Encode a buffer as JPEG at ``quality`` in [0, 100]."""
    return _codec(codec).encode_jpeg(buffer_to_bgr(buffer), quality)


def scale_to_long_side(
    buffer: PixelBuffer, long_side: int, codec: ImageCodec | None = None
) -> PixelBuffer:
    """Downscale so the longer dimension equals ``long_side``.

    The factor ``long_side / max(width, height)`` is clamped to 1, so
    images are never enlarged.
    """
    longest = max(buffer.width, buffer.height)
    if longest == 0 or long_side <= 0 or long_side >= longest:
        return buffer
    factor = long_side / longest
    width = max(1, round(buffer.width * factor))
    height = max(1, round(buffer.height * factor))
    resized = _codec(codec).resize(buffer_to_bgr(buffer), width, height)
    if buffer.format == PixelFormat.YUV_420_888:
        return PixelBuffer.from_2d(resized[..., 0], buffer.format)
    return bgr_to_buffer(resized)


def _dense_plane(plane: ImagePlane, width: int, height: int) -> NDArray[Any]:
    return remove_strides(plane, Rect(0, 0, width, height)).data


def image_to_bgr(image: Image, codec: ImageCodec | None = None) -> NDArray[Any]:
    """Full-colour BGR image from a reader Image (JPEG or YUV_420_888).

    Raises:
        FrameDecodeError: If a JPEG cannot be decoded or a YUV image has
            odd dimensions.
    """
    c = _codec(codec)
    if image.format == ImageFormat.JPEG:
        bgr = c.decode_jpeg(image.planes[0].buffer.tobytes())
        if bgr is None:
            raise FrameDecodeError("JPEG conversion error")
        return bgr

    w, h = image.width, image.height
    if w % 2 or h % 2:
        raise FrameDecodeError(f"YUV image needs even dimensions, got {w}x{h}")
    y_plane, u_plane, v_plane = image.planes[:3]
    i420 = np.concatenate(
        (
            _dense_plane(y_plane, w, h),
            _dense_plane(u_plane, w // 2, h // 2),
            _dense_plane(v_plane, w // 2, h // 2),
        )
    )
    return c.i420_to_bgr(i420, w, h)


def image_to_buffer(image: Image, codec: ImageCodec | None = None) -> PixelBuffer:
    """PixelBuffer from a reader Image.

    YUV images yield the luma plane of the crop rect with strides
    removed; JPEG images are decoded to RGBA_PACKED.
    """
    if image.format == ImageFormat.YUV_420_888:
        return remove_strides(image.planes[0], image.crop_rect)
    return jpeg_to_rgba(image.planes[0].buffer.tobytes(), codec)
