"""Unit tests for camera_scanner.utils.image.

Covers the PixelBuffer container, the geometric transforms used by the
barcode pipeline, stride removal and the OpenCV backed conversions.
"""

import numpy as np
import pytest

from camera_scanner.devices.errors import FrameDecodeError, InvalidArgumentError
from camera_scanner.drivers.cameras.types import Image, ImageFormat, ImagePlane, Rect
from camera_scanner.utils.image import (
    CV2ImageCodec,
    ImageCodec,
    PixelBuffer,
    PixelFormat,
    bgr_to_buffer,
    crop,
    downscale2x,
    encode_jpeg,
    image_to_buffer,
    jpeg_to_rgba,
    luminance,
    remove_strides,
    rotate,
    scale_to_long_side,
)


def luma(rows):
    return PixelBuffer.from_2d(np.array(rows, dtype=np.uint8), PixelFormat.YUV_420_888)


class TestPixelBuffer:
    """Tests for PixelBuffer validation."""

    def test_from_2d_keeps_shape(self) -> None:
        buffer = luma([[1, 2, 3], [4, 5, 6]])
        assert (buffer.width, buffer.height) == (3, 2)
        assert buffer.luma is not None
        assert buffer.pixels is None

    def test_rejects_length_mismatch(self) -> None:
        with pytest.raises(ValueError, match="does not match"):
            PixelBuffer(3, 3, PixelFormat.YUV_420_888, np.zeros(8, dtype=np.uint8))

    def test_rejects_wrong_dtype(self) -> None:
        """RGBA buffers hold packed uint32 pixels, never bytes."""
        with pytest.raises(ValueError, match="needs dtype"):
            PixelBuffer(2, 2, PixelFormat.RGBA_PACKED, np.zeros(4, dtype=np.uint8))

    def test_rejects_2d_data(self) -> None:
        with pytest.raises(ValueError, match="flat"):
            PixelBuffer(2, 2, PixelFormat.YUV_420_888, np.zeros((2, 2), dtype=np.uint8))


class TestRotate:
    """Tests for quarter-turn rotation."""

    def test_clockwise_quarter_turn(self) -> None:
        """Verifies 90 degrees turns the buffer clockwise.

        Arrangement:
        Buffer with rows [a, b], [c, d], [e, f] (2 wide, 3 high).

        Action:
        rotate(buffer, 90).

        Assertion Strategy:
        Rows become [e, c, a], [f, d, b] and width/height swap.
        """
        buffer = luma([[1, 2], [3, 4], [5, 6]])
        rotated = rotate(buffer, 90)
        assert (rotated.width, rotated.height) == (3, 2)
        assert rotated.as_2d().tolist() == [[5, 3, 1], [6, 4, 2]]

    def test_minus_270_equals_90(self) -> None:
        buffer = luma([[1, 2], [3, 4], [5, 6]])
        assert rotate(buffer, -270) == rotate(buffer, 90)

    def test_counter_clockwise(self) -> None:
        buffer = luma([[1, 2], [3, 4], [5, 6]])
        assert rotate(buffer, 270).as_2d().tolist() == [[2, 4, 6], [1, 3, 5]]
        assert rotate(buffer, -90) == rotate(buffer, 270)

    def test_flip(self) -> None:
        buffer = luma([[1, 2], [3, 4]])
        assert rotate(buffer, 180).as_2d().tolist() == [[4, 3], [2, 1]]
        assert rotate(buffer, -180) == rotate(buffer, 180)

    @pytest.mark.parametrize("angle", [0, 45, 360, 91])
    def test_other_angles_are_identity(self, angle: int) -> None:
        buffer = luma([[1, 2], [3, 4]])
        assert rotate(buffer, angle) is buffer

    def test_rgba_keeps_format(self) -> None:
        buffer = PixelBuffer.from_2d(
            np.arange(6, dtype=np.uint32).reshape(2, 3), PixelFormat.RGBA_PACKED
        )
        rotated = rotate(buffer, 90)
        assert rotated.format == PixelFormat.RGBA_PACKED
        assert (rotated.width, rotated.height) == (2, 3)

    @pytest.mark.parametrize(
        "buffer",
        [
            luma([[1, 2, 3], [4, 5, 6]]),
            PixelBuffer.from_2d(
                np.arange(6, dtype=np.uint32).reshape(2, 3), PixelFormat.RGBA_PACKED
            ),
        ],
        ids=["luma", "rgba"],
    )
    def test_quarter_turns_compose(self, buffer) -> None:
        assert rotate(rotate(buffer, 90), 270) == buffer
        assert rotate(rotate(buffer, -90), 90) == buffer
        assert rotate(buffer, 180) == rotate(rotate(buffer, 90), 90)
        assert rotate(rotate(rotate(rotate(buffer, 90), 90), 90), 90) == buffer


class TestCrop:
    """Tests for percentage crop."""

    def test_crops_both_axes(self) -> None:
        buffer = luma(np.arange(100 * 50).reshape(50, 100) % 256)
        cropped = crop(buffer, 10, 20, 10, 10)
        assert (cropped.width, cropped.height) == (70, 40)
        assert cropped.as_2d()[0, 0] == buffer.as_2d()[5, 10]

    def test_axis_needs_both_margins(self) -> None:
        """A single margin on an axis leaves that axis alone."""
        buffer = luma(np.zeros((50, 100)))
        cropped = crop(buffer, 0, 20, 10, 10)
        assert (cropped.width, cropped.height) == (100, 40)

    def test_margins_summing_to_100_are_ignored(self) -> None:
        buffer = luma(np.zeros((50, 100)))
        assert crop(buffer, 60, 40, 0, 0) is buffer

    def test_no_margins_returns_input(self) -> None:
        buffer = luma(np.zeros((4, 4)))
        assert crop(buffer, 0, 0, 0, 0) is buffer

    def test_offsets_are_floored(self) -> None:
        buffer = luma(np.zeros((10, 15)))
        cropped = crop(buffer, 10, 10, 0, 0)
        # 15 * 10 // 100 == 1 on each side
        assert cropped.width == 13


class TestDownscale:
    """Tests for downscale2x."""

    def test_luma_takes_block_minimum(self) -> None:
        buffer = luma([[9, 8, 7, 6, 5], [4, 3, 2, 1, 0], [1, 1, 1, 1, 1]])
        half = downscale2x(buffer)
        assert (half.width, half.height) == (2, 1)
        assert half.as_2d().tolist() == [[3, 1]]

    def test_rgba_takes_top_left(self) -> None:
        arr = np.arange(16, dtype=np.uint32).reshape(4, 4)
        half = downscale2x(PixelBuffer.from_2d(arr, PixelFormat.RGBA_PACKED))
        assert half.as_2d().tolist() == [[0, 2], [8, 10]]

    def test_single_pixel_becomes_empty(self) -> None:
        half = downscale2x(luma([[1]]))
        assert (half.width, half.height) == (0, 0)


class TestRemoveStrides:
    """Tests for dense extraction from strided planes."""

    def test_row_padding_is_dropped(self) -> None:
        data = np.array(
            [1, 2, 3, 0, 0, 4, 5, 6, 0, 0], dtype=np.uint8
        )
        buffer = remove_strides(ImagePlane(data, row_stride=5, pixel_stride=1), Rect(0, 0, 3, 2))
        assert buffer.as_2d().tolist() == [[1, 2, 3], [4, 5, 6]]

    def test_pixel_stride_skips_samples(self) -> None:
        data = np.array([1, 0, 2, 0, 3, 0, 4, 0, 5, 0, 6, 0], dtype=np.uint8)
        plane = ImagePlane(data, row_stride=6, pixel_stride=2)
        buffer = remove_strides(plane, Rect(0, 0, 3, 2))
        assert buffer.as_2d().tolist() == [[1, 2, 3], [4, 5, 6]]

    def test_crop_rect_offset(self) -> None:
        data = np.arange(16, dtype=np.uint8)
        plane = ImagePlane(data, row_stride=4, pixel_stride=1)
        buffer = remove_strides(plane, Rect(1, 1, 3, 3))
        assert buffer.as_2d().tolist() == [[5, 6], [9, 10]]

    def test_dense_plane_bulk_copy(self) -> None:
        data = np.arange(6, dtype=np.uint8)
        buffer = remove_strides(ImagePlane(data, 3, 1), Rect(0, 0, 3, 2))
        assert buffer.data.tolist() == [0, 1, 2, 3, 4, 5]


class TestColour:
    """Tests for packing and luminance."""

    def test_luminance_weights_green_twice(self) -> None:
        bgr = np.zeros((1, 1, 3), dtype=np.uint8)
        bgr[0, 0] = (0, 255, 0)
        assert luminance(bgr_to_buffer(bgr)).tolist() == [[127]]

    def test_luminance_of_luma_is_identity(self) -> None:
        buffer = luma([[10, 20]])
        assert luminance(buffer).tolist() == [[10, 20]]

    def test_packed_pixels_are_opaque(self) -> None:
        bgr = np.full((1, 1, 3), 7, dtype=np.uint8)
        assert int(bgr_to_buffer(bgr).data[0]) >> 24 == 0xFF


class TestCodec:
    """Tests for the OpenCV codec and JPEG helpers."""

    def test_cv2_codec_satisfies_protocol(self) -> None:
        assert isinstance(CV2ImageCodec(), ImageCodec)

    def test_encode_rejects_bad_quality(self) -> None:
        buffer = luma(np.zeros((8, 8)))
        with pytest.raises(InvalidArgumentError):
            encode_jpeg(buffer, 101)

    def test_jpeg_to_rgba(self) -> None:
        bgr = np.full((12, 16, 3), 128, dtype=np.uint8)
        data = CV2ImageCodec().encode_jpeg(bgr, 90)
        assert data[:2] == b"\xff\xd8"
        buffer = jpeg_to_rgba(data)
        assert (buffer.width, buffer.height) == (16, 12)
        assert buffer.format == PixelFormat.RGBA_PACKED

    @pytest.mark.parametrize("data", [b"", b"definitely not a jpeg"])
    def test_jpeg_to_rgba_rejects_garbage(self, data: bytes) -> None:
        with pytest.raises(FrameDecodeError, match="JPEG conversion error"):
            jpeg_to_rgba(data)

    def test_scale_to_long_side_downscales(self) -> None:
        buffer = bgr_to_buffer(np.zeros((100, 200, 3), dtype=np.uint8))
        scaled = scale_to_long_side(buffer, 100)
        assert (scaled.width, scaled.height) == (100, 50)

    def test_scale_to_long_side_never_enlarges(self) -> None:
        buffer = bgr_to_buffer(np.zeros((100, 200, 3), dtype=np.uint8))
        assert scale_to_long_side(buffer, 400) is buffer


class TestImageToBuffer:
    """Tests for reader image conversion."""

    def test_yuv_image_yields_luma_of_crop_rect(self) -> None:
        y = np.arange(24, dtype=np.uint8)
        uv = np.full(6, 128, dtype=np.uint8)
        image = Image(
            4,
            4,
            ImageFormat.YUV_420_888,
            [ImagePlane(y, 6, 1), ImagePlane(uv, 3, 1), ImagePlane(uv, 3, 1)],
            crop_rect=Rect(0, 0, 4, 4),
        )
        buffer = image_to_buffer(image)
        assert buffer.format == PixelFormat.YUV_420_888
        assert buffer.as_2d()[1].tolist() == [6, 7, 8, 9]

    def test_jpeg_image_yields_rgba(self) -> None:
        data = CV2ImageCodec().encode_jpeg(np.zeros((8, 10, 3), dtype=np.uint8))
        image = Image(
            10, 8, ImageFormat.JPEG, [ImagePlane(np.frombuffer(data, np.uint8), 0, 0)]
        )
        buffer = image_to_buffer(image)
        assert buffer.format == PixelFormat.RGBA_PACKED
        assert (buffer.width, buffer.height) == (10, 8)
