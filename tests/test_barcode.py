"""Tests for the barcode frame gate and decode pipeline."""

import numpy as np
import pytest

from camera_scanner.devices.barcode import (
    MAX_DECODE_STEPS,
    BarcodeCropSpec,
    BarcodeDecoder,
    BarcodePipeline,
    CameraBarcode,
    FrameGate,
    compute_target_rotation,
)
from camera_scanner.devices.orientation import DeviceTilts, TakePictureMode
from camera_scanner.observability import BARCODE_DECODE, PipelineStats
from camera_scanner.utils.image import PixelBuffer, PixelFormat
from tests.helpers import (
    FixedDecoder,
    RaisingDecoder,
    ScriptedDecoder,
    assert_implements_protocol,
    render_ean13,
)


def gray(width: int, height: int) -> PixelBuffer:
    return PixelBuffer.from_2d(
        np.full((height, width), 200, dtype=np.uint8), PixelFormat.YUV_420_888
    )


def make_pipeline(decoder, crop=BarcodeCropSpec(), rotation=0, stats=None):
    events: list[CameraBarcode] = []
    pipeline = BarcodePipeline(decoder, crop, lambda: rotation, events.append, stats)
    return pipeline, events


class TestFrameGate:
    """Tests for single-slot frame admission."""

    def test_closed_gate_drops(self) -> None:
        gate = FrameGate()
        assert not gate.try_admit()
        assert gate.dropped == 1

    def test_one_frame_in_flight(self) -> None:
        """Verifies frames are dropped while one is being processed.

        Arrangement:
        Open gate.

        Action:
        Admit, try again, release, try again.

        Assertion Strategy:
        Second attempt is dropped; after release the next frame is admitted.
        """
        gate = FrameGate()
        gate.open()
        assert gate.try_admit()
        assert not gate.try_admit()
        gate.release()
        assert gate.try_admit()
        assert (gate.admitted, gate.dropped) == (2, 1)

    def test_release_after_close_stays_closed(self) -> None:
        gate = FrameGate()
        gate.open()
        gate.try_admit()
        gate.close()
        gate.release()
        assert not gate.next_image_is_requested
        assert not gate.try_admit()

    def test_reopen(self) -> None:
        gate = FrameGate()
        gate.open()
        gate.close()
        gate.open()
        assert gate.is_open
        assert gate.try_admit()


class TestCameraBarcode:
    def test_decoded_map(self) -> None:
        assert CameraBarcode("123", "EAN_8").to_map() == {
            "text": "123",
            "format": "EAN_8",
            "errorDescription": None,
        }

    def test_error_map_has_empty_strings(self) -> None:
        assert CameraBarcode(error_description="boom").to_map() == {
            "text": "",
            "format": "",
            "errorDescription": "boom",
        }


class TestBarcodePipeline:
    """Tests for rotation, crop and multi-scale decoding."""

    def test_first_step_hit(self) -> None:
        pipeline, events = make_pipeline(FixedDecoder("4006381333931", "EAN_13"))
        assert pipeline.process(gray(64, 48)) == 0
        assert events == [CameraBarcode("4006381333931", "EAN_13", None)]

    def test_downscales_until_found(self) -> None:
        decoder = ScriptedDecoder(max_width=200)
        pipeline, events = make_pipeline(decoder)

        assert pipeline.process(gray(800, 600)) == 2

        assert decoder.calls == [(800, 600), (400, 300), (200, 150)]
        assert events[0].format == "EAN_8"

    def test_gives_up_after_max_steps(self) -> None:
        decoder = ScriptedDecoder()
        pipeline, events = make_pipeline(decoder)
        assert pipeline.process(gray(800, 600)) is None
        assert len(decoder.calls) == MAX_DECODE_STEPS
        assert events == []

    def test_stops_at_empty_frame(self) -> None:
        decoder = ScriptedDecoder()
        pipeline, _ = make_pipeline(decoder)
        pipeline.process(gray(1, 1))
        assert decoder.calls == [(1, 1)]

    def test_rotation_then_crop(self) -> None:
        """Crop margins apply to the upright frame, after rotation."""
        decoder = FixedDecoder()
        pipeline, _ = make_pipeline(
            decoder, BarcodeCropSpec(left=10, right=10), rotation=90
        )
        pipeline.process(gray(200, 100))
        # rotated to 100x200, then 10% off each side of the width
        assert decoder.calls == [(80, 200)]

    def test_decoder_error_becomes_event(self) -> None:
        pipeline, events = make_pipeline(RaisingDecoder(RuntimeError("bad luma")))
        assert pipeline.process(gray(10, 10)) is None
        assert events[0].text is None
        assert events[0].error_description == "RuntimeError('bad luma')"

    def test_stats(self) -> None:
        stats = PipelineStats()
        hit, _ = make_pipeline(ScriptedDecoder(max_width=100), stats=stats)
        miss, _ = make_pipeline(ScriptedDecoder(), stats=stats)
        broken, _ = make_pipeline(RaisingDecoder(), stats=stats)

        hit.process(gray(400, 40))
        miss.process(gray(400, 40))
        broken.process(gray(400, 40))

        summary = stats.get_summary(BARCODE_DECODE)
        assert summary.total == 3
        assert summary.step_counts == {2: 1}
        assert summary.error_counts == {"NotFound": 1, "RuntimeError": 1}


class TestTargetRotation:
    def test_uses_capture_rotation(self) -> None:
        tilts = DeviceTilts(
            horizontal_tilt=0.0,
            vertical_tilt=0.0,
            is_horizontal_tilt_available=True,
            is_vertical_tilt_available=True,
            mode=TakePictureMode.NORMAL_SHOT,
            target_image_rotation=270,
            locked_capture_angle=-1,
            device_orientation_angle=0,
            is_ui_rotation_equal_acc_rotation=True,
        )
        assert compute_target_rotation(tilts, 0, 90) == 0


class TestZXingDecoder:
    """Tests against the real zxing-cpp reader."""

    @pytest.fixture
    def zxing_decoder(self):
        pytest.importorskip("zxingcpp")
        from camera_scanner.devices.barcode import ZXingBarcodeDecoder

        return ZXingBarcodeDecoder()

    def test_satisfies_protocol(self, zxing_decoder) -> None:
        assert_implements_protocol(zxing_decoder, BarcodeDecoder)

    def test_decodes_rendered_ean13(self, zxing_decoder) -> None:
        buffer = PixelBuffer.from_2d(render_ean13("400638133393"), PixelFormat.YUV_420_888)
        found = zxing_decoder.decode(buffer)
        assert found is not None
        assert (found.text, found.format) == ("4006381333931", "EAN_13")

    def test_blank_frame_finds_nothing(self, zxing_decoder) -> None:
        assert zxing_decoder.decode(gray(300, 100)) is None

    def test_empty_buffer(self, zxing_decoder) -> None:
        assert zxing_decoder.decode(gray(0, 0)) is None

    def test_pipeline_rights_sideways_frame(self, zxing_decoder) -> None:
        """Verifies the pipeline rotates a sensor frame before decoding.

        Arrangement:
        EAN-13 image turned a quarter counter-clockwise, as a sensor
        mounted at 90 degrees delivers it.

        Action:
        Process with rotation 90.

        Assertion Strategy:
        The code is found on the first step.
        """
        sideways = np.ascontiguousarray(np.rot90(render_ean13("400638133393")))
        pipeline, events = make_pipeline(zxing_decoder, rotation=90)

        step = pipeline.process(PixelBuffer.from_2d(sideways, PixelFormat.YUV_420_888))

        assert step == 0
        assert events[0].to_map()["text"] == "4006381333931"
