"""Tests for the digital twin drivers and the driver factory."""

from __future__ import annotations

from pathlib import Path

import pytest

from camera_scanner.devices.errors import CameraAccessError
from camera_scanner.drivers import config as driver_config
from camera_scanner.drivers.cameras import (
    CameraDevice,
    CameraDriver,
    CaptureSession,
    DigitalTwinCameraDriver,
    DigitalTwinConfig,
    ImageReader,
    MediaRecorder,
    PreviewTexture,
)
from camera_scanner.drivers.cameras.types import (
    AeState,
    AeTrigger,
    AfState,
    AfTrigger,
    CameraErrorCode,
    ImageFormat,
    RecorderSettings,
    RequestKey,
    RequestTemplate,
    ResultKey,
    Size,
    Surface,
)
from camera_scanner.drivers.config import DriverFactory, PluginConfig
from camera_scanner.drivers.sensors import (
    DisplayInfo,
    DisplayRotation,
    MotionSensors,
    TwinDisplay,
    TwinMotionSensors,
)
from tests.helpers import assert_implements_protocol


class _DeviceCallback:
    def __init__(self) -> None:
        self.device = None
        self.events: list[tuple[str, object]] = []

    def on_opened(self, device) -> None:
        self.device = device
        self.events.append(("opened", None))

    def on_closed(self, device) -> None:
        self.events.append(("closed", None))

    def on_disconnected(self, device) -> None:
        self.events.append(("disconnected", None))

    def on_error(self, device, error_code: int) -> None:
        self.events.append(("error", error_code))


class _SessionCallback:
    def __init__(self) -> None:
        self.configured = None
        self.failed = False

    def on_configured(self, session) -> None:
        self.configured = session

    def on_configure_failed(self, session) -> None:
        self.failed = True


class _ResultRecorder:
    def __init__(self) -> None:
        self.results = []

    def on_capture_progressed(self, session, request, result) -> None:
        pass

    def on_capture_completed(self, session, request, result) -> None:
        self.results.append(result)


class _MotionRecorder:
    def __init__(self) -> None:
        self.angles: list[int] = []
        self.vectors: list[list[float]] = []

    def on_orientation_changed(self, angle: int) -> None:
        self.angles.append(angle)

    def on_sensor_changed(self, values) -> None:
        self.vectors.append(list(values))


def open_device(driver: DigitalTwinCameraDriver, name: str = "0"):
    callback = _DeviceCallback()
    driver.open_camera(name, callback, None)
    return callback.device, callback


def open_session(device, *surfaces: Surface):
    callback = _SessionCallback()
    device.create_capture_session(list(surfaces), callback, None)
    return callback.configured


class TestProtocolCompliance:
    """The twins must satisfy the protocols the capture core uses."""

    def test_driver(self, driver) -> None:
        assert_implements_protocol(driver, CameraDriver)

    def test_device_and_session(self, driver) -> None:
        device, _ = open_device(driver)
        texture = driver.create_preview_texture()
        session = open_session(device, texture.surface)
        assert_implements_protocol(device, CameraDevice)
        assert_implements_protocol(session, CaptureSession)

    def test_outputs(self, driver, tmp_path) -> None:
        assert_implements_protocol(
            driver.create_image_reader(64, 48, ImageFormat.JPEG, 1), ImageReader
        )
        # surface is only readable once prepared
        recorder = driver.create_media_recorder()
        recorder.configure(TestMediaRecorder.settings(tmp_path / "p.mp4"))
        recorder.prepare()
        assert_implements_protocol(recorder, MediaRecorder)
        assert_implements_protocol(driver.create_preview_texture(), PreviewTexture)

    def test_sensors(self) -> None:
        assert_implements_protocol(TwinMotionSensors(), MotionSensors)
        assert_implements_protocol(TwinDisplay(), DisplayInfo)


class TestOpenCamera:
    def test_unknown_camera_raises(self, driver) -> None:
        with pytest.raises(CameraAccessError, match="9"):
            driver.open_camera("9", _DeviceCallback(), None)

    def test_open_error_is_reported(self) -> None:
        driver = DigitalTwinCameraDriver(
            DigitalTwinConfig(open_error_code=CameraErrorCode.CAMERA_IN_USE)
        )
        device, callback = open_device(driver)
        assert device is None
        assert callback.events == [("error", CameraErrorCode.CAMERA_IN_USE)]
        assert driver.devices == []

    def test_close_reports_once(self, driver) -> None:
        device, callback = open_device(driver)
        device.close()
        device.close()
        assert callback.events == [("opened", None), ("closed", None)]
        assert driver.devices == []
        with pytest.raises(CameraAccessError):
            device.create_capture_request(RequestTemplate.PREVIEW)

    def test_simulated_failures(self, driver) -> None:
        device, callback = open_device(driver)
        device.simulate_error(CameraErrorCode.CAMERA_DEVICE)
        device.simulate_disconnect()
        assert callback.events[1:] == [
            ("error", CameraErrorCode.CAMERA_DEVICE),
            ("disconnected", None),
        ]

    def test_fixed_focus_camera_requests_af_off(self, driver) -> None:
        device, _ = open_device(driver, "1")
        builder = device.create_capture_request(RequestTemplate.PREVIEW)
        assert builder.get(RequestKey.CONTROL_AF_MODE) == 0

    def test_recording_profiles(self, driver) -> None:
        profile = driver.get_recording_profile(0, "LOW")
        assert profile.video_size == Size(176, 144)
        assert driver.get_recording_profile(1, "2160P") is None
        assert driver.get_recording_profile(5, "LOW") is None


class TestCaptureSession:
    """Tests for request scheduling and simulated 3A."""

    @pytest.fixture
    def rig(self, driver):
        device, _ = open_device(driver)
        texture = driver.create_preview_texture()
        reader = driver.create_image_reader(64, 48, ImageFormat.YUV_420_888, 1)
        session = open_session(device, texture.surface, reader.surface)
        return device, session, texture, reader

    def test_requests_must_target_configured_surfaces(self, driver, rig) -> None:
        device, session, _, _ = rig
        builder = device.create_capture_request(RequestTemplate.PREVIEW)
        with pytest.raises(CameraAccessError, match="no target"):
            session.set_repeating_request(builder.build(), None, None)
        builder.add_target(driver.create_preview_texture().surface)
        with pytest.raises(CameraAccessError, match="not configured"):
            session.capture(builder.build(), None, None)

    def test_one_shot_requests_run_before_repeating(self, rig) -> None:
        """Verifies queued captures take the next frames, then the preview resumes.

        Arrangement:
        Repeating request into the texture; one capture into the reader.

        Action:
        Pump three frames.

        Assertion Strategy:
        The capture result comes first and the reader got one frame; the
        texture got the two repeating frames.
        """
        device, session, texture, reader = rig
        preview = device.create_capture_request(RequestTemplate.PREVIEW)
        preview.add_target(texture.surface)
        still = device.create_capture_request(RequestTemplate.STILL_CAPTURE)
        still.add_target(reader.surface)
        results = _ResultRecorder()

        session.set_repeating_request(preview.build(), results, None)
        session.capture(still.build(), results, None)
        assert device.pump(3) == 3

        templates = [r.request.template for r in results.results]
        assert templates == [
            RequestTemplate.STILL_CAPTURE,
            RequestTemplate.PREVIEW,
            RequestTemplate.PREVIEW,
        ]
        assert reader.frames_delivered == 1
        assert texture.frames_rendered == 2

    def test_precapture_sequence(self, driver, rig) -> None:
        device, session, texture, _ = rig
        builder = device.create_capture_request(RequestTemplate.PREVIEW)
        builder.add_target(texture.surface)
        results = _ResultRecorder()
        builder.set(RequestKey.CONTROL_AE_PRECAPTURE_TRIGGER, AeTrigger.START)
        session.capture(builder.build(), results, None)
        builder.set(RequestKey.CONTROL_AE_PRECAPTURE_TRIGGER, AeTrigger.IDLE)
        session.set_repeating_request(builder.build(), results, None)

        device.pump(4)

        ae_states = [r.values[ResultKey.CONTROL_AE_STATE] for r in results.results]
        assert ae_states == [
            AeState.PRECAPTURE,
            AeState.PRECAPTURE,
            AeState.CONVERGED,
            AeState.CONVERGED,
        ]

    def test_af_trigger_locks_focus(self, rig) -> None:
        device, session, texture, _ = rig
        builder = device.create_capture_request(RequestTemplate.PREVIEW)
        builder.add_target(texture.surface)
        results = _ResultRecorder()
        session.set_repeating_request(builder.build(), results, None)
        device.pump(1)
        builder.set(RequestKey.CONTROL_AF_TRIGGER, AfTrigger.START)
        session.capture(builder.build(), results, None)
        builder.set(RequestKey.CONTROL_AF_TRIGGER, AfTrigger.CANCEL)
        session.capture(builder.build(), results, None)
        device.pump(2)

        af_states = [r.values[ResultKey.CONTROL_AF_STATE] for r in results.results]
        assert af_states == [
            AfState.PASSIVE_FOCUSED,
            AfState.FOCUSED_LOCKED,
            AfState.PASSIVE_FOCUSED,
        ]

    def test_new_session_closes_the_old_one(self, driver, rig) -> None:
        device, session, texture, _ = rig
        replacement = open_session(device, texture.surface)
        assert session.closed
        assert device.session is replacement
        with pytest.raises(CameraAccessError):
            session.stop_repeating()

    def test_configure_failure(self) -> None:
        driver = DigitalTwinCameraDriver(DigitalTwinConfig(fail_session_configure=True))
        device, _ = open_device(driver)
        callback = _SessionCallback()
        device.create_capture_session([driver.create_preview_texture().surface], callback, None)
        assert callback.failed
        assert callback.configured is None


class TestImageReader:
    """Tests for the bounded reader queue."""

    def _frame(self, driver, reader, count: int = 1) -> None:
        device, _ = open_device(driver)
        session = open_session(device, reader.surface)
        builder = device.create_capture_request(RequestTemplate.RECORD)
        builder.add_target(reader.surface)
        session.set_repeating_request(builder.build(), None, None)
        device.pump(count)

    def test_drops_frames_while_full(self, driver) -> None:
        reader = driver.create_image_reader(64, 48, ImageFormat.YUV_420_888, 1)
        self._frame(driver, reader, count=3)
        assert (reader.frames_delivered, reader.frames_dropped) == (1, 2)

        image = reader.acquire_next_image()
        assert image.format == ImageFormat.YUV_420_888
        assert len(image.planes) == 3
        assert reader.acquire_next_image() is None
        image.close()

    def test_acquire_latest_closes_older_images(self, driver) -> None:
        reader = driver.create_image_reader(32, 24, ImageFormat.JPEG, 3)
        self._frame(driver, reader, count=3)
        latest = reader.acquire_latest_image()
        assert latest.planes[0].buffer[:2].tobytes() == b"\xff\xd8"
        assert reader.acquire_next_image() is None

    def test_row_padding(self) -> None:
        driver = DigitalTwinCameraDriver(DigitalTwinConfig(yuv_row_padding=16))
        reader = driver.create_image_reader(64, 48, ImageFormat.YUV_420_888, 1)
        self._frame(driver, reader)
        assert reader.acquire_next_image().planes[0].row_stride == 80

    def test_listener_runs_per_frame(self, driver) -> None:
        reader = driver.create_image_reader(64, 48, ImageFormat.JPEG, 1)
        seen = []

        def listener(r) -> None:
            image = r.acquire_next_image()
            seen.append(image.width)
            image.close()

        reader.set_on_image_available_listener(listener, None)
        self._frame(driver, reader, count=2)
        assert seen == [64, 64]

    def test_closed_reader_raises(self, driver) -> None:
        reader = driver.create_image_reader(64, 48, ImageFormat.JPEG, 1)
        reader.close()
        with pytest.raises(CameraAccessError):
            reader.acquire_next_image()

    def test_invalid_max_images(self, driver) -> None:
        with pytest.raises(ValueError):
            driver.create_image_reader(64, 48, ImageFormat.JPEG, 0)


class TestMediaRecorder:
    """Tests for the recorder state machine."""

    @staticmethod
    def settings(path: Path) -> RecorderSettings:
        return RecorderSettings(
            output_path=str(path),
            video_size=Size(176, 144),
            video_frame_rate=30,
            video_bit_rate=1_000_000,
            video_codec="h264",
            file_format="mp4",
        )

    def test_lifecycle_writes_placeholder(self, driver, tmp_path) -> None:
        recorder = driver.create_media_recorder()
        path = tmp_path / "REC1.mp4"
        recorder.configure(self.settings(path))
        recorder.prepare()
        assert recorder.surface.size == Size(176, 144)
        recorder.start()
        recorder.pause()
        recorder.resume()
        recorder.stop()

        data = path.read_bytes()
        assert data[4:8] == b"ftyp"
        assert int.from_bytes(data[-4:], "big") == 0
        assert recorder.state == "idle"

    def test_start_before_prepare_fails(self, driver, tmp_path) -> None:
        recorder = driver.create_media_recorder()
        recorder.configure(self.settings(tmp_path / "a.mp4"))
        with pytest.raises(RuntimeError, match="configured"):
            recorder.start()

    def test_prepare_needs_existing_directory(self, driver, tmp_path) -> None:
        recorder = driver.create_media_recorder()
        recorder.configure(self.settings(tmp_path / "missing" / "a.mp4"))
        with pytest.raises(OSError):
            recorder.prepare()

    def test_surface_before_prepare(self, driver) -> None:
        with pytest.raises(RuntimeError):
            _ = driver.create_media_recorder().surface


class TestSensorTwins:
    def test_display_rotation_notifies(self) -> None:
        display = TwinDisplay()
        calls = []
        display.add_configuration_listener(lambda: calls.append(display.get_rotation()))
        display.rotate(DisplayRotation.ROTATION_90)
        assert calls == [DisplayRotation.ROTATION_90]

    def test_sensors_without_orientation_stay_silent(self) -> None:
        sensors = TwinMotionSensors(orientation=False)
        listener = _MotionRecorder()
        sensors.start(listener)
        sensors.emit_orientation(90)
        sensors.emit_rotation_vector([0.0, 0.0, 0.0, 1.0])
        assert listener.angles == []
        assert listener.vectors == [[0.0, 0.0, 0.0, 1.0]]
        assert sensors.active

    def test_stop_detaches_listener(self) -> None:
        sensors = TwinMotionSensors()
        listener = _MotionRecorder()
        sensors.start(listener)
        sensors.stop()
        sensors.emit_orientation(180)
        assert not sensors.active
        assert listener.angles == []


class TestDriverFactory:
    """Tests for the global driver factory."""

    def test_creates_twin_driver_from_config(self, tmp_path) -> None:
        twin = DigitalTwinConfig(precapture_frames=5)
        factory = DriverFactory(PluginConfig(cache_dir=tmp_path, twin=twin))
        driver = factory.create_camera_driver()
        assert isinstance(driver, DigitalTwinCameraDriver)
        assert driver.config.precapture_frames == 5
        assert isinstance(factory.create_motion_sensors(), TwinMotionSensors)
        assert isinstance(factory.create_display(), TwinDisplay)

    def test_global_factory(self, tmp_path) -> None:
        first = driver_config.get_factory()
        assert driver_config.get_factory() is first

        driver_config.configure(PluginConfig(cache_dir=tmp_path))
        assert driver_config.get_factory().config.cache_dir == tmp_path

        driver_config.reset_factory()
        assert driver_config.get_factory() is not first

    def test_default_cache_dir(self) -> None:
        assert PluginConfig().cache_dir.parts[-2:] == (".camera-scanner", "cache")
