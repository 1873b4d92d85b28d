"""Host method surface.

``CameraMethodHandler`` is the in-process counterpart of the plugin's
method channel: the host calls ``handle(method, arguments)`` and gets a
Future resolving to the method's value or failing with
``MethodCallError``. Camera and device events go to the host listener;
barcode events go to ``camera/barcodeStream/{id}`` channels in the
``ChannelRegistry``.

Example:
    handler = CameraMethodHandler(driver, channels, listener)
    camera_id = handler.handle("create", {
        "cameraName": "0", "resolutionPreset": "custom43",
    }).result()["cameraId"]
    handler.handle("initialize", {"isBarcodeStreamEnabled": True})
    channels.channel("camera/barcodeStream/0").listen(print)
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Future
from pathlib import Path
from typing import TYPE_CHECKING, Any

from camera_scanner.devices.barcode import BarcodeCropSpec, ZXingBarcodeDecoder
from camera_scanner.devices.camera import Camera, CameraConfig
from camera_scanner.devices.capture import CaptureTimeouts
from camera_scanner.devices.errors import CameraAccessError, ErrorCode
from camera_scanner.devices.features import (
    ExposureMode,
    FlashMode,
    FocusMode,
    Point,
    parse_mode,
)
from camera_scanner.devices.messenger import (
    EventMessenger,
    FutureResult,
    ImmediateExecutor,
)
from camera_scanner.devices.orientation import (
    DeviceOrientationManager,
    deserialize_device_orientation,
)
from camera_scanner.devices.resolution import ResolutionPreset, is_supported_camera_name
from camera_scanner.drivers.cameras.types import LensFacing
from camera_scanner.drivers.config import PluginConfig
from camera_scanner.drivers.sensors import TwinDisplay, TwinMotionSensors
from camera_scanner.observability import DeviceLogHandler, get_logger
from camera_scanner.observability.logging import ROOT_LOGGER_NAME

if TYPE_CHECKING:
    from camera_scanner.devices.barcode import BarcodeDecoder
    from camera_scanner.devices.capture import Clock
    from camera_scanner.devices.messenger import (
        CameraEventListener,
        ChannelRegistry,
        MainThreadExecutor,
        MethodResult,
    )
    from camera_scanner.drivers.cameras import CameraDriver
    from camera_scanner.drivers.sensors import DisplayInfo, MotionSensors
    from camera_scanner.observability import PipelineStats

logger = get_logger(__name__)

BARCODE_STREAM_CHANNEL = "camera/barcodeStream/{}"

CAMERA_NOT_FOUND_MESSAGE = (
    "Camera not found. Please call the 'create' method before calling 'initialize'."
)


def available_cameras(driver: CameraDriver) -> list[dict[str, Any]]:
    """Describe every camera whose name is a non-negative integer."""
    cameras = []
    for name in driver.get_camera_names():
        if not is_supported_camera_name(name):
            logger.debug("Skipping camera with unsupported name", camera=name)
            continue
        chars = driver.get_characteristics(name)
        cameras.append(
            {
                "name": name,
                "sensorOrientation": chars.sensor_orientation,
                "lensFacing": chars.lens_facing.value,
            }
        )
    return cameras


def _session_id(arguments: dict[str, Any]) -> int:
    value = arguments.get("sessionId")
    if value is None:
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class CameraMethodHandler:
    """Dispatches host method calls to the current Camera.

    Args:
        driver: Camera backend.
        channels: Registry the barcode stream channels are created in.
        listener: Receives camera and device events.
        config: Plugin-wide settings.
        main: Executor results and events are published on; inline by default.
        display: Display state for the orientation engine.
        sensors: Motion sensors for the orientation engine.
        decoder_factory: Builds barcode decoders.
        clock: Time source of the capture timeouts.
        stats: Optional statistics sink shared by all cameras.
    """

    def __init__(
        self,
        driver: CameraDriver,
        channels: ChannelRegistry,
        listener: CameraEventListener | None = None,
        config: PluginConfig | None = None,
        main: MainThreadExecutor | None = None,
        display: DisplayInfo | None = None,
        sensors: MotionSensors | None = None,
        decoder_factory: Callable[[], BarcodeDecoder] = ZXingBarcodeDecoder,
        clock: Clock | None = None,
        stats: PipelineStats | None = None,
    ) -> None:
        self.driver = driver
        self.channels = channels
        self.listener = listener
        self.config = config or PluginConfig()
        self.main = main or ImmediateExecutor()
        self.display = display or TwinDisplay()
        self.sensors = sensors or TwinMotionSensors()
        self.decoder_factory = decoder_factory
        self.clock = clock
        self.stats = stats
        self.camera: Camera | None = None
        self.camera_session_id: int | None = None
        self._messenger: EventMessenger | None = None
        self._log_handler: DeviceLogHandler | None = None

        self._methods: dict[str, Callable[[dict[str, Any], MethodResult], None]] = {
            "availableCameras": self._available_cameras,
            "create": self._create,
            "initialize": self._initialize,
            "takePicture": self._with_camera(lambda c, a, r: c.take_picture(r)),
            "prepareForVideoRecording": lambda a, r: r.success(None),
            "startVideoRecording": self._with_camera(
                lambda c, a, r: c.start_video_recording(r)
            ),
            "stopVideoRecording": self._with_camera(
                lambda c, a, r: c.stop_video_recording(r)
            ),
            "pauseVideoRecording": self._with_camera(
                lambda c, a, r: c.pause_video_recording(r)
            ),
            "resumeVideoRecording": self._with_camera(
                lambda c, a, r: c.resume_video_recording(r)
            ),
            "setFlashMode": self._with_camera(self._set_flash_mode),
            "setExposureMode": self._with_camera(self._set_exposure_mode),
            "setExposurePoint": self._with_camera(
                lambda c, a, r: c.set_exposure_point(r, self._point(a))
            ),
            "getMinExposureOffset": self._with_camera(
                lambda c, a, r: r.success(c.get_min_exposure_offset())
            ),
            "getMaxExposureOffset": self._with_camera(
                lambda c, a, r: r.success(c.get_max_exposure_offset())
            ),
            "getExposureOffsetStepSize": self._with_camera(
                lambda c, a, r: r.success(c.get_exposure_offset_step_size())
            ),
            "setExposureOffset": self._with_camera(
                lambda c, a, r: c.set_exposure_offset(r, float(a.get("offset", 0.0)))
            ),
            "setFocusMode": self._with_camera(self._set_focus_mode),
            "setFocusPoint": self._with_camera(
                lambda c, a, r: c.set_focus_point(r, self._point(a))
            ),
            "stopBarcodeStream": self._with_camera(
                lambda c, a, r: c.stop_barcode_stream(r)
            ),
            "getMaxZoomLevel": self._with_camera(
                lambda c, a, r: r.success(c.get_max_zoom_level())
            ),
            "getMinZoomLevel": self._with_camera(
                lambda c, a, r: r.success(c.get_min_zoom_level())
            ),
            "setZoomLevel": self._with_camera(self._set_zoom_level),
            "pausePreview": self._with_camera(lambda c, a, r: c.pause_preview(r)),
            "resumePreview": self._with_camera(lambda c, a, r: c.resume_preview(r)),
            "dispose": self._dispose,
        }

    def __repr__(self) -> str:
        return (
            f"CameraMethodHandler(camera={self.camera!r}, "
            f"session_id={self.camera_session_id})"
        )

    @property
    def methods(self) -> list[str]:
        return sorted(self._methods)

    def handle(self, method: str, arguments: dict[str, Any] | None = None) -> Future[Any]:
        """Dispatch one method call; the Future carries its outcome."""
        result = FutureResult(method)
        handler = self._methods.get(method)
        if handler is None:
            logger.warning("Unknown method", method=method)
            result.not_implemented()
            return result.future

        args = arguments or {}
        logger.debug("Method call", method=method, arguments=sorted(args))
        try:
            handler(args, result)
        except CameraAccessError as e:
            logger.warning("Camera access failed", method=method, error=str(e))
            result.error(ErrorCode.CAMERA_ACCESS, str(e))
        except Exception as e:
            logger.exception("Method call failed", method=method, error=str(e))
            if not result.future.done():
                result.future.set_exception(e)
        return result.future

    # -- helpers --------------------------------------------------------------

    def _with_camera(
        self, call: Callable[[Camera, dict[str, Any], MethodResult], None]
    ) -> Callable[[dict[str, Any], MethodResult], None]:
        def run(arguments: dict[str, Any], result: MethodResult) -> None:
            if self.camera is None:
                result.error(ErrorCode.CAMERA_NOT_FOUND, CAMERA_NOT_FOUND_MESSAGE)
                return
            call(self.camera, arguments, result)

        return run

    @staticmethod
    def _point(arguments: dict[str, Any]) -> Point:
        if arguments.get("reset"):
            return Point(None, None)
        return Point(arguments.get("x"), arguments.get("y"))

    # -- lifecycle ------------------------------------------------------------

    def _available_cameras(self, arguments: dict[str, Any], result: MethodResult) -> None:
        result.success(available_cameras(self.driver))

    def _create(self, arguments: dict[str, Any], result: MethodResult) -> None:
        if self.camera is not None:
            self.camera.close()

        locked = arguments.get("lockedCaptureOrientation")
        config = CameraConfig(
            camera_name=str(arguments.get("cameraName")),
            resolution_preset=ResolutionPreset.parse(arguments.get("resolutionPreset", "")),
            enable_audio=bool(arguments.get("enableAudio", False)),
            long_side_size=int(
                arguments.get("longSideSize", self.config.default_long_side_size)
            ),
            image_quality=int(
                arguments.get("imageQuality", self.config.default_image_quality)
            ),
            locked_capture_orientation=(
                deserialize_device_orientation(locked) if locked is not None else None
            ),
        )
        characteristics = self.driver.get_characteristics(config.camera_name)
        texture = self.driver.create_preview_texture()
        messenger = EventMessenger(self.main, self.listener)
        manager = DeviceOrientationManager(
            messenger,
            self.display,
            self.sensors,
            locked_capture_orientation=config.locked_capture_orientation,
            is_front_facing=characteristics.lens_facing == LensFacing.FRONT,
            sensor_orientation=characteristics.sensor_orientation,
        )
        self.camera = Camera(
            self.driver,
            texture,
            config,
            messenger,
            manager,
            Path(self.config.cache_dir),
            timeouts=CaptureTimeouts(
                self.config.precapture_timeout_ms,
                self.config.pre_capture_focusing_timeout_ms,
                clock=self.clock,
            ),
            decoder_factory=self.decoder_factory,
            stats=self.stats,
        )
        self._messenger = messenger
        if self.config.forward_logs_to_host:
            self._attach_log_forwarding()
        logger.info(
            "Camera created",
            camera=config.camera_name,
            preset=config.resolution_preset.value,
            texture_id=texture.id,
        )
        result.success({"cameraId": texture.id})

    def _initialize(self, arguments: dict[str, Any], result: MethodResult) -> None:
        camera = self.camera
        if camera is None:
            result.error(ErrorCode.CAMERA_NOT_FOUND, CAMERA_NOT_FOUND_MESSAGE)
            return

        self.camera_session_id = _session_id(arguments)
        logger.debug("Camera initialize", session_id=self.camera_session_id)
        image_format_group = arguments.get("imageFormatGroup")
        if arguments.get("isBarcodeStreamEnabled"):
            crop = BarcodeCropSpec(
                left=int(arguments.get("cropLeft") or 0),
                right=int(arguments.get("cropRight") or 0),
                top=int(arguments.get("cropTop") or 0),
                bottom=int(arguments.get("cropBottom") or 0),
            )
            stream_id = arguments.get("barcodeStreamId")
            channel = self.channels.channel(
                BARCODE_STREAM_CHANNEL.format(0 if stream_id is None else stream_id)
            )
            camera.open(image_format_group, crop, channel)
        else:
            camera.open(image_format_group)
        result.success(None)

    def _dispose(self, arguments: dict[str, Any], result: MethodResult) -> None:
        try:
            if self.camera is not None:
                session_id = _session_id(arguments)
                if self.camera_session_id is None or self.camera_session_id == session_id:
                    logger.debug("Camera dispose", session_id=session_id)
                    self.camera_session_id = None
                    self.camera.dispose()
                    self._detach_log_forwarding()
                else:
                    logger.warning(
                        "Camera dispose request is ignored",
                        session_id=session_id,
                        camera_session_id=self.camera_session_id,
                    )
        except Exception as e:
            logger.exception("Camera dispose failed", error=str(e))
            result.error(ErrorCode.CAMERA_DISPOSE_ERROR, repr(e))
            return
        result.success(None)

    def _attach_log_forwarding(self) -> None:
        if self._log_handler is None:
            self._log_handler = DeviceLogHandler(lambda: self._messenger, logging.INFO)
            logging.getLogger(ROOT_LOGGER_NAME).addHandler(self._log_handler)

    def _detach_log_forwarding(self) -> None:
        if self._log_handler is not None:
            logging.getLogger(ROOT_LOGGER_NAME).removeHandler(self._log_handler)
            self._log_handler = None

    # -- argument validation --------------------------------------------------

    def _set_flash_mode(
        self, camera: Camera, arguments: dict[str, Any], result: MethodResult
    ) -> None:
        value = arguments.get("mode")
        mode = parse_mode(FlashMode, value)
        if mode is None:
            result.error(ErrorCode.SET_FLASH_MODE_FAILED, f"Unknown flash mode {value}")
            return
        camera.set_flash_mode(result, mode)

    def _set_exposure_mode(
        self, camera: Camera, arguments: dict[str, Any], result: MethodResult
    ) -> None:
        value = arguments.get("mode")
        mode = parse_mode(ExposureMode, value)
        if mode is None:
            result.error(
                ErrorCode.SET_EXPOSURE_MODE_FAILED, f"Unknown exposure mode {value}"
            )
            return
        camera.set_exposure_mode(result, mode)

    def _set_focus_mode(
        self, camera: Camera, arguments: dict[str, Any], result: MethodResult
    ) -> None:
        value = arguments.get("mode")
        mode = parse_mode(FocusMode, value)
        if mode is None:
            result.error(ErrorCode.SET_FOCUS_MODE_FAILED, f"Unknown focus mode {value}")
            return
        camera.set_focus_mode(result, mode)

    def _set_zoom_level(
        self, camera: Camera, arguments: dict[str, Any], result: MethodResult
    ) -> None:
        zoom = arguments.get("zoom")
        if zoom is None:
            result.error(
                ErrorCode.ZOOM_ERROR,
                "setZoomLevel is called without specifying a zoom level.",
            )
            return
        camera.set_zoom_level(result, float(zoom))
