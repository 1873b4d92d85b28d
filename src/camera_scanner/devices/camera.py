"""Session coordinator for one camera.

``Camera`` owns the open device, the preview request builder, both image
readers, the media recorder and the two workers. Every device-facing call
runs on the ``CameraBackground`` worker; decode work runs on
``BarcodeBackground``; results and events reach the host through the
``EventMessenger`` on the main executor.

Business context:
    A scanning screen keeps a barcode stream running against the preview
    while the user may also snap a still of the product or label. The
    coordinator keeps both flows on one device session and guarantees that
    a fatal device error tears everything down exactly once, after which
    every operation answers ``cameraNotFound``.

Example:
    camera = Camera(driver, texture, config, messenger, manager, cache_dir)
    camera.open(None, BarcodeCropSpec(left=10, right=10), channel)
    result = FutureResult("takePicture")
    camera.take_picture(result)
    print(result.future.result(timeout=10)["resultPath"])
"""

from __future__ import annotations

import math
import os
import tempfile
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from camera_scanner.devices.barcode import (
    BarcodeCropSpec,
    BarcodeDecoder,
    BarcodePipeline,
    CameraBarcode,
    FrameGate,
    ZXingBarcodeDecoder,
    compute_target_rotation,
)
from camera_scanner.devices.capture import (
    CameraCaptureCallback,
    CaptureState,
    CaptureTimeouts,
)
from camera_scanner.devices.errors import (
    CameraAccessError,
    ErrorCode,
    FrameDecodeError,
    InvalidArgumentError,
    NoRecordingProfileError,
)
from camera_scanner.devices.features import (
    AutoFocusFeature,
    CameraFeatures,
    ExposureMode,
    FlashMode,
    FocusMode,
    Point,
)
from camera_scanner.devices.recorder import MediaRecorderBuilder
from camera_scanner.devices.resolution import ResolutionPreset
from camera_scanner.devices.saver import ImageSaver, TakePictureResult
from camera_scanner.devices.workers import BARCODE_WORKER_NAME, CAMERA_WORKER_NAME, Worker
from camera_scanner.drivers.cameras.types import (
    AeTrigger,
    AfTrigger,
    CameraErrorCode,
    ImageFormat,
    RequestKey,
    RequestTemplate,
    Size,
)
from camera_scanner.observability import LogContext, get_logger
from camera_scanner.utils.image import image_to_buffer

if TYPE_CHECKING:
    from camera_scanner.devices.messenger import (
        EventChannel,
        EventMessenger,
        EventSink,
        MethodResult,
    )
    from camera_scanner.devices.orientation import (
        DeviceOrientation,
        DeviceOrientationManager,
    )
    from camera_scanner.drivers.cameras import (
        CameraDevice,
        CameraDriver,
        CaptureSession,
        ImageReader,
        MediaRecorder,
        PreviewTexture,
    )
    from camera_scanner.drivers.cameras.types import CaptureRequestBuilder, Surface
    from camera_scanner.observability import PipelineStats
    from camera_scanner.utils.image import ImageCodec

logger = get_logger(__name__)

#: Divisor turning the long side of a 4:3 frame into its short side.
ASPECT_43 = 1.333333

#: Seconds close() waits for the camera worker to run the teardown.
CLOSE_TIMEOUT_S = 5.0

_STREAM_FORMATS = {
    "yuv420": ImageFormat.YUV_420_888,
    "jpeg": ImageFormat.JPEG,
}

_DEVICE_ERROR_DESCRIPTIONS = {
    CameraErrorCode.CAMERA_IN_USE: "The camera device is in use already.",
    CameraErrorCode.MAX_CAMERAS_IN_USE: "Max cameras in use",
    CameraErrorCode.CAMERA_DISABLED: (
        "The camera device could not be opened due to a device policy."
    ),
    CameraErrorCode.CAMERA_DEVICE: "The camera device has encountered a fatal error",
    CameraErrorCode.CAMERA_SERVICE: "The camera service has encountered a fatal error.",
}

#: (code, message) callback used by refresh_preview_capture_session.
ErrorCallback = Callable[[str, str], None]


def device_error_description(error_code: int) -> str:
    """Host description of a device on_error code."""
    try:
        return _DEVICE_ERROR_DESCRIPTIONS[CameraErrorCode(error_code)]
    except ValueError:
        return "Unknown camera error"


def create_temp_file(directory: Path, prefix: str, suffix: str) -> Path:
    """Create an empty uniquely named file, e.g. ``CAP123.jpg``.

    Raises:
        OSError: If the directory or file cannot be created.
    """
    directory.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=str(directory))
    os.close(fd)
    return Path(name)


@dataclass(frozen=True)
class CameraConfig:
    """Settings of one ``create`` call.

    Attributes:
        camera_name: Platform camera name, e.g. "0".
        resolution_preset: Requested resolution tier.
        enable_audio: Record audio with video.
        long_side_size: Longer side of saved stills and of the 4:3 selection.
        image_quality: JPEG quality of saved stills, 0-100.
        locked_capture_orientation: Fixed capture orientation, if any.
    """

    camera_name: str
    resolution_preset: ResolutionPreset
    enable_audio: bool = False
    long_side_size: int = 1600
    image_quality: int = 100
    locked_capture_orientation: DeviceOrientation | None = None

    def __post_init__(self) -> None:
        if self.long_side_size < 0:
            raise InvalidArgumentError(
                f"long_side_size must be >= 0, got {self.long_side_size}"
            )
        if not 0 <= self.image_quality <= 100:
            raise InvalidArgumentError(
                f"image_quality must be in [0, 100], got {self.image_quality}"
            )

    @property
    def short_side_size(self) -> int:
        return math.floor(self.long_side_size / ASPECT_43)


# =============================================================================
# Driver callbacks
# =============================================================================


class _DeviceStateCallback:
    def __init__(self, camera: Camera, on_opened: Callable[[CameraDevice], None]):
        self._camera = camera
        self._on_opened = on_opened

    def on_opened(self, device: CameraDevice) -> None:
        self._on_opened(device)

    def on_closed(self, device: CameraDevice) -> None:
        self._camera._on_device_closed(device)

    def on_disconnected(self, device: CameraDevice) -> None:
        logger.warning("Camera disconnected", camera=device.id)
        self._camera.close()
        self._camera.messenger.send_camera_error("The camera was disconnected.")

    def on_error(self, device: CameraDevice, error_code: int) -> None:
        description = device_error_description(error_code)
        logger.error("Camera device error", camera=device.id, code=error_code)
        self._camera.close()
        self._camera.messenger.send_camera_error(description)


class _SessionStateCallback:
    def __init__(
        self, camera: Camera, generation: int, on_success: Callable[[], None] | None
    ):
        self._camera = camera
        self._generation = generation
        self._on_success = on_success

    def on_configured(self, session: CaptureSession) -> None:
        self._camera._on_session_configured(session, self._generation, self._on_success)

    def on_configure_failed(self, session: CaptureSession) -> None:
        logger.error("Capture session configuration failed")
        self._camera.messenger.send_camera_error("Failed to configure camera session.")


class _StillCaptureCallback:
    """Unlocks focus once the still frame completed."""

    def __init__(self, on_completed: Callable[[], None]):
        self._on_completed = on_completed

    def on_capture_progressed(self, session: Any, request: Any, result: Any) -> None:
        pass

    def on_capture_completed(self, session: Any, request: Any, result: Any) -> None:
        self._on_completed()


class _PictureResultCallback:
    """Forwards a save outcome to the pending takePicture result."""

    def __init__(self, messenger: EventMessenger, result: MethodResult):
        self._messenger = messenger
        self._result = result

    def on_complete(self, result: TakePictureResult) -> None:
        self._messenger.finish(self._result, result.to_map())

    def on_error(self, code: str, message: str) -> None:
        self._messenger.error(self._result, code, message)


class _BarcodeStreamHandler:
    """Stream handler of a ``camera/barcodeStream/{id}`` channel."""

    def __init__(self, camera: Camera):
        self._camera = camera

    def on_listen(self, arguments: Any, sink: EventSink) -> None:
        self._camera._attach_barcode_sink(sink)

    def on_cancel(self, arguments: Any) -> None:
        self._camera._detach_barcode_sink()


# =============================================================================
# Coordinator
# =============================================================================


class Camera:
    """One open camera and everything attached to it.

    Args:
        driver: Camera backend.
        texture: Preview texture registered with the host.
        config: Settings of the ``create`` call.
        messenger: Publishes events and method results.
        orientation_manager: Device orientation and tilt source.
        cache_dir: Directory for ``CAP*.jpg`` and ``REC*.mp4`` files.
        timeouts: Capture timeouts; 3 s budgets on the system clock by default.
        decoder_factory: Builds the barcode decoder when a stream starts.
        codec: JPEG codec; OpenCV by default.
        stats: Optional statistics sink.
    """

    def __init__(
        self,
        driver: CameraDriver,
        texture: PreviewTexture,
        config: CameraConfig,
        messenger: EventMessenger,
        orientation_manager: DeviceOrientationManager,
        cache_dir: Path,
        timeouts: CaptureTimeouts | None = None,
        decoder_factory: Callable[[], BarcodeDecoder] = ZXingBarcodeDecoder,
        codec: ImageCodec | None = None,
        stats: PipelineStats | None = None,
    ) -> None:
        self.driver = driver
        self.texture = texture
        self.config = config
        self.messenger = messenger
        self.orientation_manager = orientation_manager
        self.cache_dir = Path(cache_dir)
        self.timeouts = timeouts or CaptureTimeouts()
        self._decoder_factory = decoder_factory
        self._codec = codec
        self.stats = stats

        self.characteristics = driver.get_characteristics(config.camera_name)
        self.features = CameraFeatures.create(
            driver, self.characteristics, config, orientation_manager
        )
        self.capture_callback = CameraCaptureCallback(self, self.timeouts)
        self.gate = FrameGate()

        self.device: CameraDevice | None = None
        self.session: CaptureSession | None = None
        self.preview_builder: CaptureRequestBuilder | None = None
        self.picture_reader: ImageReader | None = None
        self.stream_reader: ImageReader | None = None
        self.media_recorder: MediaRecorder | None = None
        self.pipeline: BarcodePipeline | None = None
        self.capture_file: Path | None = None
        self.recording_video = False
        self.paused_preview = False
        self._pending_result: MethodResult | None = None
        self._barcode_sink: EventSink | None = None
        self._session_generation = 0

        self.camera_worker = Worker(CAMERA_WORKER_NAME)
        self.barcode_worker = Worker(BARCODE_WORKER_NAME)
        orientation_manager.start()

    def __repr__(self) -> str:
        return (
            f"Camera(name={self.config.camera_name!r}, "
            f"open={self.device is not None}, "
            f"state={self.capture_callback.camera_state.value})"
        )

    # -- plumbing -------------------------------------------------------------

    def _submit(
        self,
        result: MethodResult,
        task: Callable[[], None],
        requires_device: bool = True,
    ) -> None:
        """Run ``task`` on the camera worker, replying to ``result`` on failure."""

        def run() -> None:
            if requires_device and self.device is None:
                self.messenger.error(
                    result, ErrorCode.CAMERA_NOT_FOUND, "The camera is not open."
                )
                return
            with LogContext(camera_name=self.config.camera_name):
                try:
                    task()
                except CameraAccessError as e:
                    logger.warning("Camera access failed", error=str(e))
                    self.messenger.error(result, ErrorCode.CAMERA_ACCESS, str(e))
                except Exception as e:
                    logger.exception("Camera operation failed", error=str(e))
                    self.messenger.error(result, ErrorCode.UNKNOWN_ERROR, str(e))

        if not self.camera_worker.post(run):
            self.messenger.error(
                result, ErrorCode.CAMERA_NOT_FOUND, "The camera has been closed."
            )

    def _ensure_workers(self) -> None:
        if not self.camera_worker.running:
            self.camera_worker = Worker(CAMERA_WORKER_NAME)
        if not self.barcode_worker.running:
            self.barcode_worker = Worker(BARCODE_WORKER_NAME)

    def _require_session(self) -> CaptureSession:
        if self.session is None:
            raise CameraAccessError("captureSession not yet initialized")
        return self.session

    def _require_builder(self) -> CaptureRequestBuilder:
        if self.preview_builder is None:
            raise CameraAccessError("Preview request builder not yet created")
        return self.preview_builder

    # -- open / sessions ------------------------------------------------------

    def open(
        self,
        image_format_group: str | None = None,
        barcode_crop: BarcodeCropSpec | None = None,
        barcode_channel: EventChannel | None = None,
    ) -> None:
        """Create the image readers and open the device.

        The preview starts once the device reports it is open; with crop
        margins and channel it is the barcode stream preview. Completion is
        signalled by the ``cameraInitialized`` event.

        Raises:
            CameraAccessError: If the driver cannot open the camera.
        """
        resolution = self.features.resolution
        if not resolution.is_supported:
            self.messenger.send_camera_error(
                f'Camera with name "{self.config.camera_name}" '
                "is not supported by this plugin."
            )
            return

        capture_size = resolution.capture_size
        preview_size = resolution.preview_size
        assert capture_size is not None and preview_size is not None
        stream_format = _STREAM_FORMATS.get(
            image_format_group or "", resolution.capture_format
        )

        self._ensure_workers()
        self.picture_reader = self.driver.create_image_reader(
            capture_size.width, capture_size.height, resolution.capture_format, 1
        )
        self.stream_reader = self.driver.create_image_reader(
            preview_size.width, preview_size.height, stream_format, 1
        )
        logger.info(
            "Opening camera",
            camera=self.config.camera_name,
            capture=str(capture_size),
            preview=str(preview_size),
            capture_format=resolution.capture_format.value,
            stream_format=stream_format.value,
            barcode=barcode_crop is not None,
        )

        def on_opened(device: CameraDevice) -> None:
            self.device = device
            try:
                if barcode_crop is not None and barcode_channel is not None:
                    self.start_preview_with_barcode_stream(barcode_crop, barcode_channel)
                else:
                    self.start_preview()
                self.messenger.send_camera_initialized(
                    preview_size.width,
                    preview_size.height,
                    self.features.exposure_lock.value.value,
                    self.features.auto_focus.value.value,
                    self.features.exposure_point.is_supported,
                    self.features.focus_point.is_supported,
                )
            except Exception as e:
                logger.exception("Starting the preview failed", error=str(e))
                self.messenger.send_camera_error(str(e))
                self.close()

        self.driver.open_camera(
            self.config.camera_name,
            _DeviceStateCallback(self, on_opened),
            self.camera_worker,
        )

    def _on_device_closed(self, device: CameraDevice) -> None:
        logger.info("Camera device closed", camera=device.id)
        was_open = self.device is not None
        self.device = None
        self._close_capture_session()
        if was_open:
            self.messenger.send_camera_closing()

    def _close_capture_session(self) -> None:
        if self.session is not None:
            logger.debug("Closing capture session")
            self.session.close()
            self.session = None

    def _create_capture_session(
        self,
        template: RequestTemplate,
        on_success: Callable[[], None] | None,
        *surfaces: Surface,
        extra_outputs: tuple[Surface, ...] = (),
    ) -> None:
        """Configure a session rendering into the texture plus ``surfaces``.

        ``surfaces`` become request targets unless the template is PREVIEW;
        ``extra_outputs`` are configured but never targeted by the preview.
        """
        if self.device is None:
            raise CameraAccessError("The camera device is not open")
        self._close_capture_session()
        builder = self.device.create_capture_request(template)

        preview_size = self.features.resolution.preview_size
        assert preview_size is not None
        self.texture.set_default_buffer_size(preview_size.width, preview_size.height)
        builder.add_target(self.texture.surface)
        if template != RequestTemplate.PREVIEW:
            for surface in surfaces:
                builder.add_target(surface)
        self.preview_builder = builder

        active = self.characteristics.active_array_size
        self.features.set_camera_boundaries(Size(active.width, active.height))

        self._session_generation += 1
        outputs = [self.texture.surface, *surfaces, *extra_outputs]
        logger.debug(
            "Creating capture session",
            template=template.value,
            outputs=[s.name for s in outputs],
        )
        self.device.create_capture_session(
            outputs,
            _SessionStateCallback(self, self._session_generation, on_success),
            self.camera_worker,
        )

    def _on_session_configured(
        self,
        session: CaptureSession,
        generation: int,
        on_success: Callable[[], None] | None,
    ) -> None:
        if generation != self._session_generation:
            logger.debug("Ignoring replaced capture session", generation=generation)
            return
        if self.device is None:
            self.messenger.send_camera_error("The camera was closed during configuration.")
            return
        self.session = session
        self.features.update_builder(self._require_builder())
        self.refresh_preview_capture_session(
            on_success, lambda code, message: self.messenger.send_camera_error(message)
        )

    def refresh_preview_capture_session(
        self, on_success: Callable[[], None] | None, on_error: ErrorCallback
    ) -> None:
        """Re-submit the preview builder as the repeating request."""
        if self.session is None:
            on_error("refreshPreviewCaptureSession", "captureSession not yet initialized")
            return
        try:
            if not self.paused_preview:
                self.session.set_repeating_request(
                    self._require_builder().build(),
                    self.capture_callback,
                    self.camera_worker,
                )
            if on_success is not None:
                on_success()
        except (CameraAccessError, RuntimeError, ValueError) as e:
            logger.warning("Preview refresh failed", error=str(e))
            on_error(ErrorCode.CAPTURE_ACCESS, str(e))

    def start_preview(self) -> None:
        """Plain preview; the still reader is configured for takePicture."""
        if self.picture_reader is None:
            return
        logger.info("Starting preview")
        self._create_capture_session(
            RequestTemplate.PREVIEW, None, self.picture_reader.surface
        )

    def start_preview_with_barcode_stream(
        self, crop: BarcodeCropSpec, channel: EventChannel
    ) -> None:
        """Preview feeding the stream reader into the barcode pipeline."""
        if self.stream_reader is None or self.picture_reader is None:
            return
        self.pipeline = BarcodePipeline(
            self._decoder_factory(),
            crop,
            rotation=self._target_rotation,
            emit=self._send_barcode,
            stats=self.stats,
        )
        self.stream_reader.set_on_image_available_listener(
            self._on_stream_image_available, self.camera_worker
        )
        self._create_capture_session(
            RequestTemplate.RECORD,
            None,
            self.stream_reader.surface,
            extra_outputs=(self.picture_reader.surface,),
        )
        channel.set_stream_handler(_BarcodeStreamHandler(self))
        logger.info("Barcode stream preview started", channel=channel.name, crop=str(crop))

    # -- barcode intake -------------------------------------------------------

    def _attach_barcode_sink(self, sink: EventSink) -> None:
        self._barcode_sink = sink
        if self.stream_reader is not None:
            self.stream_reader.set_on_image_available_listener(
                self._on_stream_image_available, self.camera_worker
            )
        self.gate.open()
        logger.info("Barcode stream listener attached")

    def _detach_barcode_sink(self) -> None:
        if self.stream_reader is not None:
            self.stream_reader.set_on_image_available_listener(None, self.camera_worker)
        self.gate.close()
        self._barcode_sink = None
        logger.info("Barcode stream listener detached", gate=repr(self.gate))

    def _target_rotation(self) -> int:
        manager = self.orientation_manager
        return compute_target_rotation(
            manager.get_device_tilts(),
            manager.get_ui_orientation_angle(),
            self.features.sensor_orientation.value,
        )

    def _send_barcode(self, barcode: CameraBarcode) -> None:
        self.messenger.send_to_sink(self._barcode_sink, barcode.to_map())

    def _on_stream_image_available(self, reader: ImageReader) -> None:
        image = reader.acquire_next_image()
        if image is None:
            return
        if self._barcode_sink is None or not self.gate.try_admit():
            image.close()
            return

        try:
            buffer = image_to_buffer(image, self._codec)
        except (FrameDecodeError, ValueError) as e:
            logger.error("Frame extraction failed", error=str(e))
            self._send_barcode(CameraBarcode(None, None, repr(e)))
            self.gate.release()
            return
        finally:
            image.close()

        pipeline = self.pipeline
        if pipeline is None:
            self.gate.release()
            return

        def work() -> None:
            try:
                pipeline.process(buffer)
            finally:
                self.gate.release()

        if not self.barcode_worker.post(work):
            self.gate.release()

    # -- still capture --------------------------------------------------------

    def take_picture(self, result: MethodResult) -> None:
        """Capture a still; ``result`` receives the TakePictureResult map."""
        self._submit(result, lambda: self._take_picture(result))

    def _take_picture(self, result: MethodResult) -> None:
        if self.capture_callback.camera_state != CaptureState.PREVIEW:
            self.messenger.error(
                result,
                ErrorCode.CAPTURE_ALREADY_ACTIVE,
                "Picture is currently already being captured",
            )
            return
        try:
            self.capture_file = create_temp_file(self.cache_dir, "CAP", ".jpg")
        except OSError as e:
            logger.error("Cannot create capture file", error=str(e))
            self.messenger.error(result, ErrorCode.CANNOT_CREATE_FILE, str(e))
            return
        self._pending_result = result

        logger.info("Taking picture", path=str(self.capture_file))
        self.timeouts.reset()
        assert self.picture_reader is not None
        self.picture_reader.set_on_image_available_listener(
            self._on_image_available, self.camera_worker
        )
        self._run_precapture_sequence()

    def _fail_capture(self, error: Exception) -> None:
        """Back to PREVIEW with AF unlocked; late still frames are ignored."""
        logger.error("Still capture failed", error=str(error))
        result = self._pending_result
        self._pending_result = None
        if self.picture_reader is not None:
            self.picture_reader.set_on_image_available_listener(None, None)
        self.capture_callback.set_camera_state(CaptureState.PREVIEW)
        self.unlock_auto_focus()
        if result is not None:
            self.messenger.error(result, ErrorCode.CAPTURE_ACCESS, str(error))

    def _run_precapture_sequence(self) -> None:
        try:
            session = self._require_session()
            builder = self._require_builder()
            builder.set(RequestKey.CONTROL_AE_PRECAPTURE_TRIGGER, AeTrigger.IDLE)
            session.capture(builder.build(), self.capture_callback, self.camera_worker)

            failures: list[str] = []
            self.refresh_preview_capture_session(
                None, lambda code, message: failures.append(message)
            )
            if failures:
                raise CameraAccessError(failures[0])

            self.capture_callback.set_camera_state(CaptureState.WAITING_PRECAPTURE_START)
            builder.set(RequestKey.CONTROL_AE_PRECAPTURE_TRIGGER, AeTrigger.START)
            session.capture(builder.build(), self.capture_callback, self.camera_worker)
            # later repeating requests must not re-trigger the sequence
            builder.set(RequestKey.CONTROL_AE_PRECAPTURE_TRIGGER, AeTrigger.IDLE)
        except CameraAccessError as e:
            self._fail_capture(e)

    def on_converged(self) -> None:
        self._take_picture_after_precapture()

    def on_precapture(self) -> None:
        self._run_precapture_sequence()

    def _take_picture_after_precapture(self) -> None:
        self.capture_callback.set_camera_state(CaptureState.CAPTURING)
        if self.device is None:
            return
        try:
            session = self._require_session()
            still = self.device.create_capture_request(RequestTemplate.STILL_CAPTURE)
            assert self.picture_reader is not None
            still.add_target(self.picture_reader.surface)
            still.set(
                RequestKey.SCALER_CROP_REGION,
                self._require_builder().get(RequestKey.SCALER_CROP_REGION),
            )
            self.features.update_builder(still)

            session.stop_repeating()
            session.capture(
                still.build(),
                _StillCaptureCallback(self.unlock_auto_focus),
                self.camera_worker,
            )
        except CameraAccessError as e:
            self._fail_capture(e)

    def _on_image_available(self, reader: ImageReader) -> None:
        image = reader.acquire_next_image()
        if image is None:
            return
        result = self._pending_result
        if result is None or self.capture_file is None:
            image.close()
            return
        manager = self.orientation_manager
        saver = ImageSaver(
            image,
            self.capture_file,
            self.config.long_side_size,
            manager.get_device_tilts(),
            self.config.image_quality,
            manager.get_photo_orientation(self.config.locked_capture_orientation),
            _PictureResultCallback(self.messenger, result),
            codec=self._codec,
            stats=self.stats,
        )
        self.camera_worker.post(saver.run)
        self._pending_result = None
        self.capture_callback.set_camera_state(CaptureState.PREVIEW)

    def lock_auto_focus(self) -> None:
        if self.session is None:
            return
        builder = self._require_builder()
        builder.set(RequestKey.CONTROL_AF_TRIGGER, AfTrigger.START)
        try:
            self.session.capture(builder.build(), None, self.camera_worker)
        except CameraAccessError as e:
            self.messenger.send_camera_error(str(e))

    def unlock_auto_focus(self) -> None:
        """Cancel the AF trigger, idle it, and resume the preview."""
        session = self.session
        if session is None:
            return
        builder = self._require_builder()
        try:
            builder.set(RequestKey.CONTROL_AF_TRIGGER, AfTrigger.CANCEL)
            session.capture(builder.build(), None, self.camera_worker)
            builder.set(RequestKey.CONTROL_AF_TRIGGER, AfTrigger.IDLE)
            session.capture(builder.build(), None, self.camera_worker)
        except CameraAccessError as e:
            self.messenger.send_camera_error(str(e))
        self.refresh_preview_capture_session(
            None, lambda code, message: self.messenger.send_camera_error(message)
        )

    # -- video ----------------------------------------------------------------

    def start_video_recording(self, result: MethodResult) -> None:
        self._submit(result, lambda: self._start_video_recording(result))

    def _prepare_media_recorder(self, output_path: str) -> None:
        if self.media_recorder is not None:
            self.media_recorder.release()
        profile = self.features.resolution.recording_profile
        if profile is None:
            raise NoRecordingProfileError("No recording profile for this camera")
        self.media_recorder = (
            MediaRecorderBuilder(profile, output_path, self.driver.create_media_recorder)
            .set_enable_audio(self.config.enable_audio)
            .set_media_orientation(self.orientation_manager.get_video_orientation())
            .build()
        )

    def _swap_auto_focus(self, recording_video: bool) -> None:
        current = self.features.auto_focus.value
        feature = AutoFocusFeature(self.characteristics, recording_video=recording_video)
        feature.value = current
        self.features.auto_focus = feature

    def _start_video_recording(self, result: MethodResult) -> None:
        try:
            self.capture_file = create_temp_file(self.cache_dir, "REC", ".mp4")
        except OSError as e:
            self.messenger.error(result, ErrorCode.CANNOT_CREATE_FILE, str(e))
            return
        try:
            self._prepare_media_recorder(str(self.capture_file))
        except (OSError, RuntimeError, NoRecordingProfileError) as e:
            logger.error("Preparing the recorder failed", error=str(e))
            self.recording_video = False
            self.capture_file = None
            self.messenger.error(result, ErrorCode.VIDEO_RECORDING_FAILED, str(e))
            return

        self._swap_auto_focus(recording_video=True)
        self.recording_video = True
        recorder = self.media_recorder
        assert recorder is not None
        try:
            self._create_capture_session(
                RequestTemplate.RECORD, recorder.start, recorder.surface
            )
        except (CameraAccessError, RuntimeError) as e:
            self.recording_video = False
            self.capture_file = None
            self.messenger.error(result, ErrorCode.VIDEO_RECORDING_FAILED, str(e))
            return
        logger.info("Video recording started", path=str(self.capture_file))
        self.messenger.finish(result, None)

    def stop_video_recording(self, result: MethodResult) -> None:
        self._submit(result, lambda: self._stop_video_recording(result))

    def _stop_video_recording(self, result: MethodResult) -> None:
        if not self.recording_video:
            self.messenger.finish(result, None)
            return
        self._swap_auto_focus(recording_video=False)
        self.recording_video = False
        recorder = self.media_recorder
        assert recorder is not None
        try:
            if self.session is not None:
                self.session.abort_captures()
            recorder.stop()
        except (CameraAccessError, RuntimeError) as e:
            # the session may already have aborted the recording
            logger.warning("Stopping the recorder failed", error=str(e))
        recorder.reset()
        try:
            self.start_preview()
        except CameraAccessError as e:
            self.messenger.error(result, ErrorCode.VIDEO_RECORDING_FAILED, str(e))
            return
        path = str(self.capture_file)
        logger.info("Video recording stopped", path=path)
        self.messenger.finish(result, path)
        self.capture_file = None

    def pause_video_recording(self, result: MethodResult) -> None:
        self._submit(result, lambda: self._toggle_recording(result, pause=True))

    def resume_video_recording(self, result: MethodResult) -> None:
        self._submit(result, lambda: self._toggle_recording(result, pause=False))

    def _toggle_recording(self, result: MethodResult, pause: bool) -> None:
        if not self.recording_video or self.media_recorder is None:
            self.messenger.finish(result, None)
            return
        try:
            if pause:
                self.media_recorder.pause()
            else:
                self.media_recorder.resume()
        except RuntimeError as e:
            self.messenger.error(result, ErrorCode.VIDEO_RECORDING_FAILED, str(e))
            return
        self.messenger.finish(result, None)

    # -- feature setters ------------------------------------------------------

    def _apply_and_refresh(
        self,
        result: MethodResult,
        feature: Any,
        error_code: ErrorCode,
        error_message: str,
        value: Any = None,
    ) -> None:
        feature.update_builder(self._require_builder())
        self.refresh_preview_capture_session(
            lambda: self.messenger.finish(result, value),
            lambda code, message: self.messenger.error(result, error_code, error_message),
        )

    def set_flash_mode(self, result: MethodResult, mode: FlashMode) -> None:
        def task() -> None:
            self.features.flash.value = mode
            self._apply_and_refresh(
                result,
                self.features.flash,
                ErrorCode.SET_FLASH_MODE_FAILED,
                "Could not set flash mode.",
            )

        self._submit(result, task)

    def set_exposure_mode(self, result: MethodResult, mode: ExposureMode) -> None:
        def task() -> None:
            self.features.exposure_lock.value = mode
            self._apply_and_refresh(
                result,
                self.features.exposure_lock,
                ErrorCode.SET_EXPOSURE_MODE_FAILED,
                "Could not set exposure mode.",
            )

        self._submit(result, task)

    def set_exposure_point(self, result: MethodResult, point: Point) -> None:
        def task() -> None:
            self.features.exposure_point.value = point
            self._apply_and_refresh(
                result,
                self.features.exposure_point,
                ErrorCode.SET_EXPOSURE_POINT_FAILED,
                "Could not set exposure point.",
            )

        self._submit(result, task)

    def set_exposure_offset(self, result: MethodResult, offset: float) -> None:
        """Apply an EV offset; ``result`` receives the offset actually applied."""

        def task() -> None:
            feature = self.features.exposure_offset
            feature.value = offset
            self._apply_and_refresh(
                result,
                feature,
                ErrorCode.SET_EXPOSURE_OFFSET_FAILED,
                "Could not set exposure offset.",
                value=feature.value,
            )

        self._submit(result, task)

    def set_focus_mode(self, result: MethodResult | None, mode: FocusMode) -> None:
        if result is None:
            self.camera_worker.post(lambda: self._set_focus_mode(None, mode))
        else:
            self._submit(result, lambda: self._set_focus_mode(result, mode))

    def _set_focus_mode(self, result: MethodResult | None, mode: FocusMode) -> None:
        feature = self.features.auto_focus
        feature.value = mode
        builder = self._require_builder()
        feature.update_builder(builder)

        if not self.paused_preview:
            if mode == FocusMode.LOCKED:
                if self.session is not None:
                    self.lock_auto_focus()
                    builder.set(RequestKey.CONTROL_AF_TRIGGER, AfTrigger.IDLE)
                    try:
                        self.session.set_repeating_request(
                            builder.build(), self.capture_callback, self.camera_worker
                        )
                    except CameraAccessError as e:
                        if result is not None:
                            self.messenger.error(
                                result,
                                ErrorCode.SET_FOCUS_MODE_FAILED,
                                f"Error setting focus mode: {e}",
                            )
                        return
            else:
                self.unlock_auto_focus()

        if result is not None:
            self.messenger.finish(result, None)

    def set_focus_point(self, result: MethodResult, point: Point) -> None:
        def task() -> None:
            self.features.focus_point.value = point
            self._apply_and_refresh(
                result,
                self.features.focus_point,
                ErrorCode.SET_FOCUS_POINT_FAILED,
                "Could not set focus point.",
            )
            self._set_focus_mode(None, self.features.auto_focus.value)

        self._submit(result, task)

    def set_zoom_level(self, result: MethodResult, zoom: float) -> None:
        def task() -> None:
            feature = self.features.zoom_level
            if zoom > feature.max_zoom or zoom < feature.min_zoom:
                self.messenger.error(
                    result,
                    ErrorCode.ZOOM_ERROR,
                    "Zoom level out of bounds (zoom level should be between "
                    f"{feature.min_zoom:f} and {feature.max_zoom:f}).",
                )
                return
            feature.value = zoom
            self._apply_and_refresh(
                result,
                feature,
                ErrorCode.SET_ZOOM_LEVEL_FAILED,
                "Could not set zoom level.",
            )

        self._submit(result, task)

    def get_min_exposure_offset(self) -> float:
        return self.features.exposure_offset.min_offset

    def get_max_exposure_offset(self) -> float:
        return self.features.exposure_offset.max_offset

    def get_exposure_offset_step_size(self) -> float:
        return self.features.exposure_offset.step_size

    def get_min_zoom_level(self) -> float:
        return self.features.zoom_level.min_zoom

    def get_max_zoom_level(self) -> float:
        return self.features.zoom_level.max_zoom

    # -- preview control ------------------------------------------------------

    def pause_preview(self, result: MethodResult) -> None:
        def task() -> None:
            self.paused_preview = True
            self._require_session().stop_repeating()
            self.messenger.finish(result, None)

        self._submit(result, task)

    def resume_preview(self, result: MethodResult) -> None:
        def task() -> None:
            self.paused_preview = False
            self.refresh_preview_capture_session(
                None, lambda code, message: self.messenger.send_camera_error(message)
            )
            self.messenger.finish(result, None)

        self._submit(result, task)

    def stop_barcode_stream(self, result: MethodResult) -> None:
        """Replace the barcode stream preview with a plain preview."""

        def task() -> None:
            self.start_preview()
            self.messenger.finish(result, None)

        self._submit(result, task)

    # -- teardown -------------------------------------------------------------

    def close(self) -> None:
        """Release the session, device, readers, recorder and workers.

        Runs on the camera worker when called from another thread so the
        teardown does not race device callbacks.
        """
        worker = self.camera_worker
        if worker.running and not worker.is_current():
            done = threading.Event()

            def task() -> None:
                try:
                    self._close()
                finally:
                    done.set()

            if worker.post(task):
                if done.wait(CLOSE_TIMEOUT_S):
                    return
                logger.warning("Camera worker did not close in time", timeout_s=CLOSE_TIMEOUT_S)
        self._close()

    def _close(self) -> None:
        logger.info("Closing camera", camera=self.config.camera_name)
        pending = self._pending_result
        if pending is not None:
            self._pending_result = None
            self.capture_callback.set_camera_state(CaptureState.PREVIEW)
            self.messenger.error(
                pending, ErrorCode.CAMERA_NOT_FOUND, "The camera was closed during capture."
            )
        self._close_capture_session()

        device = self.device
        if device is not None:
            self.device = None
            device.close()
            self.messenger.send_camera_closing()
        if self.picture_reader is not None:
            self.picture_reader.close()
            self.picture_reader = None
        if self.stream_reader is not None:
            self.stream_reader.close()
            self.stream_reader = None
        if self.media_recorder is not None:
            self.media_recorder.reset()
            self.media_recorder.release()
            self.media_recorder = None
        self.recording_video = False
        self.gate.close()

        self.camera_worker.quit()
        self.barcode_worker.quit()

    def dispose(self) -> None:
        """Close, then release the texture and stop the orientation manager."""
        logger.info("Disposing camera", camera=self.config.camera_name)
        self.close()
        self.texture.release()
        self.orientation_manager.stop()
