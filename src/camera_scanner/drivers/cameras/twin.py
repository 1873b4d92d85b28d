"""Digital twin camera driver.

Simulates a camera2-style device in process so the capture core can run
without hardware. The twin models what the core depends on:

- Asynchronous open/close with device state callbacks
- Capture sessions with one-shot and repeating requests
- AE precapture sequencing and AF trigger handling in capture results
- Bounded image readers that drop frames when full
- Preview textures and a media recorder that writes a placeholder file

Frames are produced by ``pump()`` (deterministic, used by tests) or by a
background thread when ``DigitalTwinConfig.frame_interval_s`` is set.
Frame content comes from a synthetic pattern, an image file, a directory
of images or a caller-supplied ``frame_provider``. Rendered frames are in
sensor orientation; no rotation is applied.

Example:
    driver = DigitalTwinCameraDriver(DigitalTwinConfig(frame_interval_s=1 / 30))
    driver.open_camera("0", callback, handler=None)
"""

from __future__ import annotations

import itertools
import threading
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, final

import cv2
import numpy as np

from camera_scanner.devices.errors import CameraAccessError
from camera_scanner.drivers.cameras.types import (
    AeMode,
    AeState,
    AeTrigger,
    AfMode,
    AfState,
    AfTrigger,
    CameraCharacteristics,
    CaptureRequest,
    CaptureRequestBuilder,
    CaptureResult,
    FlashMode,
    Image,
    ImageFormat,
    ImagePlane,
    LensFacing,
    RecorderSettings,
    RecordingProfile,
    Rect,
    RequestKey,
    RequestTemplate,
    ResultKey,
    Size,
    Surface,
)
from camera_scanner.observability import get_logger

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = get_logger(__name__)

__all__ = [
    "DEFAULT_CAMERAS",
    "DigitalTwinCameraDevice",
    "DigitalTwinCameraDriver",
    "DigitalTwinCaptureSession",
    "DigitalTwinConfig",
    "FrameProvider",
    "ImageSource",
    "TwinCameraInfo",
    "TwinImageReader",
    "TwinMediaRecorder",
    "TwinPreviewTexture",
]

#: Returns a BGR (or grayscale) frame for the requested width and height.
FrameProvider = Callable[[int, int], "NDArray[Any]"]


class ImageSource(Enum):
    """Where twin frames come from."""

    SYNTHETIC = "synthetic"
    FILE = "file"
    DIRECTORY = "directory"


@dataclass
class DigitalTwinConfig:
    """Behaviour of the simulated camera.

    Attributes:
        image_source: Frame content source.
        image_path: File or directory for FILE/DIRECTORY sources.
        cycle_images: Loop through directory images.
        frame_provider: Overrides image_source when set.
        frame_interval_s: Seconds between automatic frames; 0 disables the
            frame thread and frames are produced only by pump().
        report_ae_state: Include AE state in capture results.
        report_af_state: Include AF state in capture results.
        precapture_frames: Frames AE stays in PRECAPTURE after a trigger.
        converged_ae_state: AE state reported once precapture completes.
        passive_af_state: AF state reported in continuous AF modes.
        yuv_row_padding: Extra bytes at the end of every Y plane row.
        jpeg_quality: Quality of JPEG frames the twin produces.
        fail_session_configure: Report on_configure_failed for sessions.
        open_error_code: Report on_error with this code instead of opening.
    """

    image_source: ImageSource = ImageSource.SYNTHETIC
    image_path: Path | None = None
    cycle_images: bool = True
    frame_provider: FrameProvider | None = None
    frame_interval_s: float = 0.0
    report_ae_state: bool = True
    report_af_state: bool = True
    precapture_frames: int = 2
    converged_ae_state: AeState = AeState.CONVERGED
    passive_af_state: AfState = AfState.PASSIVE_FOCUSED
    yuv_row_padding: int = 0
    jpeg_quality: int = 95
    fail_session_configure: bool = False
    open_error_code: int | None = None

    def __repr__(self) -> str:
        return (
            f"DigitalTwinConfig(source={self.image_source.value}, "
            f"interval={self.frame_interval_s}s, "
            f"report_ae={self.report_ae_state})"
        )


@dataclass(frozen=True)
class TwinCameraInfo:
    """Simulated camera: characteristics plus camcorder profiles."""

    characteristics: CameraCharacteristics
    profiles: Mapping[str, Size] = field(default_factory=lambda: MappingProxyType({}))


# =============================================================================
# Constants
# =============================================================================

_SYNTHETIC_GRID_SPACING = 50

_BACK_JPEG_SIZES = (
    Size(4000, 3000),
    Size(2048, 1536),
    Size(1920, 1080),
    Size(1600, 1200),
    Size(1280, 720),
    Size(640, 480),
)
_BACK_YUV_SIZES = (
    Size(1920, 1080),
    Size(1600, 1200),
    Size(1280, 960),
    Size(640, 480),
)
_FRONT_SIZES = (
    Size(2592, 1944),
    Size(1920, 1080),
    Size(1280, 960),
    Size(640, 480),
)

DEFAULT_CAMERAS: Mapping[str, TwinCameraInfo] = MappingProxyType(
    {
        # Back camera: autofocus, flash, 8x zoom
        "0": TwinCameraInfo(
            characteristics=CameraCharacteristics(
                sensor_orientation=90,
                lens_facing=LensFacing.BACK,
                output_sizes=MappingProxyType(
                    {
                        ImageFormat.JPEG: _BACK_JPEG_SIZES,
                        ImageFormat.YUV_420_888: _BACK_YUV_SIZES,
                    }
                ),
                active_array_size=Rect(0, 0, 4000, 3000),
                max_digital_zoom=8.0,
                exposure_compensation_range=(-12, 12),
                exposure_compensation_step=1 / 6,
                max_regions_ae=1,
                max_regions_af=1,
                af_available_modes=(
                    AfMode.OFF,
                    AfMode.AUTO,
                    AfMode.CONTINUOUS_VIDEO,
                    AfMode.CONTINUOUS_PICTURE,
                ),
                flash_available=True,
                min_focus_distance=10.0,
            ),
            profiles=MappingProxyType(
                {
                    "LOW": Size(176, 144),
                    "QVGA": Size(320, 240),
                    "480P": Size(720, 480),
                    "720P": Size(1280, 720),
                    "1080P": Size(1920, 1080),
                    "2160P": Size(3840, 2160),
                    "HIGH": Size(3840, 2160),
                }
            ),
        ),
        # Front camera: fixed focus, no flash
        "1": TwinCameraInfo(
            characteristics=CameraCharacteristics(
                sensor_orientation=270,
                lens_facing=LensFacing.FRONT,
                output_sizes=MappingProxyType(
                    {
                        ImageFormat.JPEG: _FRONT_SIZES,
                        ImageFormat.YUV_420_888: _FRONT_SIZES,
                    }
                ),
                active_array_size=Rect(0, 0, 2592, 1944),
                max_digital_zoom=4.0,
                exposure_compensation_range=(-6, 6),
                exposure_compensation_step=1 / 3,
                max_regions_ae=1,
                max_regions_af=0,
                af_available_modes=(AfMode.OFF,),
                flash_available=False,
                min_focus_distance=0.0,
            ),
            profiles=MappingProxyType(
                {
                    "LOW": Size(176, 144),
                    "QVGA": Size(320, 240),
                    "480P": Size(720, 480),
                    "720P": Size(1280, 720),
                    "1080P": Size(1920, 1080),
                    "HIGH": Size(1920, 1080),
                }
            ),
        ),
    }
)


def _dispatch(handler: Any, task: Callable[[], None]) -> None:
    """Run a callback through its handler, or inline without one."""
    if handler is None:
        task()
    elif not handler.post(task):
        logger.debug("Handler rejected callback", handler=repr(handler))


# =============================================================================
# Frame content
# =============================================================================


class _FrameSource:
    """Renders BGR frames at requested sizes from the configured source."""

    def __init__(self, camera_name: str, config: DigitalTwinConfig) -> None:
        self._camera_name = camera_name
        self._config = config
        self._cache: dict[tuple[int, int], NDArray[Any]] = {}
        self._image_files: list[Path] = []
        self._image_index = 0
        self._lock = threading.Lock()
        self._load_image_files()

    def _load_image_files(self) -> None:
        if self._config.image_source != ImageSource.DIRECTORY:
            return
        if self._config.image_path is None:
            return
        path = Path(self._config.image_path)
        if not path.is_dir():
            return
        extensions = {".jpg", ".jpeg", ".png", ".bmp", ".tif", ".tiff"}
        self._image_files = sorted(
            f for f in path.iterdir() if f.suffix.lower() in extensions
        )

    def render(self, width: int, height: int) -> NDArray[Any]:
        """BGR uint8 frame of exactly width x height."""
        provider = self._config.frame_provider
        if provider is not None:
            img = provider(width, height)
        elif self._config.image_source == ImageSource.FILE:
            img = self._from_file()
        elif self._config.image_source == ImageSource.DIRECTORY:
            img = self._from_directory()
        else:
            img = None

        if img is None:
            return self._synthetic(width, height)

        if img.ndim == 2:
            img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
        h, w = img.shape[:2]
        if w != width or h != height:
            img = cv2.resize(img, (width, height), interpolation=cv2.INTER_NEAREST)
        return img

    def _from_file(self) -> NDArray[Any] | None:
        if self._config.image_path is None:
            return None
        path = Path(self._config.image_path)
        if not path.is_file():
            return None
        return cv2.imread(str(path))

    def _from_directory(self) -> NDArray[Any] | None:
        with self._lock:
            if not self._image_files:
                return None
            image_path = self._image_files[self._image_index]
            self._image_index += 1
            if self._config.cycle_images:
                self._image_index %= len(self._image_files)
            else:
                self._image_index = min(self._image_index, len(self._image_files) - 1)
        return cv2.imread(str(image_path))

    def _synthetic(self, width: int, height: int) -> NDArray[Any]:
        key = (width, height)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        img: NDArray[Any] = np.full((height, width, 3), 200, dtype=np.uint8)
        img[::_SYNTHETIC_GRID_SPACING, :] = [90, 90, 90]
        img[:, ::_SYNTHETIC_GRID_SPACING] = [90, 90, 90]
        cv2.putText(
            img,
            f"DIGITAL TWIN - Camera {self._camera_name}",
            (20, min(50, height - 5)),
            cv2.FONT_HERSHEY_SIMPLEX,
            max(0.3, width / 1600),
            (0, 0, 0),
            1,
        )
        with self._lock:
            self._cache[key] = img
        return img


# =============================================================================
# Outputs
# =============================================================================


@final
class TwinImageReader:
    """Bounded image queue for one output surface.

    A frame offered while ``max_images`` images are queued or acquired
    and not yet closed is dropped.
    """

    __slots__ = (
        "_width",
        "_height",
        "_format",
        "_max_images",
        "_surface",
        "_queue",
        "_outstanding",
        "_listener",
        "_handler",
        "_closed",
        "_lock",
        "_row_padding",
        "_jpeg_quality",
        "frames_dropped",
        "frames_delivered",
    )

    def __init__(
        self,
        width: int,
        height: int,
        format: ImageFormat,
        max_images: int,
        row_padding: int = 0,
        jpeg_quality: int = 95,
    ) -> None:
        if max_images < 1:
            raise ValueError(f"max_images must be >= 1, got {max_images}")
        self._width = width
        self._height = height
        self._format = format
        self._max_images = max_images
        self._surface = Surface(f"reader-{format.value}", Size(width, height))
        self._queue: deque[Image] = deque()
        self._outstanding = 0
        self._listener: Callable[[Any], None] | None = None
        self._handler: Any = None
        self._closed = False
        self._lock = threading.Lock()
        self._row_padding = row_padding
        self._jpeg_quality = jpeg_quality
        self.frames_dropped = 0
        self.frames_delivered = 0

    def __repr__(self) -> str:
        return (
            f"TwinImageReader({self._width}x{self._height}, "
            f"format={self._format.value}, max_images={self._max_images})"
        )

    @property
    def surface(self) -> Surface:
        return self._surface

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    @property
    def format(self) -> ImageFormat:
        return self._format

    @property
    def closed(self) -> bool:
        return self._closed

    def set_on_image_available_listener(
        self, listener: Callable[[Any], None] | None, handler: Any
    ) -> None:
        with self._lock:
            self._listener = listener
            self._handler = handler

    def acquire_next_image(self) -> Image | None:
        with self._lock:
            if self._closed:
                raise CameraAccessError("Image reader is closed")
            if not self._queue:
                return None
            self._outstanding += 1
            return self._queue.popleft()

    def acquire_latest_image(self) -> Image | None:
        with self._lock:
            if self._closed:
                raise CameraAccessError("Image reader is closed")
            if not self._queue:
                return None
            stale = list(self._queue)[:-1]
            latest = self._queue[-1]
            self._queue.clear()
            self._outstanding += len(stale) + 1
        for image in stale:
            image.close()
        return latest

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._listener = None
            pending = list(self._queue)
            self._queue.clear()
        for image in pending:
            image.close()

    def _on_image_closed(self, image: Image) -> None:
        with self._lock:
            if image in self._queue:
                self._queue.remove(image)
            elif self._outstanding > 0:
                self._outstanding -= 1

    def offer_frame(self, source: _FrameSource, frame_number: int) -> bool:
        """Render and queue a frame; False when it was dropped."""
        with self._lock:
            if self._closed:
                return False
            if len(self._queue) + self._outstanding >= self._max_images:
                self.frames_dropped += 1
                return False

        bgr = source.render(self._width, self._height)
        if self._format == ImageFormat.JPEG:
            planes = self._jpeg_planes(bgr)
        else:
            planes = self._yuv_planes(bgr)
        image = Image(
            self._width,
            self._height,
            self._format,
            planes,
            timestamp_ns=time.monotonic_ns(),
            on_close=self._on_image_closed,
        )

        with self._lock:
            if self._closed:
                return False
            self._queue.append(image)
            self.frames_delivered += 1
            listener = self._listener
            handler = self._handler

        if listener is not None:
            _dispatch(handler, lambda: listener(self))
        logger.debug(
            "Twin frame queued",
            surface=self._surface.name,
            frame_number=frame_number,
        )
        return True

    def _jpeg_planes(self, bgr: NDArray[Any]) -> list[ImagePlane]:
        ok, data = cv2.imencode(
            ".jpg", bgr, [cv2.IMWRITE_JPEG_QUALITY, self._jpeg_quality]
        )
        if not ok:
            raise CameraAccessError("Twin JPEG encoding failed")
        return [ImagePlane(np.asarray(data, dtype=np.uint8).reshape(-1), 0, 0)]

    def _yuv_planes(self, bgr: NDArray[Any]) -> list[ImagePlane]:
        w, h = self._width, self._height
        if w % 2 or h % 2:
            gray = cv2.cvtColor(bgr, cv2.COLOR_BGR2GRAY)
            y = gray
            u = np.full(((h + 1) // 2, (w + 1) // 2), 128, dtype=np.uint8)
            v = u.copy()
        else:
            i420 = cv2.cvtColor(bgr, cv2.COLOR_BGR2YUV_I420).reshape(-1)
            y = i420[: w * h].reshape(h, w)
            quarter = (w // 2) * (h // 2)
            u = i420[w * h : w * h + quarter].reshape(h // 2, w // 2)
            v = i420[w * h + quarter :].reshape(h // 2, w // 2)

        row_stride = w + self._row_padding
        padded = np.zeros((h, row_stride), dtype=np.uint8)
        padded[:, :w] = y
        return [
            ImagePlane(padded.reshape(-1), row_stride, 1),
            ImagePlane(np.ascontiguousarray(u).reshape(-1), u.shape[1], 1),
            ImagePlane(np.ascontiguousarray(v).reshape(-1), v.shape[1], 1),
        ]


_texture_ids = itertools.count()


@final
class TwinPreviewTexture:
    """Preview texture that only counts frames rendered into it."""

    __slots__ = ("_id", "_surface", "buffer_size", "frames_rendered", "released")

    def __init__(self) -> None:
        self._id = next(_texture_ids)
        self._surface = Surface(f"texture-{self._id}")
        self.buffer_size: Size | None = None
        self.frames_rendered = 0
        self.released = False

    def __repr__(self) -> str:
        return f"TwinPreviewTexture(id={self._id}, size={self.buffer_size})"

    @property
    def id(self) -> int:
        return self._id

    @property
    def surface(self) -> Surface:
        return self._surface

    def set_default_buffer_size(self, width: int, height: int) -> None:
        self.buffer_size = Size(width, height)
        self._surface.size = self.buffer_size

    def offer_frame(self, source: _FrameSource, frame_number: int) -> bool:
        if self.released:
            return False
        self.frames_rendered += 1
        return True

    def release(self) -> None:
        self.released = True


class _RecorderState(Enum):
    IDLE = "idle"
    CONFIGURED = "configured"
    PREPARED = "prepared"
    RECORDING = "recording"
    PAUSED = "paused"
    RELEASED = "released"


#: Header written to placeholder recordings (ISO base media 'ftyp' box).
_MP4_HEADER = b"\x00\x00\x00\x18ftypmp42\x00\x00\x00\x00mp42isom"


@final
class TwinMediaRecorder:
    """Media recorder that counts frames and writes a placeholder file."""

    __slots__ = (
        "_state",
        "_settings",
        "_surface",
        "_on_prepared",
        "frames_recorded",
        "_lock",
    )

    def __init__(
        self, on_prepared: Callable[[Surface, Any], None] | None = None
    ) -> None:
        self._on_prepared = on_prepared
        self._state = _RecorderState.IDLE
        self._settings: RecorderSettings | None = None
        self._surface: Surface | None = None
        self.frames_recorded = 0
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"TwinMediaRecorder(state={self._state.value})"

    @property
    def state(self) -> str:
        return self._state.value

    @property
    def settings(self) -> RecorderSettings | None:
        return self._settings

    @property
    def surface(self) -> Surface:
        if self._surface is None:
            raise RuntimeError("Recorder surface is only valid after prepare()")
        return self._surface

    def configure(self, settings: RecorderSettings) -> None:
        with self._lock:
            self._require(_RecorderState.IDLE, _RecorderState.CONFIGURED)
            self._settings = settings
            self._state = _RecorderState.CONFIGURED

    def prepare(self) -> None:
        with self._lock:
            self._require(_RecorderState.CONFIGURED)
            assert self._settings is not None
            parent = Path(self._settings.output_path).parent
            if not parent.is_dir():
                raise OSError(f"Output directory does not exist: {parent}")
            self._surface = Surface("recorder", self._settings.video_size)
            self._state = _RecorderState.PREPARED
        if self._on_prepared is not None:
            self._on_prepared(self._surface, self)

    def start(self) -> None:
        with self._lock:
            self._require(_RecorderState.PREPARED)
            self.frames_recorded = 0
            self._state = _RecorderState.RECORDING

    def pause(self) -> None:
        with self._lock:
            self._require(_RecorderState.RECORDING)
            self._state = _RecorderState.PAUSED

    def resume(self) -> None:
        with self._lock:
            self._require(_RecorderState.PAUSED)
            self._state = _RecorderState.RECORDING

    def stop(self) -> None:
        with self._lock:
            self._require(_RecorderState.RECORDING, _RecorderState.PAUSED)
            assert self._settings is not None
            with open(self._settings.output_path, "wb") as f:
                f.write(_MP4_HEADER)
                f.write(self.frames_recorded.to_bytes(4, "big"))
            self._state = _RecorderState.IDLE

    def reset(self) -> None:
        with self._lock:
            if self._state != _RecorderState.RELEASED:
                self._state = _RecorderState.IDLE
            self._settings = None
            self._surface = None

    def release(self) -> None:
        with self._lock:
            self._state = _RecorderState.RELEASED
            self._surface = None

    def offer_frame(self, source: _FrameSource, frame_number: int) -> bool:
        with self._lock:
            if self._state != _RecorderState.RECORDING:
                return False
            self.frames_recorded += 1
            return True

    def _require(self, *states: _RecorderState) -> None:
        if self._state not in states:
            raise RuntimeError(
                f"Recorder in state {self._state.value}, "
                f"expected one of {[s.value for s in states]}"
            )


# =============================================================================
# Device and session
# =============================================================================


@final
class DigitalTwinCaptureSession:
    """Simulated capture session.

    One-shot requests queued by capture() are served before the repeating
    request, one per produced frame.
    """

    def __init__(
        self, device: DigitalTwinCameraDevice, outputs: list[Surface]
    ) -> None:
        self._device = device
        self._outputs = list(outputs)
        self._repeating: tuple[CaptureRequest, Any, Any] | None = None
        self._pending: deque[tuple[CaptureRequest, Any, Any]] = deque()
        self._sequence = itertools.count(1)
        self._closed = False
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return (
            f"DigitalTwinCaptureSession(outputs={[s.name for s in self._outputs]}, "
            f"closed={self._closed})"
        )

    @property
    def device(self) -> DigitalTwinCameraDevice:
        return self._device

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def outputs(self) -> list[Surface]:
        return list(self._outputs)

    @property
    def repeating_request(self) -> CaptureRequest | None:
        with self._lock:
            return self._repeating[0] if self._repeating else None

    def set_repeating_request(
        self, request: CaptureRequest, callback: Any, handler: Any
    ) -> int:
        with self._lock:
            self._check_request(request)
            self._repeating = (request, callback, handler)
            return next(self._sequence)

    def capture(self, request: CaptureRequest, callback: Any, handler: Any) -> int:
        with self._lock:
            self._check_request(request)
            self._pending.append((request, callback, handler))
            return next(self._sequence)

    def stop_repeating(self) -> None:
        with self._lock:
            if self._closed:
                raise CameraAccessError("Capture session has been closed")
            self._repeating = None

    def abort_captures(self) -> None:
        with self._lock:
            if self._closed:
                raise CameraAccessError("Capture session has been closed")
            self._pending.clear()

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._repeating = None
            self._pending.clear()

    def _check_request(self, request: CaptureRequest) -> None:
        if self._closed:
            raise CameraAccessError("Capture session has been closed")
        if not request.targets:
            raise CameraAccessError("Capture request has no target surfaces")
        for target in request.targets:
            if not any(target is s for s in self._outputs):
                raise CameraAccessError(
                    f"Surface {target.name} is not configured in this session"
                )

    def process_frame(self) -> bool:
        """Produce one frame; False when there was nothing to run."""
        with self._lock:
            if self._closed:
                return False
            if self._pending:
                request, callback, handler = self._pending.popleft()
            elif self._repeating is not None:
                request, callback, handler = self._repeating
            else:
                return False

        frame_number, values = self._device.advance_3a(request)
        result = CaptureResult(
            request=request,
            frame_number=frame_number,
            values=MappingProxyType(values),
        )

        for target in request.targets:
            self._device.deliver_frame(target, frame_number)

        if callback is not None:

            def _deliver() -> None:
                callback.on_capture_progressed(self, request, result)
                callback.on_capture_completed(self, request, result)

            _dispatch(handler, _deliver)
        return True


@final
class DigitalTwinCameraDevice:
    """Simulated open camera device."""

    def __init__(
        self,
        name: str,
        info: TwinCameraInfo,
        config: DigitalTwinConfig,
        driver: DigitalTwinCameraDriver,
        callback: Any,
        handler: Any,
    ) -> None:
        self._name = name
        self._info = info
        self._config = config
        self._driver = driver
        self._callback = callback
        self._handler = handler
        self._source = _FrameSource(name, config)
        self._session: DigitalTwinCaptureSession | None = None
        self._closed = False
        self._lock = threading.Lock()
        self._frame_number = 0
        self._ae_state = AeState.CONVERGED
        self._precapture_left = 0
        self._af_locked: AfState | None = None
        self._stop_event = threading.Event()
        self._frame_thread: threading.Thread | None = None

    def __repr__(self) -> str:
        return f"DigitalTwinCameraDevice(name={self._name!r}, closed={self._closed})"

    @property
    def id(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def session(self) -> DigitalTwinCaptureSession | None:
        return self._session

    @property
    def characteristics(self) -> CameraCharacteristics:
        return self._info.characteristics

    def create_capture_request(
        self, template: RequestTemplate
    ) -> CaptureRequestBuilder:
        if self._closed:
            raise CameraAccessError("Camera device has been closed")
        af_mode = (
            AfMode.CONTINUOUS_VIDEO
            if template == RequestTemplate.RECORD
            else AfMode.CONTINUOUS_PICTURE
        )
        if AfMode.CONTINUOUS_PICTURE not in self.characteristics.af_available_modes:
            af_mode = AfMode.OFF
        return CaptureRequestBuilder(
            template,
            {
                RequestKey.CONTROL_AE_MODE: AeMode.ON,
                RequestKey.CONTROL_AF_MODE: af_mode,
                RequestKey.FLASH_MODE: FlashMode.OFF,
                RequestKey.SCALER_CROP_REGION: self.characteristics.active_array_size,
            },
        )

    def create_capture_session(
        self, outputs: list[Surface], callback: Any, handler: Any
    ) -> None:
        if self._closed:
            raise CameraAccessError("Camera device has been closed")
        with self._lock:
            if self._session is not None:
                self._session.close()
            session = DigitalTwinCaptureSession(self, outputs)
            self._session = session

        logger.debug(
            "Twin capture session created",
            camera=self._name,
            outputs=[s.name for s in outputs],
        )
        if self._config.fail_session_configure:
            _dispatch(handler, lambda: callback.on_configure_failed(session))
        else:
            _dispatch(handler, lambda: callback.on_configured(session))

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            session = self._session
            self._session = None
        if session is not None:
            session.close()
        self._stop_event.set()
        self._driver.forget_device(self)
        logger.info("Twin camera closed", camera=self._name)
        _dispatch(self._handler, lambda: self._callback.on_closed(self))

    def simulate_disconnect(self) -> None:
        """Deliver on_disconnected as a vanished camera would."""
        _dispatch(self._handler, lambda: self._callback.on_disconnected(self))

    def simulate_error(self, error_code: int) -> None:
        """Deliver on_error with a CameraErrorCode value."""
        _dispatch(self._handler, lambda: self._callback.on_error(self, error_code))

    def pump(self, frames: int = 1) -> int:
        """Produce up to ``frames`` frames; returns how many ran."""
        produced = 0
        for _ in range(frames):
            session = self._session
            if session is None or not session.process_frame():
                break
            produced += 1
        return produced

    def start_frame_thread(self, interval_s: float) -> None:
        if self._frame_thread is not None:
            return

        def _loop() -> None:
            while not self._stop_event.wait(interval_s):
                self.pump()

        self._frame_thread = threading.Thread(
            target=_loop, name=f"TwinFrames-{self._name}", daemon=True
        )
        self._frame_thread.start()

    def advance_3a(self, request: CaptureRequest) -> tuple[int, dict[ResultKey, Any]]:
        """Step the simulated AE/AF state for one frame of ``request``."""
        config = self._config
        with self._lock:
            self._frame_number += 1

            ae_trigger = request.get(RequestKey.CONTROL_AE_PRECAPTURE_TRIGGER)
            if ae_trigger == AeTrigger.START:
                self._precapture_left = config.precapture_frames
                self._ae_state = (
                    AeState.PRECAPTURE
                    if config.precapture_frames > 0
                    else config.converged_ae_state
                )
            elif self._precapture_left > 0:
                self._precapture_left -= 1
                if self._precapture_left == 0:
                    self._ae_state = config.converged_ae_state
            elif ae_trigger == AeTrigger.CANCEL:
                self._ae_state = AeState.CONVERGED

            af_trigger = request.get(RequestKey.CONTROL_AF_TRIGGER)
            if af_trigger == AfTrigger.START:
                self._af_locked = AfState.FOCUSED_LOCKED
            elif af_trigger == AfTrigger.CANCEL:
                self._af_locked = None

            if self._af_locked is not None:
                af_state = self._af_locked
            elif request.get(RequestKey.CONTROL_AF_MODE) in (
                AfMode.CONTINUOUS_PICTURE,
                AfMode.CONTINUOUS_VIDEO,
            ):
                af_state = config.passive_af_state
            else:
                af_state = AfState.INACTIVE

            values: dict[ResultKey, Any] = {}
            if config.report_ae_state:
                values[ResultKey.CONTROL_AE_STATE] = self._ae_state
            if config.report_af_state:
                values[ResultKey.CONTROL_AF_STATE] = af_state
            return self._frame_number, values

    def deliver_frame(self, surface: Surface, frame_number: int) -> None:
        owner = self._driver.owner_of(surface)
        if owner is not None:
            owner.offer_frame(self._source, frame_number)


@final
class DigitalTwinCameraDriver:
    """Driver handing out simulated cameras.

    Example:
        driver = DigitalTwinCameraDriver()
        reader = driver.create_image_reader(1600, 1200, ImageFormat.JPEG, 2)
        driver.open_camera("0", callback, handler=worker)
        driver.pump(5)
    """

    __slots__ = ("config", "_cameras", "_owners", "_devices", "_lock")

    def __init__(
        self,
        config: DigitalTwinConfig | None = None,
        cameras: Mapping[str, TwinCameraInfo] | None = None,
    ) -> None:
        self.config = config or DigitalTwinConfig()
        self._cameras: dict[str, TwinCameraInfo] = (
            dict(cameras) if cameras else dict(DEFAULT_CAMERAS)
        )
        self._owners: dict[int, tuple[Surface, Any]] = {}
        self._devices: list[DigitalTwinCameraDevice] = []
        self._lock = threading.Lock()
        logger.info(
            "Digital twin camera driver initialized",
            image_source=self.config.image_source.value,
            num_cameras=len(self._cameras),
        )

    def __repr__(self) -> str:
        return (
            f"DigitalTwinCameraDriver("
            f"source={self.config.image_source.value}, "
            f"cameras={list(self._cameras.keys())})"
        )

    @property
    def devices(self) -> list[DigitalTwinCameraDevice]:
        with self._lock:
            return list(self._devices)

    def get_camera_names(self) -> list[str]:
        return list(self._cameras)

    def get_characteristics(self, name: str) -> CameraCharacteristics:
        if name not in self._cameras:
            raise CameraAccessError(f"Camera {name} not found")
        return self._cameras[name].characteristics

    def get_recording_profile(
        self, camera_id: int, quality: str
    ) -> RecordingProfile | None:
        info = self._cameras.get(str(camera_id))
        if info is None:
            return None
        size = info.profiles.get(quality)
        if size is None:
            return None
        return RecordingProfile(
            quality=quality,
            video_frame_width=size.width,
            video_frame_height=size.height,
        )

    def open_camera(self, name: str, callback: Any, handler: Any) -> None:
        if name not in self._cameras:
            logger.error("Camera not found", camera=name)
            raise CameraAccessError(f"Camera {name} not found")

        device = DigitalTwinCameraDevice(
            name, self._cameras[name], self.config, self, callback, handler
        )
        error_code = self.config.open_error_code
        if error_code is not None:
            logger.warning("Twin camera open fails", camera=name, code=error_code)
            _dispatch(handler, lambda: callback.on_error(device, error_code))
            return

        with self._lock:
            self._devices.append(device)
        logger.info("Opening simulated camera", camera=name)
        if self.config.frame_interval_s > 0:
            device.start_frame_thread(self.config.frame_interval_s)
        _dispatch(handler, lambda: callback.on_opened(device))

    def create_image_reader(
        self, width: int, height: int, format: ImageFormat, max_images: int
    ) -> TwinImageReader:
        reader = TwinImageReader(
            width,
            height,
            format,
            max_images,
            row_padding=self.config.yuv_row_padding,
            jpeg_quality=self.config.jpeg_quality,
        )
        self._register(reader.surface, reader)
        return reader

    def create_media_recorder(self) -> TwinMediaRecorder:
        return TwinMediaRecorder(on_prepared=self._register)

    def create_preview_texture(self) -> TwinPreviewTexture:
        texture = TwinPreviewTexture()
        self._register(texture.surface, texture)
        return texture

    def pump(self, frames: int = 1) -> int:
        """Produce frames on every open device; returns frames produced."""
        return sum(device.pump(frames) for device in self.devices)

    def owner_of(self, surface: Surface) -> Any:
        with self._lock:
            entry = self._owners.get(id(surface))
        return entry[1] if entry is not None else None

    def forget_device(self, device: DigitalTwinCameraDevice) -> None:
        with self._lock:
            if device in self._devices:
                self._devices.remove(device)

    def _register(self, surface: Surface, owner: Any) -> None:
        with self._lock:
            self._owners[id(surface)] = (surface, owner)

