"""Value types shared by camera drivers and the capture core.

These model a camera2-style device: request templates and builders,
per-frame capture results carrying AE/AF state, image planes, output
surfaces and camcorder profiles. Drivers produce and consume them; the
core never talks to hardware directly.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from numpy.typing import NDArray

# =============================================================================
# Enumerations
# =============================================================================


class AeState(IntEnum):
    """Auto-exposure state reported in capture results."""

    INACTIVE = 0
    SEARCHING = 1
    CONVERGED = 2
    LOCKED = 3
    FLASH_REQUIRED = 4
    PRECAPTURE = 5


class AfState(IntEnum):
    """Auto-focus state reported in capture results."""

    INACTIVE = 0
    PASSIVE_SCAN = 1
    PASSIVE_FOCUSED = 2
    ACTIVE_SCAN = 3
    FOCUSED_LOCKED = 4
    NOT_FOCUSED_LOCKED = 5
    PASSIVE_UNFOCUSED = 6


class AeTrigger(IntEnum):
    """Values of the AE precapture trigger request key."""

    IDLE = 0
    START = 1
    CANCEL = 2


class AfTrigger(IntEnum):
    """Values of the AF trigger request key."""

    IDLE = 0
    START = 1
    CANCEL = 2


class AfMode(IntEnum):
    """Auto-focus modes."""

    OFF = 0
    AUTO = 1
    MACRO = 2
    CONTINUOUS_VIDEO = 3
    CONTINUOUS_PICTURE = 4


class AeMode(IntEnum):
    """Auto-exposure modes, including flash control."""

    OFF = 0
    ON = 1
    ON_AUTO_FLASH = 2
    ON_ALWAYS_FLASH = 3


class FlashMode(IntEnum):
    """Flash unit modes as set on a request."""

    OFF = 0
    SINGLE = 1
    TORCH = 2


class RequestTemplate(Enum):
    """Capture request templates."""

    PREVIEW = "preview"
    STILL_CAPTURE = "still_capture"
    RECORD = "record"


class ImageFormat(Enum):
    """Image formats produced by image readers."""

    JPEG = "jpeg"
    YUV_420_888 = "yuv_420_888"


class LensFacing(Enum):
    """Direction a lens faces; values are the host strings."""

    FRONT = "front"
    BACK = "back"
    EXTERNAL = "external"


class RequestKey(Enum):
    """Keys settable on a capture request."""

    CONTROL_AE_MODE = "android.control.aeMode"
    CONTROL_AE_LOCK = "android.control.aeLock"
    CONTROL_AE_REGIONS = "android.control.aeRegions"
    CONTROL_AE_EXPOSURE_COMPENSATION = "android.control.aeExposureCompensation"
    CONTROL_AE_PRECAPTURE_TRIGGER = "android.control.aePrecaptureTrigger"
    CONTROL_AF_MODE = "android.control.afMode"
    CONTROL_AF_REGIONS = "android.control.afRegions"
    CONTROL_AF_TRIGGER = "android.control.afTrigger"
    FLASH_MODE = "android.flash.mode"
    SCALER_CROP_REGION = "android.scaler.cropRegion"


class ResultKey(Enum):
    """Keys read from a capture result."""

    CONTROL_AE_STATE = "android.control.aeState"
    CONTROL_AF_STATE = "android.control.afState"


class CameraErrorCode(IntEnum):
    """Error codes delivered by a device's on_error callback."""

    CAMERA_IN_USE = 1
    MAX_CAMERAS_IN_USE = 2
    CAMERA_DISABLED = 3
    CAMERA_DEVICE = 4
    CAMERA_SERVICE = 5


# =============================================================================
# Geometry
# =============================================================================


@dataclass(frozen=True, slots=True)
class Size:
    """Width and height in pixels."""

    width: int
    height: int

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(frozen=True, slots=True)
class Rect:
    """Axis-aligned rectangle with exclusive right/bottom edges."""

    left: int
    top: int
    right: int
    bottom: int

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def height(self) -> int:
        return self.bottom - self.top


@dataclass(frozen=True, slots=True)
class MeteringRectangle:
    """Metering region for AE or AF, in sensor active-array coordinates."""

    x: int
    y: int
    width: int
    height: int
    weight: int = 1000


# =============================================================================
# Device description
# =============================================================================


@dataclass(frozen=True, slots=True)
class RecordingProfile:
    """Camcorder profile: video frame size plus encoder parameters."""

    quality: str
    video_frame_width: int
    video_frame_height: int
    video_bit_rate: int = 10_000_000
    video_frame_rate: int = 30
    video_codec: str = "h264"
    file_format: str = "mp4"
    audio_bit_rate: int = 96_000
    audio_sample_rate: int = 44_100
    audio_channels: int = 1
    audio_codec: str = "aac"

    @property
    def video_size(self) -> Size:
        return Size(self.video_frame_width, self.video_frame_height)


@dataclass(frozen=True)
class CameraCharacteristics:
    """Static capabilities of one camera.

    Attributes:
        sensor_orientation: Clockwise angle the sensor image must be
            rotated to be upright in the device's natural orientation.
        lens_facing: Lens direction.
        output_sizes: Supported sizes per image reader format.
        active_array_size: Sensor area used for crop and metering maths.
        max_digital_zoom: Largest zoom factor; 1.0 means no zoom.
        exposure_compensation_range: (min, max) compensation steps.
        exposure_compensation_step: EV per compensation step.
        max_regions_ae: AE metering regions supported (0 = none).
        max_regions_af: AF metering regions supported (0 = none).
        af_available_modes: Supported auto-focus modes.
        flash_available: Whether the camera has a flash unit.
        min_focus_distance: 0.0 for fixed-focus lenses.
    """

    sensor_orientation: int = 90
    lens_facing: LensFacing = LensFacing.BACK
    output_sizes: Mapping[ImageFormat, tuple[Size, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    active_array_size: Rect = Rect(0, 0, 4000, 3000)
    max_digital_zoom: float = 1.0
    exposure_compensation_range: tuple[int, int] = (0, 0)
    exposure_compensation_step: float = 0.0
    max_regions_ae: int = 0
    max_regions_af: int = 0
    af_available_modes: tuple[AfMode, ...] = (AfMode.OFF,)
    flash_available: bool = False
    min_focus_distance: float = 0.0


# =============================================================================
# Surfaces and images
# =============================================================================


class Surface:
    """Opaque output target of a capture session.

    Identity matters, not value: a request targets the exact surface
    object handed out by a reader, recorder or preview texture.
    """

    __slots__ = ("name", "size")

    def __init__(self, name: str, size: Size | None = None) -> None:
        self.name = name
        self.size = size

    def __repr__(self) -> str:
        return f"Surface(name={self.name!r}, size={self.size})"


@dataclass(slots=True)
class ImagePlane:
    """One plane of an image buffer.

    ``buffer`` is a flat uint8 array. Sample (x, y) lives at
    ``y * row_stride + x * pixel_stride``.
    """

    buffer: NDArray[Any]
    row_stride: int
    pixel_stride: int


class Image:
    """Image acquired from an image reader.

    The reader slot is released by ``close()``; closing twice is allowed.
    For JPEG images plane 0 holds the compressed bytes. For YUV_420_888
    images planes are Y, U, V.
    """

    def __init__(
        self,
        width: int,
        height: int,
        format: ImageFormat,
        planes: list[ImagePlane],
        timestamp_ns: int = 0,
        crop_rect: Rect | None = None,
        on_close: Callable[[Image], None] | None = None,
    ) -> None:
        self.width = width
        self.height = height
        self.format = format
        self.planes = planes
        self.timestamp_ns = timestamp_ns
        self.crop_rect = crop_rect or Rect(0, 0, width, height)
        self._on_close = on_close
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Release the image back to its reader."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        if self._on_close is not None:
            self._on_close(self)

    def __repr__(self) -> str:
        return (
            f"Image({self.width}x{self.height}, format={self.format.value}, "
            f"closed={self._closed})"
        )


# =============================================================================
# Requests and results
# =============================================================================


@dataclass(frozen=True)
class CaptureRequest:
    """Immutable capture request built by CaptureRequestBuilder."""

    template: RequestTemplate
    values: Mapping[RequestKey, Any]
    targets: tuple[Surface, ...]

    def get(self, key: RequestKey, default: Any = None) -> Any:
        return self.values.get(key, default)


class CaptureRequestBuilder:
    """Mutable request under construction.

    Usage:
        builder = device.create_capture_request(RequestTemplate.PREVIEW)
        builder.add_target(preview_surface)
        builder.set(RequestKey.CONTROL_AF_MODE, AfMode.CONTINUOUS_PICTURE)
        session.set_repeating_request(builder.build(), callback, handler)
    """

    def __init__(
        self,
        template: RequestTemplate,
        defaults: Mapping[RequestKey, Any] | None = None,
    ) -> None:
        self.template = template
        self._values: dict[RequestKey, Any] = dict(defaults or {})
        self._targets: list[Surface] = []

    def set(self, key: RequestKey, value: Any) -> None:
        self._values[key] = value

    def get(self, key: RequestKey, default: Any = None) -> Any:
        return self._values.get(key, default)

    def add_target(self, surface: Surface) -> None:
        if not any(t is surface for t in self._targets):
            self._targets.append(surface)

    def remove_target(self, surface: Surface) -> None:
        self._targets = [t for t in self._targets if t is not surface]

    @property
    def targets(self) -> tuple[Surface, ...]:
        return tuple(self._targets)

    def build(self) -> CaptureRequest:
        return CaptureRequest(
            template=self.template,
            values=MappingProxyType(dict(self._values)),
            targets=tuple(self._targets),
        )


@dataclass(frozen=True)
class CaptureResult:
    """Per-frame metadata delivered to capture callbacks."""

    request: CaptureRequest
    frame_number: int
    values: Mapping[ResultKey, Any] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def get(self, key: ResultKey, default: Any = None) -> Any:
        return self.values.get(key, default)

    @property
    def ae_state(self) -> AeState | None:
        return self.values.get(ResultKey.CONTROL_AE_STATE)

    @property
    def af_state(self) -> AfState | None:
        return self.values.get(ResultKey.CONTROL_AF_STATE)


@dataclass(frozen=True)
class RecorderSettings:
    """Everything a media recorder needs before prepare().

    Audio fields are ignored when ``enable_audio`` is False.
    """

    output_path: str
    video_size: Size
    video_frame_rate: int
    video_bit_rate: int
    video_codec: str
    file_format: str
    orientation_hint: int = 0
    enable_audio: bool = False
    audio_codec: str = "aac"
    audio_bit_rate: int = 96_000
    audio_sample_rate: int = 44_100
    audio_channels: int = 1
