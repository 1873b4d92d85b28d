"""Camera settings that write capture request keys.

Each feature holds one user-facing setting and knows how to apply it to a
``CaptureRequestBuilder``. The coordinator mutates a feature, lets it
update the preview builder, and refreshes the repeating request. Still
requests get every feature through ``CameraFeatures.update_builder``.

Example:
    features = CameraFeatures.create(driver, characteristics, config, manager)
    features.flash.value = FlashMode.TORCH
    features.flash.update_builder(preview_builder)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from camera_scanner.devices.errors import CameraError, InvalidArgumentError
from camera_scanner.devices.orientation import DeviceOrientation
from camera_scanner.devices.resolution import ResolutionFeature
from camera_scanner.drivers.cameras.types import (
    AeMode,
    AfMode,
    CameraCharacteristics,
    CaptureRequestBuilder,
    MeteringRectangle,
    Rect,
    RequestKey,
    Size,
)
from camera_scanner.drivers.cameras.types import FlashMode as DeviceFlashMode
from camera_scanner.observability import get_logger

if TYPE_CHECKING:
    from camera_scanner.devices.camera import CameraConfig
    from camera_scanner.devices.orientation import DeviceOrientationManager
    from camera_scanner.drivers.cameras import CameraDriver

logger = get_logger(__name__)


class FlashMode(Enum):
    """Host flash modes."""

    OFF = "off"
    AUTO = "auto"
    ALWAYS = "always"
    TORCH = "torch"


class ExposureMode(Enum):
    """Host exposure modes."""

    AUTO = "auto"
    LOCKED = "locked"


class FocusMode(Enum):
    """Host focus modes."""

    AUTO = "auto"
    LOCKED = "locked"


def parse_mode(enum_type: type[Enum], value: str | None) -> Any:
    """Member of ``enum_type`` whose value is ``value``, or None."""
    for member in enum_type:
        if member.value == value:
            return member
    return None


@dataclass(frozen=True)
class Point:
    """Normalised preview coordinate; missing axes mean "reset"."""

    x: float | None = None
    y: float | None = None

    @property
    def is_set(self) -> bool:
        return self.x is not None and self.y is not None


@runtime_checkable
class CameraFeature(Protocol):  # pragma: no cover
    """A setting that can be written to a request builder."""

    debug_name: str

    @property
    def is_supported(self) -> bool:
        """Whether the camera supports this setting."""
        ...

    def update_builder(self, builder: CaptureRequestBuilder) -> None:
        """Write this setting's request keys."""
        ...


# =============================================================================
# Simple features
# =============================================================================


class FlashFeature:
    """Flash mode via AE mode and flash mode request keys."""

    debug_name = "FlashFeature"

    def __init__(self, characteristics: CameraCharacteristics) -> None:
        self._characteristics = characteristics
        self.value = FlashMode.AUTO

    @property
    def is_supported(self) -> bool:
        return self._characteristics.flash_available

    def update_builder(self, builder: CaptureRequestBuilder) -> None:
        if not self.is_supported:
            return
        if self.value == FlashMode.OFF:
            builder.set(RequestKey.CONTROL_AE_MODE, AeMode.ON)
            builder.set(RequestKey.FLASH_MODE, DeviceFlashMode.OFF)
        elif self.value == FlashMode.ALWAYS:
            builder.set(RequestKey.CONTROL_AE_MODE, AeMode.ON_ALWAYS_FLASH)
            builder.set(RequestKey.FLASH_MODE, DeviceFlashMode.OFF)
        elif self.value == FlashMode.TORCH:
            builder.set(RequestKey.CONTROL_AE_MODE, AeMode.ON)
            builder.set(RequestKey.FLASH_MODE, DeviceFlashMode.TORCH)
        else:
            builder.set(RequestKey.CONTROL_AE_MODE, AeMode.ON_AUTO_FLASH)
            builder.set(RequestKey.FLASH_MODE, DeviceFlashMode.OFF)


class ExposureLockFeature:
    """AE lock; ``locked`` freezes the current exposure."""

    debug_name = "ExposureLockFeature"

    def __init__(self) -> None:
        self.value = ExposureMode.AUTO

    @property
    def is_supported(self) -> bool:
        return True

    def update_builder(self, builder: CaptureRequestBuilder) -> None:
        builder.set(RequestKey.CONTROL_AE_LOCK, self.value == ExposureMode.LOCKED)


class ExposureOffsetFeature:
    """Exposure compensation in EV.

    Offsets snap to the nearest compensation step and are clamped to the
    supported range.
    """

    debug_name = "ExposureOffsetFeature"

    def __init__(self, characteristics: CameraCharacteristics) -> None:
        self._characteristics = characteristics
        self.compensation = 0

    @property
    def is_supported(self) -> bool:
        return True

    @property
    def step_size(self) -> float:
        return self._characteristics.exposure_compensation_step

    @property
    def min_offset(self) -> float:
        return self._characteristics.exposure_compensation_range[0] * self.step_size

    @property
    def max_offset(self) -> float:
        return self._characteristics.exposure_compensation_range[1] * self.step_size

    @property
    def value(self) -> float:
        """Applied offset in EV."""
        return self.compensation * self.step_size

    @value.setter
    def value(self, offset: float) -> None:
        step = self.step_size
        if not step:
            self.compensation = 0
            return
        low, high = self._characteristics.exposure_compensation_range
        self.compensation = max(low, min(high, round(offset / step)))

    def update_builder(self, builder: CaptureRequestBuilder) -> None:
        builder.set(RequestKey.CONTROL_AE_EXPOSURE_COMPENSATION, self.compensation)


class AutoFocusFeature:
    """AF mode: continuous while ``auto``, single-shot AUTO while ``locked``.

    Continuous mode is the video flavour while recording.
    """

    debug_name = "AutoFocusFeature"

    def __init__(
        self, characteristics: CameraCharacteristics, recording_video: bool = False
    ) -> None:
        self._characteristics = characteristics
        self.recording_video = recording_video
        self.value = FocusMode.AUTO

    @property
    def is_supported(self) -> bool:
        modes = self._characteristics.af_available_modes
        if not self._characteristics.min_focus_distance:
            return False
        return not (not modes or modes == (AfMode.OFF,))

    def update_builder(self, builder: CaptureRequestBuilder) -> None:
        if not self.is_supported:
            return
        if self.value == FocusMode.LOCKED:
            builder.set(RequestKey.CONTROL_AF_MODE, AfMode.AUTO)
        else:
            builder.set(
                RequestKey.CONTROL_AF_MODE,
                AfMode.CONTINUOUS_VIDEO
                if self.recording_video
                else AfMode.CONTINUOUS_PICTURE,
            )


class ZoomLevelFeature:
    """Digital zoom as a centred crop of the active array."""

    debug_name = "ZoomLevelFeature"
    min_zoom = 1.0

    def __init__(self, characteristics: CameraCharacteristics) -> None:
        self._active_array = characteristics.active_array_size
        self.max_zoom = max(self.min_zoom, characteristics.max_digital_zoom)
        self.value = self.min_zoom

    @property
    def is_supported(self) -> bool:
        return self.max_zoom > self.min_zoom

    def crop_region(self) -> Rect:
        return compute_zoom_crop(self.value, self._active_array, self.min_zoom, self.max_zoom)

    def update_builder(self, builder: CaptureRequestBuilder) -> None:
        if not self.is_supported:
            return
        builder.set(RequestKey.SCALER_CROP_REGION, self.crop_region())


def compute_zoom_crop(zoom: float, array: Rect, min_zoom: float, max_zoom: float) -> Rect:
    """Crop rectangle of ``array`` for a zoom factor clamped to the limits."""
    zoom = min(max(zoom, min_zoom), max_zoom)
    center_x = array.width // 2
    center_y = array.height // 2
    delta_x = int(0.5 * array.width / zoom)
    delta_y = int(0.5 * array.height / zoom)
    return Rect(center_x - delta_x, center_y - delta_y, center_x + delta_x, center_y + delta_y)


# =============================================================================
# Metering points
# =============================================================================


def point_to_metering_rectangle(
    boundaries: Size, x: float, y: float, orientation: DeviceOrientation
) -> MeteringRectangle:
    """Metering rectangle of a tenth of the boundaries around (x, y).

    (x, y) are preview coordinates in [0, 1]; they are rotated into sensor
    coordinates for the UI orientation first.

    Raises:
        InvalidArgumentError: If a coordinate lies outside [0, 1].
    """
    if not (0 <= x <= 1 and 0 <= y <= 1):
        raise InvalidArgumentError("x and y must be in the range [0, 1]")

    old_x, old_y = x, y
    if orientation == DeviceOrientation.PORTRAIT_UP:
        x, y = old_y, 1 - old_x
    elif orientation == DeviceOrientation.PORTRAIT_DOWN:
        x, y = 1 - old_y, old_x
    elif orientation == DeviceOrientation.LANDSCAPE_RIGHT:
        x, y = 1 - old_x, 1 - old_y

    target_x = round(x * (boundaries.width - 1))
    target_y = round(y * (boundaries.height - 1))
    width = round(boundaries.width / 10)
    height = round(boundaries.height / 10)
    target_x -= width // 2
    target_y -= height // 2
    target_x = min(max(target_x, 0), boundaries.width - 1 - width)
    target_y = min(max(target_y, 0), boundaries.height - 1 - height)
    return MeteringRectangle(target_x, target_y, width, height, 1)


class _MeteringPointFeature:
    """Shared logic of the exposure and focus point features."""

    debug_name = "MeteringPointFeature"
    _request_key: RequestKey

    def __init__(
        self,
        max_regions: int,
        sensor_orientation: SensorOrientationFeature,
    ) -> None:
        self._max_regions = max_regions
        self._sensor_orientation = sensor_orientation
        self.boundaries: Size | None = None
        self.rectangle: MeteringRectangle | None = None
        self._value = Point()

    @property
    def is_supported(self) -> bool:
        return self._max_regions > 0

    @property
    def value(self) -> Point:
        return self._value

    @value.setter
    def value(self, point: Point) -> None:
        self._value = point
        self._build_rectangle()

    def set_camera_boundaries(self, boundaries: Size) -> None:
        self.boundaries = boundaries
        self._build_rectangle()

    def update_builder(self, builder: CaptureRequestBuilder) -> None:
        if not self.is_supported:
            return
        builder.set(
            self._request_key,
            None if self.rectangle is None else (self.rectangle,),
        )

    def _build_rectangle(self) -> None:
        if not self._value.is_set:
            self.rectangle = None
            return
        if self.boundaries is None:
            raise CameraError(
                "The camera boundaries should be set before updating the metering point."
            )
        orientation = self._sensor_orientation.capture_or_ui_orientation()
        self.rectangle = point_to_metering_rectangle(
            self.boundaries, float(self._value.x), float(self._value.y), orientation
        )


class ExposurePointFeature(_MeteringPointFeature):
    debug_name = "ExposurePointFeature"
    _request_key = RequestKey.CONTROL_AE_REGIONS


class FocusPointFeature(_MeteringPointFeature):
    debug_name = "FocusPointFeature"
    _request_key = RequestKey.CONTROL_AF_REGIONS


class SensorOrientationFeature:
    """Sensor orientation plus the device orientation manager."""

    debug_name = "SensorOrientationFeature"

    def __init__(
        self,
        characteristics: CameraCharacteristics,
        manager: DeviceOrientationManager,
        locked_capture_orientation: DeviceOrientation | None = None,
    ) -> None:
        self.value = characteristics.sensor_orientation
        self.manager = manager
        self.locked_capture_orientation = locked_capture_orientation

    @property
    def is_supported(self) -> bool:
        return True

    def capture_or_ui_orientation(self) -> DeviceOrientation:
        if self.locked_capture_orientation is not None:
            return self.locked_capture_orientation
        return self.manager.ui_orientation or DeviceOrientation.PORTRAIT_UP

    def update_builder(self, builder: CaptureRequestBuilder) -> None:
        """Orientation is applied to saved pixels, not to requests."""


# =============================================================================
# Feature set
# =============================================================================


class CameraFeatures:
    """All features of one open camera."""

    def __init__(
        self,
        flash: FlashFeature,
        exposure_lock: ExposureLockFeature,
        exposure_point: ExposurePointFeature,
        exposure_offset: ExposureOffsetFeature,
        auto_focus: AutoFocusFeature,
        focus_point: FocusPointFeature,
        zoom_level: ZoomLevelFeature,
        resolution: ResolutionFeature,
        sensor_orientation: SensorOrientationFeature,
    ) -> None:
        self.flash = flash
        self.exposure_lock = exposure_lock
        self.exposure_point = exposure_point
        self.exposure_offset = exposure_offset
        self.auto_focus = auto_focus
        self.focus_point = focus_point
        self.zoom_level = zoom_level
        self.resolution = resolution
        self.sensor_orientation = sensor_orientation

    @classmethod
    def create(
        cls,
        driver: CameraDriver,
        characteristics: CameraCharacteristics,
        config: CameraConfig,
        manager: DeviceOrientationManager,
    ) -> CameraFeatures:
        sensor_orientation = SensorOrientationFeature(
            characteristics, manager, config.locked_capture_orientation
        )
        return cls(
            flash=FlashFeature(characteristics),
            exposure_lock=ExposureLockFeature(),
            exposure_point=ExposurePointFeature(
                characteristics.max_regions_ae, sensor_orientation
            ),
            exposure_offset=ExposureOffsetFeature(characteristics),
            auto_focus=AutoFocusFeature(characteristics, recording_video=False),
            focus_point=FocusPointFeature(
                characteristics.max_regions_af, sensor_orientation
            ),
            zoom_level=ZoomLevelFeature(characteristics),
            resolution=ResolutionFeature(
                driver,
                config.camera_name,
                config.resolution_preset,
                config.long_side_size,
                config.short_side_size,
            ),
            sensor_orientation=sensor_orientation,
        )

    def all(self) -> list[CameraFeature]:
        return [
            self.flash,
            self.exposure_lock,
            self.exposure_point,
            self.exposure_offset,
            self.auto_focus,
            self.focus_point,
            self.zoom_level,
            self.resolution,
            self.sensor_orientation,
        ]

    def update_builder(self, builder: CaptureRequestBuilder) -> None:
        for feature in self.all():
            logger.debug("Updating builder with feature", feature=feature.debug_name)
            feature.update_builder(builder)

    def set_camera_boundaries(self, boundaries: Size) -> None:
        self.exposure_point.set_camera_boundaries(boundaries)
        self.focus_point.set_camera_boundaries(boundaries)
