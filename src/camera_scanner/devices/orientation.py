"""Device orientation and tilt engine.

Tracks two orientations and the device tilt:

- ``accelerometer_orientation``: physical orientation snapped to the
  nearest cardinal direction from accelerometer angle events
- ``ui_orientation``: orientation of the UI from display rotation and the
  configured orientation
- vertical tilt from rotation-vector samples, which also decides between
  ``normalShot`` (within 45 degrees of upright) and ``overheadShot``

In overhead mode the reported tilts come from pitch and roll rotated by
``target_image_rotation``, and the accelerometer orientation is frozen so
a phone held flat over a document does not flip orientation.

Business context: the still saver and the barcode pipeline both rotate
frames by the capture rotation derived here, and the host draws a level
indicator from the tilt events.
"""

from __future__ import annotations

import math
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum, StrEnum
from typing import TYPE_CHECKING, Any

import numpy as np

from camera_scanner.devices.errors import InvalidArgumentError
from camera_scanner.drivers.sensors.types import (
    ORIENTATION_UNKNOWN,
    ConfigurationOrientation,
    DisplayInfo,
    DisplayRotation,
    MotionSensors,
)
from camera_scanner.observability import get_logger

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from camera_scanner.devices.messenger import EventMessenger

logger = get_logger(__name__)

#: Degrees of tolerance when snapping an angle to a cardinal orientation.
ORIENTATION_TOLERANCE = 45

#: |vertical tilt| above this many degrees means an overhead shot.
OVERHEAD_THRESHOLD = 45.0

_INITIAL_ORIENTATION_ANGLES = (0.0, 1.54, 1.54)


class DeviceOrientation(Enum):
    """Cardinal device orientations; values are the host strings."""

    PORTRAIT_UP = "portraitUp"
    PORTRAIT_DOWN = "portraitDown"
    LANDSCAPE_LEFT = "landscapeLeft"
    LANDSCAPE_RIGHT = "landscapeRight"


class TakePictureMode(StrEnum):
    """How the device is held relative to the subject."""

    UNKNOWN_SHOT = "unknownShot"
    NORMAL_SHOT = "normalShot"
    OVERHEAD_SHOT = "overheadShot"


_ORIENTATION_ANGLES = {
    DeviceOrientation.PORTRAIT_UP: 0,
    DeviceOrientation.LANDSCAPE_RIGHT: 90,
    DeviceOrientation.PORTRAIT_DOWN: 180,
    DeviceOrientation.LANDSCAPE_LEFT: 270,
}

# Index is (angle + tolerance) % 360 // 90
_SNAP_ORDER = (
    DeviceOrientation.PORTRAIT_UP,
    DeviceOrientation.LANDSCAPE_RIGHT,
    DeviceOrientation.PORTRAIT_DOWN,
    DeviceOrientation.LANDSCAPE_LEFT,
)


def serialize_device_orientation(orientation: DeviceOrientation) -> str:
    return orientation.value


def deserialize_device_orientation(value: str | None) -> DeviceOrientation | None:
    """Parse a host orientation string; None stays None.

    Raises:
        InvalidArgumentError: For strings that name no orientation.
    """
    if value is None:
        return None
    for orientation in DeviceOrientation:
        if orientation.value == value:
            return orientation
    raise InvalidArgumentError(f"Could not deserialize device orientation: {value}")


def get_orientation_angle(orientation: DeviceOrientation | None) -> int:
    """Clockwise angle of an orientation; None maps to 0."""
    if orientation is None:
        return 0
    return _ORIENTATION_ANGLES[orientation]


def normalize_angle(angle: float) -> int:
    """Map any multiple of 90 degrees into {0, 90, 180, 270}."""
    return int(angle) % 360


def capture_rotation(
    target_image_rotation: int,
    locked_capture_angle: int,
    ui_angle: int,
    sensor_angle: int,
) -> int:
    """Rotation that makes a sensor frame upright for the user.

    Without a locked capture orientation (``locked_capture_angle == -1``)
    this is the target image rotation plus the sensor angle; with a lock
    it is the UI angle plus the locked angle plus the sensor angle.
    """
    if locked_capture_angle == -1:
        angle = target_image_rotation + sensor_angle
    else:
        angle = ui_angle + locked_capture_angle + sensor_angle
    return normalize_angle(angle)


@dataclass(frozen=True)
class DeviceTilts:
    """Snapshot of the tilt state sent to the host and stored with photos."""

    horizontal_tilt: float
    vertical_tilt: float
    is_horizontal_tilt_available: bool
    is_vertical_tilt_available: bool
    mode: TakePictureMode
    target_image_rotation: int
    locked_capture_angle: int
    device_orientation_angle: int
    is_ui_rotation_equal_acc_rotation: bool

    @property
    def is_orientation_change_allowed(self) -> bool:
        return self.mode in (TakePictureMode.NORMAL_SHOT, TakePictureMode.UNKNOWN_SHOT)

    def to_map(self) -> dict[str, Any]:
        return {
            "horizontalTilt": self.horizontal_tilt,
            "verticalTilt": self.vertical_tilt,
            "isHorizontalTiltAvailable": self.is_horizontal_tilt_available,
            "isVerticalTiltAvailable": self.is_vertical_tilt_available,
            "mode": str(self.mode),
            "targetImageRotation": self.target_image_rotation,
            "lockedCaptureAngle": self.locked_capture_angle,
            "deviceOrientationAngle": self.device_orientation_angle,
            "isUIRotationEqualAccRotation": self.is_ui_rotation_equal_acc_rotation,
        }


# =============================================================================
# Rotation vector maths
# =============================================================================


def rotation_matrix_from_vector(values: Sequence[float]) -> NDArray[Any]:
    """3x3 rotation matrix from a rotation vector (x, y, z[, w]).

    When w is absent it is reconstructed from the unit-norm constraint.
    """
    q1, q2, q3 = float(values[0]), float(values[1]), float(values[2])
    if len(values) >= 4:
        q0 = float(values[3])
    else:
        q0 = math.sqrt(max(0.0, 1.0 - q1 * q1 - q2 * q2 - q3 * q3))

    sq_q1 = 2 * q1 * q1
    sq_q2 = 2 * q2 * q2
    sq_q3 = 2 * q3 * q3
    q1_q2 = 2 * q1 * q2
    q3_q0 = 2 * q3 * q0
    q1_q3 = 2 * q1 * q3
    q2_q0 = 2 * q2 * q0
    q2_q3 = 2 * q2 * q3
    q1_q0 = 2 * q1 * q0

    return np.array(
        [
            [1 - sq_q2 - sq_q3, q1_q2 - q3_q0, q1_q3 + q2_q0],
            [q1_q2 + q3_q0, 1 - sq_q1 - sq_q3, q2_q3 - q1_q0],
            [q1_q3 - q2_q0, q2_q3 + q1_q0, 1 - sq_q1 - sq_q2],
        ]
    )


def orientation_from_matrix(matrix: NDArray[Any]) -> tuple[float, float, float]:
    """(azimuth, pitch, roll) in radians from a rotation matrix."""
    azimuth = math.atan2(matrix[0, 1], matrix[1, 1])
    pitch = math.asin(max(-1.0, min(1.0, -matrix[2, 1])))
    roll = math.atan2(-matrix[2, 0], matrix[2, 2])
    return azimuth, pitch, roll


def vertical_tilt_from_vector(values: Sequence[float]) -> float:
    """Degrees away from upright; 0 when upright, -90 when lying flat.

    ``asin(sqrt(x^2 + y^2))`` is half the rotation angle about the
    horizontal axes, hence the 360/pi factor.
    """
    magnitude = math.sqrt(values[0] * values[0] + values[1] * values[1])
    return math.asin(min(1.0, magnitude)) * 360 / math.pi - 90


# =============================================================================
# Manager
# =============================================================================


class DeviceOrientationManager:
    """Derives orientations and tilts from display and motion sensors.

    Sensor callbacks may arrive on any thread; state is guarded by a lock
    and events are published through the messenger outside of it.

    Args:
        messenger: Publishes orientation, tilt and device log events.
        display: Display rotation and configuration orientation.
        sensors: Accelerometer orientation and rotation vector sources.
        locked_capture_orientation: Fixed capture orientation, if any.
        is_front_facing: Front lens; mirrors the fallback photo angle.
        sensor_orientation: Camera sensor orientation in degrees.
    """

    def __init__(
        self,
        messenger: EventMessenger,
        display: DisplayInfo,
        sensors: MotionSensors,
        locked_capture_orientation: DeviceOrientation | None = None,
        is_front_facing: bool = False,
        sensor_orientation: int = 0,
    ) -> None:
        self._messenger = messenger
        self._display = display
        self._sensors = sensors
        self.locked_capture_orientation = locked_capture_orientation
        self.is_front_facing = is_front_facing
        self.sensor_orientation = sensor_orientation
        self.locked_capture_angle = (
            get_orientation_angle(locked_capture_orientation)
            if locked_capture_orientation is not None
            else -1
        )

        self._lock = threading.RLock()
        self._started = False
        self.accelerometer_orientation: DeviceOrientation | None = None
        self.ui_orientation: DeviceOrientation | None = None
        self.horizontal_tilt = 0.0
        self.vertical_tilt = 0.0
        self.horizontal_tilt_overhead = 0.0
        self.vertical_tilt_overhead = 0.0
        self.is_horizontal_tilt_available = False
        self.is_vertical_tilt_available = False
        self.mode = TakePictureMode.UNKNOWN_SHOT
        self.target_image_rotation = 0
        self.orientation_angles: tuple[float, float, float] = (
            _INITIAL_ORIENTATION_ANGLES
        )

    def __repr__(self) -> str:
        return (
            f"DeviceOrientationManager(mode={self.mode}, "
            f"acc={self.accelerometer_orientation}, ui={self.ui_orientation}, "
            f"locked={self.locked_capture_orientation})"
        )

    @property
    def is_orientation_change_allowed(self) -> bool:
        return self.mode in (TakePictureMode.NORMAL_SHOT, TakePictureMode.UNKNOWN_SHOT)

    # -- lifecycle ------------------------------------------------------------

    def start(self) -> None:
        """Read the UI orientation and start listening to sensors."""
        if self._started:
            return
        self._started = True
        with self._lock:
            self.ui_orientation = self.get_ui_orientation()
        self._display.add_configuration_listener(self.on_configuration_changed)
        self._messenger.send_device_log_info("Start sensor listener")

        if self._sensors.has_rotation_vector_sensor():
            self.is_vertical_tilt_available = True
            self._messenger.send_device_log_info("Rotation sensor has been initialized")
        else:
            self.is_vertical_tilt_available = False
            self.mode = TakePictureMode.UNKNOWN_SHOT
            self._messenger.send_device_log_error("Rotation sensor is not available")

        if self._sensors.can_detect_orientation():
            self.is_horizontal_tilt_available = True
            self._messenger.send_device_log_info("Orientation listener has been enabled")
        else:
            self.is_horizontal_tilt_available = False
            self.mode = TakePictureMode.UNKNOWN_SHOT
            self._messenger.send_device_log_error("Cannot detect orientation")

        self._sensors.start(self)
        logger.info(
            "Orientation manager started",
            rotation_vector=self.is_vertical_tilt_available,
            orientation=self.is_horizontal_tilt_available,
            locked_capture_angle=self.locked_capture_angle,
        )

    def stop(self) -> None:
        """Stop listening to sensors and display changes."""
        if not self._started:
            return
        self._started = False
        self._sensors.stop()
        self._display.remove_configuration_listener(self.on_configuration_changed)
        self._messenger.send_device_log_info("Stop sensor listener")

    # -- sensor events --------------------------------------------------------

    def on_orientation_changed(self, angle: int) -> None:
        """Accelerometer angle in degrees, or ORIENTATION_UNKNOWN."""
        changed_to: DeviceOrientation | None = None
        with self._lock:
            new_orientation = self.calculate_sensor_orientation(angle)
            allowed = self.is_orientation_change_allowed
            if new_orientation != self.accelerometer_orientation and allowed:
                self.accelerometer_orientation = new_orientation
                changed_to = new_orientation

            if allowed:
                self.is_horizontal_tilt_available = angle != ORIENTATION_UNKNOWN
                if angle == ORIENTATION_UNKNOWN:
                    self.mode = TakePictureMode.UNKNOWN_SHOT

            tilt = get_orientation_angle(self.accelerometer_orientation) - angle
            if tilt < -180:
                tilt += 360
            self.horizontal_tilt = float(tilt)

            if self.locked_capture_angle == -1:
                self.target_image_rotation = get_orientation_angle(self.ui_orientation)
            else:
                self.target_image_rotation = get_orientation_angle(
                    self.accelerometer_orientation
                )

            overhead = self.mode == TakePictureMode.OVERHEAD_SHOT
            tilts = self.get_device_tilts()

        if changed_to is not None:
            logger.debug("Accelerometer orientation changed", orientation=changed_to.value)
            self._messenger.send_device_log_info(
                f"Device orientation changed to {changed_to.value}"
            )
            self._messenger.send_device_orientation_changed(changed_to)
        if not overhead:
            self._messenger.send_device_tilts_changed(tilts)

    def on_sensor_changed(self, values: Sequence[float]) -> None:
        """Rotation vector sample (x, y, z[, w])."""
        angles = orientation_from_matrix(rotation_matrix_from_vector(values))
        vertical = vertical_tilt_from_vector(values)

        with self._lock:
            self.orientation_angles = angles
            self.vertical_tilt = vertical

            if -OVERHEAD_THRESHOLD <= vertical <= OVERHEAD_THRESHOLD:
                self.mode = TakePictureMode.NORMAL_SHOT
            else:
                self.mode = TakePictureMode.OVERHEAD_SHOT
                self.is_vertical_tilt_available = True
                self.is_horizontal_tilt_available = True
                pitch = math.degrees(angles[1])
                roll = math.degrees(angles[2])
                rotation = int(self.target_image_rotation)
                if rotation == 90:
                    self.vertical_tilt_overhead = roll
                    self.horizontal_tilt_overhead = -pitch
                elif rotation == 180:
                    self.vertical_tilt_overhead = pitch
                    self.horizontal_tilt_overhead = roll
                elif rotation == 270:
                    self.vertical_tilt_overhead = -roll
                    self.horizontal_tilt_overhead = pitch
                else:
                    self.vertical_tilt_overhead = -pitch
                    self.horizontal_tilt_overhead = -roll
            tilts = self.get_device_tilts()

        self._messenger.send_device_tilts_changed(tilts)

    def on_configuration_changed(self) -> None:
        """UI configuration changed; re-read the UI orientation."""
        with self._lock:
            new_orientation = self.get_ui_orientation()
            if (
                new_orientation == self.ui_orientation
                or not self.is_orientation_change_allowed
            ):
                return
            self.ui_orientation = new_orientation
        logger.debug("UI orientation changed", orientation=new_orientation.value)
        self._messenger.send_device_orientation_changed(new_orientation)

    # -- queries --------------------------------------------------------------

    def get_device_tilts(self) -> DeviceTilts:
        with self._lock:
            overhead = self.mode == TakePictureMode.OVERHEAD_SHOT
            return DeviceTilts(
                horizontal_tilt=(
                    self.horizontal_tilt_overhead if overhead else self.horizontal_tilt
                ),
                vertical_tilt=(
                    self.vertical_tilt_overhead if overhead else self.vertical_tilt
                ),
                is_horizontal_tilt_available=self.is_horizontal_tilt_available,
                is_vertical_tilt_available=self.is_vertical_tilt_available,
                mode=self.mode,
                target_image_rotation=self.target_image_rotation,
                locked_capture_angle=self.locked_capture_angle,
                device_orientation_angle=0,
                is_ui_rotation_equal_acc_rotation=(
                    get_orientation_angle(self.ui_orientation)
                    == get_orientation_angle(self.accelerometer_orientation)
                ),
            )

    def get_ui_orientation_angle(self) -> int:
        return get_orientation_angle(self.ui_orientation)

    def get_capture_rotation(self, sensor_angle: int | None = None) -> int:
        """Rotation that makes a captured sensor frame upright."""
        sensor = self.sensor_orientation if sensor_angle is None else sensor_angle
        with self._lock:
            return capture_rotation(
                self.target_image_rotation,
                self.locked_capture_angle,
                get_orientation_angle(self.ui_orientation),
                sensor,
            )

    def get_photo_orientation(self, orientation: DeviceOrientation | None = None) -> int:
        """Rotation applied to saved stills.

        With a rotation-vector sensor this is the capture rotation, which
        already accounts for a locked capture orientation, so stills match
        the preview and barcode frames. Otherwise it is derived from
        ``orientation`` (or the accelerometer orientation) and the sensor
        orientation, with landscape angles mirrored for front-facing lenses.
        """
        if self._sensors.has_rotation_vector_sensor():
            return self.get_capture_rotation()
        if orientation is None:
            orientation = self.accelerometer_orientation or DeviceOrientation.PORTRAIT_UP
        if orientation == DeviceOrientation.PORTRAIT_UP:
            angle = 90
        elif orientation == DeviceOrientation.PORTRAIT_DOWN:
            angle = 270
        elif orientation == DeviceOrientation.LANDSCAPE_LEFT:
            angle = 180 if self.is_front_facing else 0
        else:
            angle = 0 if self.is_front_facing else 180
        return (angle + self.sensor_orientation + 270) % 360

    def get_video_orientation(self) -> int:
        """Orientation hint for recordings; recordings are never mirrored."""
        return 0

    def get_ui_orientation(self) -> DeviceOrientation:
        rotation = self._display.get_rotation()
        orientation = self._display.get_configuration_orientation()
        upright = rotation in (DisplayRotation.ROTATION_0, DisplayRotation.ROTATION_90)
        if orientation == ConfigurationOrientation.PORTRAIT:
            return (
                DeviceOrientation.PORTRAIT_UP
                if upright
                else DeviceOrientation.PORTRAIT_DOWN
            )
        if orientation == ConfigurationOrientation.LANDSCAPE:
            return (
                DeviceOrientation.LANDSCAPE_LEFT
                if upright
                else DeviceOrientation.LANDSCAPE_RIGHT
            )
        return DeviceOrientation.PORTRAIT_UP

    def get_device_default_orientation(self) -> ConfigurationOrientation:
        rotation = self._display.get_rotation()
        orientation = self._display.get_configuration_orientation()
        natural = rotation in (DisplayRotation.ROTATION_0, DisplayRotation.ROTATION_180)
        if (natural and orientation == ConfigurationOrientation.LANDSCAPE) or (
            not natural and orientation == ConfigurationOrientation.PORTRAIT
        ):
            return ConfigurationOrientation.LANDSCAPE
        return ConfigurationOrientation.PORTRAIT

    def calculate_sensor_orientation(self, angle: int) -> DeviceOrientation:
        """Snap an accelerometer angle to the nearest cardinal orientation."""
        angle += ORIENTATION_TOLERANCE
        if self.get_device_default_orientation() == ConfigurationOrientation.LANDSCAPE:
            angle += 90
        angle %= 360
        return _SNAP_ORDER[angle // 90]
