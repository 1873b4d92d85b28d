"""Digital twin display and motion sensors.

Events are injected by the caller, which makes orientation behaviour
fully scriptable in tests and in the CLI:

    sensors = TwinMotionSensors()
    display = TwinDisplay()
    manager = DeviceOrientationManager(messenger, display, sensors)
    manager.start()
    sensors.emit_orientation(92)
    sensors.emit_rotation_vector(tilt_rotation_vector(pitch_deg=-80))
"""

from __future__ import annotations

import math
import threading
from collections.abc import Callable, Sequence

from camera_scanner.drivers.sensors.types import (
    ConfigurationOrientation,
    DisplayRotation,
    MotionListener,
)
from camera_scanner.observability import get_logger

logger = get_logger(__name__)

__all__ = [
    "TwinDisplay",
    "TwinMotionSensors",
    "tilt_rotation_vector",
]


def tilt_rotation_vector(pitch_deg: float = 0.0, roll_deg: float = 0.0) -> list[float]:
    """Rotation vector (x, y, z, w) for a device pitched then rolled.

    Pitch rotates about the device x axis, roll about the y axis. A device
    held upright has pitch -90; lying flat face up has pitch 0.
    """
    hp = math.radians(pitch_deg) / 2
    hr = math.radians(roll_deg) / 2
    # q = q_pitch(x) * q_roll(y)
    qx = math.sin(hp) * math.cos(hr)
    qy = math.cos(hp) * math.sin(hr)
    qz = math.sin(hp) * math.sin(hr)
    qw = math.cos(hp) * math.cos(hr)
    return [qx, qy, qz, qw]


class TwinMotionSensors:
    """Scriptable motion sensors.

    Args:
        rotation_vector: Whether a rotation vector sensor exists.
        orientation: Whether accelerometer orientation is available.
    """

    def __init__(self, rotation_vector: bool = True, orientation: bool = True) -> None:
        self._rotation_vector = rotation_vector
        self._orientation = orientation
        self._listener: MotionListener | None = None
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return (
            f"TwinMotionSensors(rotation_vector={self._rotation_vector}, "
            f"orientation={self._orientation}, active={self.active})"
        )

    @property
    def active(self) -> bool:
        return self._listener is not None

    def has_rotation_vector_sensor(self) -> bool:
        return self._rotation_vector

    def can_detect_orientation(self) -> bool:
        return self._orientation

    def start(self, listener: MotionListener) -> None:
        with self._lock:
            self._listener = listener
        logger.debug("Twin motion sensors started")

    def stop(self) -> None:
        with self._lock:
            self._listener = None

    def emit_orientation(self, angle: int) -> None:
        """Deliver an accelerometer orientation event."""
        with self._lock:
            listener = self._listener if self._orientation else None
        if listener is not None:
            listener.on_orientation_changed(angle)

    def emit_rotation_vector(self, values: Sequence[float]) -> None:
        """Deliver a rotation vector sample."""
        with self._lock:
            listener = self._listener if self._rotation_vector else None
        if listener is not None:
            listener.on_sensor_changed(values)


class TwinDisplay:
    """Scriptable display state."""

    def __init__(
        self,
        rotation: DisplayRotation = DisplayRotation.ROTATION_0,
        orientation: ConfigurationOrientation = ConfigurationOrientation.PORTRAIT,
    ) -> None:
        self._rotation = rotation
        self._orientation = orientation
        self._listeners: list[Callable[[], None]] = []
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return (
            f"TwinDisplay(rotation={self._rotation.name}, "
            f"orientation={self._orientation.value})"
        )

    def get_rotation(self) -> DisplayRotation:
        return self._rotation

    def get_configuration_orientation(self) -> ConfigurationOrientation:
        return self._orientation

    def add_configuration_listener(self, listener: Callable[[], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_configuration_listener(self, listener: Callable[[], None]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def rotate(
        self,
        rotation: DisplayRotation,
        orientation: ConfigurationOrientation | None = None,
    ) -> None:
        """Change the display state and notify configuration listeners."""
        with self._lock:
            self._rotation = rotation
            if orientation is not None:
                self._orientation = orientation
            listeners = list(self._listeners)
        for listener in listeners:
            listener()
