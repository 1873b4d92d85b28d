"""Display and motion sensor protocols.

The orientation engine needs three inputs from the platform:

- Accelerometer-derived orientation events (degrees, or
  ``ORIENTATION_UNKNOWN`` when the device lies flat)
- Rotation vector samples (x, y, z[, w] quaternion components)
- The display's rotation and configured orientation, plus a notification
  whenever the UI configuration changes

Implementations deliver events to a ``MotionListener`` and a
configuration listener callback.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from enum import Enum, IntEnum
from typing import Protocol, runtime_checkable

#: Orientation event value when the device is flat or the angle is unknown.
ORIENTATION_UNKNOWN = -1


class DisplayRotation(IntEnum):
    """Display rotation relative to the natural orientation."""

    ROTATION_0 = 0
    ROTATION_90 = 1
    ROTATION_180 = 2
    ROTATION_270 = 3


class ConfigurationOrientation(Enum):
    """Coarse UI orientation of the current configuration."""

    UNDEFINED = "undefined"
    PORTRAIT = "portrait"
    LANDSCAPE = "landscape"


@runtime_checkable
class MotionListener(Protocol):  # pragma: no cover
    """Receives sensor events."""

    def on_orientation_changed(self, angle: int) -> None:
        """Accelerometer orientation in degrees, or ORIENTATION_UNKNOWN."""
        ...

    def on_sensor_changed(self, values: Sequence[float]) -> None:
        """Rotation vector sample."""
        ...


@runtime_checkable
class MotionSensors(Protocol):  # pragma: no cover
    """Accelerometer orientation and rotation vector sources."""

    def has_rotation_vector_sensor(self) -> bool:
        """True when a (game) rotation vector sensor exists."""
        ...

    def can_detect_orientation(self) -> bool:
        """True when accelerometer orientation events are available."""
        ...

    def start(self, listener: MotionListener) -> None:
        """Begin delivering events to ``listener``."""
        ...

    def stop(self) -> None:
        """Stop delivering events."""
        ...


@runtime_checkable
class DisplayInfo(Protocol):  # pragma: no cover
    """Current display state."""

    def get_rotation(self) -> DisplayRotation:
        """Display rotation."""
        ...

    def get_configuration_orientation(self) -> ConfigurationOrientation:
        """Configured UI orientation."""
        ...

    def add_configuration_listener(self, listener: Callable[[], None]) -> None:
        """Call ``listener`` whenever the UI configuration changes."""
        ...

    def remove_configuration_listener(self, listener: Callable[[], None]) -> None:
        """Stop calling ``listener``."""
        ...
