"""Display and motion sensor drivers feeding the orientation engine.

- MotionSensors / DisplayInfo: protocols a host platform implements
- TwinMotionSensors / TwinDisplay: scriptable simulations

Example:
    from camera_scanner.drivers.sensors import TwinDisplay, TwinMotionSensors

    sensors = TwinMotionSensors()
    display = TwinDisplay()
"""

from camera_scanner.drivers.sensors.twin import (
    TwinDisplay,
    TwinMotionSensors,
    tilt_rotation_vector,
)
from camera_scanner.drivers.sensors.types import (
    ORIENTATION_UNKNOWN,
    ConfigurationOrientation,
    DisplayInfo,
    DisplayRotation,
    MotionListener,
    MotionSensors,
)

__all__ = [
    # Constants and enums
    "ORIENTATION_UNKNOWN",
    "ConfigurationOrientation",
    "DisplayRotation",
    # Protocols
    "DisplayInfo",
    "MotionListener",
    "MotionSensors",
    # Digital twins
    "TwinDisplay",
    "TwinMotionSensors",
    "tilt_rotation_vector",
]
