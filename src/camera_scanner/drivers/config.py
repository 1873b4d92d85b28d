"""Plugin configuration and driver factory.

The factory builds digital twin drivers for cameras, motion sensors and
the display. A host platform with real hardware passes its own driver
objects to ``CameraMethodHandler`` instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from camera_scanner.drivers.cameras import (
    CameraDriver,
    DigitalTwinCameraDriver,
    DigitalTwinConfig,
)
from camera_scanner.drivers.sensors import TwinDisplay, TwinMotionSensors

# =============================================================================
# Constants
# =============================================================================

DEFAULT_LONG_SIDE_SIZE = 1600
DEFAULT_IMAGE_QUALITY = 100
DEFAULT_PRECAPTURE_TIMEOUT_MS = 3000
DEFAULT_PRE_CAPTURE_FOCUSING_TIMEOUT_MS = 3000


def _default_cache_dir() -> Path:
    """Default directory for captured stills and recordings.

    Business context: Stills and recordings are handed to the host by path
    and the host moves or uploads them; the cache directory only has to
    survive until then, so a per-user location works without setup.

    Returns:
        Path to ~/.camera-scanner/cache (created on first capture).
    """
    return Path.home() / ".camera-scanner" / "cache"


@dataclass
class PluginConfig:
    """Settings shared by every camera the plugin creates.

    Attributes:
        cache_dir: Directory for CAP*.jpg and REC*.mp4 files.
        default_long_side_size: longSideSize used when ``create`` omits it.
        default_image_quality: imageQuality used when ``create`` omits it.
        precapture_timeout_ms: Budget for AE precapture metering.
        pre_capture_focusing_timeout_ms: Budget for AE/AF convergence.
        forward_logs_to_host: Forward package log records as device log
            events.
        twin: Behaviour of the simulated camera.
    """

    cache_dir: Path = field(default_factory=_default_cache_dir)
    default_long_side_size: int = DEFAULT_LONG_SIDE_SIZE
    default_image_quality: int = DEFAULT_IMAGE_QUALITY
    precapture_timeout_ms: int = DEFAULT_PRECAPTURE_TIMEOUT_MS
    pre_capture_focusing_timeout_ms: int = DEFAULT_PRE_CAPTURE_FOCUSING_TIMEOUT_MS
    forward_logs_to_host: bool = False
    twin: DigitalTwinConfig = field(default_factory=DigitalTwinConfig)


class DriverFactory:
    """Creates the simulated drivers described by a PluginConfig.

    Example:
        factory = DriverFactory(PluginConfig(cache_dir=Path("/tmp/cam")))
        driver = factory.create_camera_driver()
        print(driver.get_camera_names())
    """

    def __init__(self, config: PluginConfig | None = None):
        self.config = config or PluginConfig()

    def __repr__(self) -> str:
        return f"DriverFactory(cache_dir={str(self.config.cache_dir)!r})"

    def create_camera_driver(self) -> CameraDriver:
        return DigitalTwinCameraDriver(self.config.twin)

    def create_motion_sensors(self) -> TwinMotionSensors:
        return TwinMotionSensors()

    def create_display(self) -> TwinDisplay:
        return TwinDisplay()


# =============================================================================
# Global Singleton
# =============================================================================

# Not thread-safe; configure once at startup.
_factory: DriverFactory | None = None


def get_factory() -> DriverFactory:
    """Global factory, created with default settings on first access."""
    global _factory
    if _factory is None:
        _factory = DriverFactory()
    return _factory


def configure(config: PluginConfig) -> None:
    """Replace the global factory with one using ``config``."""
    global _factory
    _factory = DriverFactory(config)


def reset_factory() -> None:
    """Drop the global factory; the next get_factory() starts fresh."""
    global _factory
    _factory = None
