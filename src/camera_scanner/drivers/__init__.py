"""Camera and sensor drivers.

Hosts with real hardware implement the protocols in ``drivers.cameras``
and ``drivers.sensors``; everything else runs on the digital twins.

Use drivers.config to build twin drivers:
    from camera_scanner.drivers import config
    driver = config.get_factory().create_camera_driver()
"""

from camera_scanner.drivers import cameras, config, sensors
from camera_scanner.drivers.config import (
    DriverFactory,
    PluginConfig,
    configure,
    get_factory,
    reset_factory,
)

__all__ = [
    # Submodules
    "cameras",
    "config",
    "sensors",
    # Configuration
    "DriverFactory",
    "PluginConfig",
    "configure",
    "get_factory",
    "reset_factory",
]
