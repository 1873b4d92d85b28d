"""Pytest configuration and fixtures for camera-scanner tests.

Fixtures build the digital twin stack: driver, display, motion sensors,
an event listener and a method handler publishing results inline.
Cameras created through the handler are disposed after each test so no
worker threads outlive it.
"""

from __future__ import annotations

import pytest

from camera_scanner.devices.messenger import (
    ChannelRegistry,
    EventMessenger,
    ImmediateExecutor,
    RecordingEventListener,
)
from camera_scanner.drivers.cameras import DigitalTwinCameraDriver, DigitalTwinConfig
from camera_scanner.drivers.config import PluginConfig, reset_factory
from camera_scanner.drivers.sensors import TwinDisplay, TwinMotionSensors
from camera_scanner.tools.methods import CameraMethodHandler
from tests.helpers import FakeClock, FixedDecoder


@pytest.fixture
def twin_config() -> DigitalTwinConfig:
    """Twin settings; frames are only produced by pump()."""
    return DigitalTwinConfig()


@pytest.fixture
def driver(twin_config: DigitalTwinConfig) -> DigitalTwinCameraDriver:
    return DigitalTwinCameraDriver(twin_config)


@pytest.fixture
def listener() -> RecordingEventListener:
    return RecordingEventListener()


@pytest.fixture
def messenger(listener: RecordingEventListener) -> EventMessenger:
    return EventMessenger(ImmediateExecutor(), listener)


@pytest.fixture
def display() -> TwinDisplay:
    return TwinDisplay()


@pytest.fixture
def sensors() -> TwinMotionSensors:
    return TwinMotionSensors()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def decoder() -> FixedDecoder:
    return FixedDecoder()


@pytest.fixture
def channels() -> ChannelRegistry:
    return ChannelRegistry()


@pytest.fixture
def plugin_config(tmp_path) -> PluginConfig:
    return PluginConfig(cache_dir=tmp_path / "cache")


@pytest.fixture
def handler(
    driver,
    channels,
    listener,
    plugin_config,
    display,
    sensors,
    decoder,
    clock,
):
    """Method handler over the twin stack; disposes its camera afterwards."""
    method_handler = CameraMethodHandler(
        driver,
        channels,
        listener,
        plugin_config,
        display=display,
        sensors=sensors,
        decoder_factory=lambda: decoder,
        clock=clock,
    )
    yield method_handler
    if method_handler.camera is not None:
        method_handler.camera.dispose()


@pytest.fixture(autouse=True)
def _reset_driver_factory():
    yield
    reset_factory()
