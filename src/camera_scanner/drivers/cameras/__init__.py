"""Camera driver protocols and implementations.

The capture core talks to cameras only through the protocols below. They
follow the camera2 model: a driver opens devices asynchronously, a device
creates capture sessions over a set of output surfaces, and sessions run
repeating or one-shot requests whose results arrive on capture callbacks.
Callbacks are delivered through a ``Handler`` (normally the camera
worker), or inline on the driver's own thread when the handler is None.

Implementations:
    DigitalTwinCameraDriver: In-process simulation with configurable AE/AF
        behaviour, used by tests, the CLI and hosts without hardware.

Example:
    driver = DigitalTwinCameraDriver()
    for name in driver.get_camera_names():
        chars = driver.get_characteristics(name)
        print(name, chars.lens_facing.value, chars.sensor_orientation)
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol, runtime_checkable

from camera_scanner.drivers.cameras.twin import (
    DEFAULT_CAMERAS,
    DigitalTwinCameraDevice,
    DigitalTwinCameraDriver,
    DigitalTwinConfig,
    ImageSource,
    TwinCameraInfo,
    TwinImageReader,
    TwinMediaRecorder,
    TwinPreviewTexture,
)
from camera_scanner.drivers.cameras.types import (
    CameraCharacteristics,
    CaptureRequest,
    CaptureRequestBuilder,
    CaptureResult,
    Image,
    ImageFormat,
    RecorderSettings,
    RecordingProfile,
    RequestTemplate,
    Surface,
)


@runtime_checkable
class Handler(Protocol):  # pragma: no cover
    """Serial executor callbacks are posted to."""

    def post(self, task: Callable[[], None]) -> bool:
        """Queue a task; False when the handler no longer accepts work."""
        ...


@runtime_checkable
class CaptureCallback(Protocol):  # pragma: no cover
    """Receives per-frame results of submitted requests."""

    def on_capture_progressed(
        self, session: CaptureSession, request: CaptureRequest, result: CaptureResult
    ) -> None:
        """Partial result for an in-flight frame."""
        ...

    def on_capture_completed(
        self, session: CaptureSession, request: CaptureRequest, result: CaptureResult
    ) -> None:
        """Final result for a frame."""
        ...


@runtime_checkable
class SessionStateCallback(Protocol):  # pragma: no cover
    """Receives the outcome of create_capture_session()."""

    def on_configured(self, session: CaptureSession) -> None:
        """The session is ready to accept requests."""
        ...

    def on_configure_failed(self, session: CaptureSession) -> None:
        """The surfaces could not be configured."""
        ...


@runtime_checkable
class DeviceStateCallback(Protocol):  # pragma: no cover
    """Receives device lifecycle events from open_camera()."""

    def on_opened(self, device: CameraDevice) -> None:
        """The device is open and usable."""
        ...

    def on_closed(self, device: CameraDevice) -> None:
        """The device finished closing."""
        ...

    def on_disconnected(self, device: CameraDevice) -> None:
        """The device is no longer available."""
        ...

    def on_error(self, device: CameraDevice, error_code: int) -> None:
        """The device hit a fatal error (see CameraErrorCode)."""
        ...


@runtime_checkable
class CaptureSession(Protocol):  # pragma: no cover
    """Configured set of output surfaces on an open device."""

    @property
    def device(self) -> CameraDevice:
        """Device owning this session."""
        ...

    def set_repeating_request(
        self,
        request: CaptureRequest,
        callback: CaptureCallback | None,
        handler: Handler | None,
    ) -> int:
        """Replace the repeating request; returns a sequence id."""
        ...

    def capture(
        self,
        request: CaptureRequest,
        callback: CaptureCallback | None,
        handler: Handler | None,
    ) -> int:
        """Submit a one-shot request; returns a sequence id."""
        ...

    def stop_repeating(self) -> None:
        """Stop the repeating request."""
        ...

    def abort_captures(self) -> None:
        """Discard pending and in-flight captures."""
        ...

    def close(self) -> None:
        """Close the session."""
        ...


@runtime_checkable
class CameraDevice(Protocol):  # pragma: no cover
    """Open camera device."""

    @property
    def id(self) -> str:
        """Camera name the device was opened with."""
        ...

    def create_capture_request(
        self, template: RequestTemplate
    ) -> CaptureRequestBuilder:
        """New request builder pre-filled with template defaults."""
        ...

    def create_capture_session(
        self,
        outputs: list[Surface],
        callback: SessionStateCallback,
        handler: Handler | None,
    ) -> None:
        """Configure a new session; replaces any current session."""
        ...

    def close(self) -> None:
        """Close the device; on_closed follows."""
        ...


@runtime_checkable
class ImageReader(Protocol):  # pragma: no cover
    """Bounded queue of images produced for one surface."""

    @property
    def surface(self) -> Surface:
        """Surface to add to sessions and requests."""
        ...

    @property
    def width(self) -> int:
        """Image width in pixels."""
        ...

    @property
    def height(self) -> int:
        """Image height in pixels."""
        ...

    @property
    def format(self) -> ImageFormat:
        """Image format produced."""
        ...

    def acquire_next_image(self) -> Image | None:
        """Oldest queued image, or None when empty."""
        ...

    def acquire_latest_image(self) -> Image | None:
        """Newest queued image, dropping older ones; None when empty."""
        ...

    def set_on_image_available_listener(
        self,
        listener: Callable[[ImageReader], None] | None,
        handler: Handler | None,
    ) -> None:
        """Install or clear the image-available listener."""
        ...

    def close(self) -> None:
        """Release the reader and its queued images."""
        ...


@runtime_checkable
class MediaRecorder(Protocol):  # pragma: no cover
    """Video encoder fed from a capture surface."""

    @property
    def surface(self) -> Surface:
        """Input surface; valid after prepare()."""
        ...

    def configure(self, settings: RecorderSettings) -> None:
        """Apply recorder settings."""
        ...

    def prepare(self) -> None:
        """Allocate the encoder; raises OSError on failure."""
        ...

    def start(self) -> None:
        """Start recording."""
        ...

    def stop(self) -> None:
        """Stop recording and finalize the output file."""
        ...

    def pause(self) -> None:
        """Pause recording."""
        ...

    def resume(self) -> None:
        """Resume a paused recording."""
        ...

    def reset(self) -> None:
        """Return to the idle state."""
        ...

    def release(self) -> None:
        """Release encoder resources."""
        ...


@runtime_checkable
class PreviewTexture(Protocol):  # pragma: no cover
    """Host texture the preview is rendered into."""

    @property
    def id(self) -> int:
        """Texture id reported to the host as ``cameraId``."""
        ...

    @property
    def surface(self) -> Surface:
        """Surface wrapping the texture."""
        ...

    def set_default_buffer_size(self, width: int, height: int) -> None:
        """Size of buffers the camera renders into."""
        ...

    def release(self) -> None:
        """Release the texture."""
        ...


@runtime_checkable
class CameraDriver(Protocol):  # pragma: no cover
    """Entry point of a camera backend."""

    def get_camera_names(self) -> list[str]:
        """Names of all cameras, in platform order."""
        ...

    def get_characteristics(self, name: str) -> CameraCharacteristics:
        """Static capabilities of a camera."""
        ...

    def get_recording_profile(
        self, camera_id: int, quality: str
    ) -> RecordingProfile | None:
        """Camcorder profile for a quality tier, None when unsupported."""
        ...

    def open_camera(
        self,
        name: str,
        callback: DeviceStateCallback,
        handler: Handler | None,
    ) -> None:
        """Open a camera asynchronously; raises CameraAccessError."""
        ...

    def create_image_reader(
        self, width: int, height: int, format: ImageFormat, max_images: int
    ) -> ImageReader:
        """New image reader."""
        ...

    def create_media_recorder(self) -> MediaRecorder:
        """New media recorder."""
        ...

    def create_preview_texture(self) -> PreviewTexture:
        """New preview texture registered with the host."""
        ...


__all__ = [
    # Protocols
    "CameraDevice",
    "CameraDriver",
    "CaptureCallback",
    "CaptureSession",
    "DeviceStateCallback",
    "Handler",
    "ImageReader",
    "MediaRecorder",
    "PreviewTexture",
    "SessionStateCallback",
    # Digital twin implementation
    "DEFAULT_CAMERAS",
    "DigitalTwinCameraDevice",
    "DigitalTwinCameraDriver",
    "DigitalTwinConfig",
    "ImageSource",
    "TwinCameraInfo",
    "TwinImageReader",
    "TwinMediaRecorder",
    "TwinPreviewTexture",
]
