"""Exceptions and host-visible error codes.

Operations raise the exceptions below internally. At the host boundary
each failure is reported as an error code string from ``ErrorCode`` plus
a human-readable message.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    """Error code strings reported to the host.

    ``CAMERA_ACCESS`` is what the method dispatcher reports for a
    CameraAccessError escaping an operation; ``CAPTURE_ACCESS`` is what
    the still capture pipeline reports when building or submitting a
    request fails.
    """

    CAMERA_NOT_FOUND = "cameraNotFound"
    CAPTURE_ALREADY_ACTIVE = "captureAlreadyActive"
    CANNOT_CREATE_FILE = "cannotCreateFile"
    VIDEO_RECORDING_FAILED = "videoRecordingFailed"
    SET_FLASH_MODE_FAILED = "setFlashModeFailed"
    SET_EXPOSURE_MODE_FAILED = "setExposureModeFailed"
    SET_EXPOSURE_POINT_FAILED = "setExposurePointFailed"
    SET_EXPOSURE_OFFSET_FAILED = "setExposureOffsetFailed"
    SET_FOCUS_MODE_FAILED = "setFocusModeFailed"
    SET_FOCUS_POINT_FAILED = "setFocusPointFailed"
    SET_ZOOM_LEVEL_FAILED = "setZoomLevelFailed"
    ZOOM_ERROR = "ZOOM_ERROR"
    CAMERA_ACCESS = "CameraAccess"
    CAPTURE_ACCESS = "cameraAccess"
    IO_ERROR = "IOError"
    UNKNOWN_ERROR = "Unknown Error"
    CAMERA_DISPOSE_ERROR = "CameraDisposeError"


class CameraError(Exception):
    """Base exception for camera operations."""

    pass


class CameraAccessError(CameraError):
    """Raised by a driver when a device operation fails transiently.

    The device stays open; the caller may retry.
    """

    pass


class CameraNotFoundError(CameraError):
    """Raised when an operation needs a camera that does not exist."""

    pass


class CaptureAlreadyActiveError(CameraError):
    """Raised when a still capture is requested while one is running."""

    pass


class InvalidArgumentError(CameraError, ValueError):
    """Raised for out-of-range or unknown argument values."""

    pass


class FrameDecodeError(CameraError):
    """Raised when an image buffer cannot be decoded."""

    pass


class NoRecordingProfileError(CameraError, ValueError):
    """Raised when no camcorder profile matches a resolution preset."""

    pass


class MethodCallError(Exception):
    """Error outcome of a host method call.

    Attributes:
        code: Host-visible error code.
        message: Human-readable description.
        details: Optional extra payload.
    """

    def __init__(self, code: str, message: str | None, details: object = None):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.details = details

    def __repr__(self) -> str:
        return f"MethodCallError(code={self.code!r}, message={self.message!r})"


class NotImplementedMethodError(MethodCallError):
    """Outcome of a call to a method name the dispatcher does not know."""

    def __init__(self, method: str):
        super().__init__("notImplemented", f"Method {method} is not implemented")
        self.method = method
