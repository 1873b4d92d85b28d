"""Capture core: camera coordinator, pipelines and supporting pieces.

Exports resolve lazily via __getattr__ so drivers can import
``camera_scanner.devices.errors`` without loading the coordinator.

Example:
    from camera_scanner.devices import Camera, CameraConfig, EventMessenger
"""

from importlib import import_module

_EXPORTS = {
    # Coordinator
    "Camera": "camera_scanner.devices.camera",
    "CameraConfig": "camera_scanner.devices.camera",
    # Pipelines
    "BarcodeCropSpec": "camera_scanner.devices.barcode",
    "BarcodePipeline": "camera_scanner.devices.barcode",
    "CameraBarcode": "camera_scanner.devices.barcode",
    "ZXingBarcodeDecoder": "camera_scanner.devices.barcode",
    "CaptureState": "camera_scanner.devices.capture",
    "CaptureTimeouts": "camera_scanner.devices.capture",
    "ImageSaver": "camera_scanner.devices.saver",
    "TakePictureResult": "camera_scanner.devices.saver",
    # Orientation and resolution
    "DeviceOrientation": "camera_scanner.devices.orientation",
    "DeviceOrientationManager": "camera_scanner.devices.orientation",
    "DeviceTilts": "camera_scanner.devices.orientation",
    "ResolutionPreset": "camera_scanner.devices.resolution",
    # Messaging and workers
    "EventMessenger": "camera_scanner.devices.messenger",
    "MainLoop": "camera_scanner.devices.messenger",
    "Worker": "camera_scanner.devices.workers",
    # Errors
    "CameraError": "camera_scanner.devices.errors",
    "ErrorCode": "camera_scanner.devices.errors",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> object:
    """Import a public export from its module on first access.

    Raises:
        AttributeError: If name is not a public export.
    """
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    value = getattr(import_module(module_name), name)
    globals()[name] = value
    return value
