"""Utility modules for camera-scanner.

Exports are resolved lazily via __getattr__ so importing the package
does not pull in numpy or OpenCV until a transform is actually used.

Available exports (lazy-loaded):
    PixelBuffer, PixelFormat: Pixel storage for the pipelines
    rotate, crop, downscale2x, remove_strides: Geometric transforms
    jpeg_to_rgba, encode_jpeg: JPEG conversion
    ImageCodec, CV2ImageCodec: Codec protocol and OpenCV implementation

Example:
    from camera_scanner.utils import PixelBuffer, rotate
"""

__all__ = [
    "CV2ImageCodec",
    "ImageCodec",
    "PixelBuffer",
    "PixelFormat",
    "crop",
    "downscale2x",
    "encode_jpeg",
    "jpeg_to_rgba",
    "remove_strides",
    "rotate",
]


def __getattr__(name: str) -> object:
    """Import a public export from utils.image on first access.

    The value is cached in module globals afterwards.

    Raises:
        AttributeError: If name is not a public export.
    """
    if name in __all__:
        from camera_scanner.utils import image

        value = getattr(image, name)
        globals()[name] = value
        return value
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
