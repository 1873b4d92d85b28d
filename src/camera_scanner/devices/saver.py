"""Still image save job: rotate, scale, encode and write a captured image.

Runs on the camera worker once the still image reader has an image. The
image is always closed, whatever the outcome.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from camera_scanner.devices.errors import ErrorCode
from camera_scanner.observability import TAKE_PICTURE, get_logger
from camera_scanner.utils.image import (
    bgr_to_buffer,
    encode_jpeg,
    image_to_bgr,
    rotate,
    scale_to_long_side,
)

if TYPE_CHECKING:
    from camera_scanner.devices.orientation import DeviceTilts, TakePictureMode
    from camera_scanner.drivers.cameras.types import Image
    from camera_scanner.observability import PipelineStats
    from camera_scanner.utils.image import ImageCodec

logger = get_logger(__name__)


@dataclass(frozen=True)
class TakePictureResult:
    """Saved still plus the tilt state at capture time."""

    result_path: str
    horizontal_tilt: float
    vertical_tilt: float
    is_horizontal_tilt_available: bool
    is_vertical_tilt_available: bool
    mode: TakePictureMode
    width: int
    height: int

    def to_map(self) -> dict[str, Any]:
        return {
            "resultPath": self.result_path,
            "isHorizontalTiltAvailable": self.is_horizontal_tilt_available,
            "isVerticalTiltAvailable": self.is_vertical_tilt_available,
            "horizontalTilt": self.horizontal_tilt,
            "verticalTilt": self.vertical_tilt,
            "mode": str(self.mode),
            "width": self.width,
            "height": self.height,
        }


@runtime_checkable
class ImageSaverCallback(Protocol):  # pragma: no cover
    """Receives the outcome of a save job."""

    def on_complete(self, result: TakePictureResult) -> None:
        """The file was written."""
        ...

    def on_error(self, code: str, message: str) -> None:
        """Saving failed with a host error code."""
        ...


def write_atomic(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` through a temporary file in the same directory."""
    tmp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            "wb", dir=str(path.parent), prefix=".tmp-", delete=False
        ) as tmp:
            tmp_path = Path(tmp.name)
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_path, path)
        tmp_path = None
    finally:
        if tmp_path is not None:
            with contextlib.suppress(FileNotFoundError):
                tmp_path.unlink()


class ImageSaver:
    """One save job; call ``run()`` on the camera worker.

    Args:
        image: Still image from the picture reader (JPEG or YUV_420_888).
        path: Destination file, usually a ``CAP*.jpg`` in the cache dir.
        long_side_size: Target longer dimension; images are never enlarged.
        tilts: Tilt snapshot stored with the result.
        image_quality: JPEG quality in [0, 100].
        rotation: Clockwise rotation in degrees.
        callback: Receives the result or the error.
        codec: JPEG codec; OpenCV by default.
        stats: Optional statistics sink.
    """

    def __init__(
        self,
        image: Image,
        path: Path,
        long_side_size: int,
        tilts: DeviceTilts,
        image_quality: int,
        rotation: int,
        callback: ImageSaverCallback,
        codec: ImageCodec | None = None,
        stats: PipelineStats | None = None,
    ) -> None:
        self.image = image
        self.path = Path(path)
        self.long_side_size = long_side_size
        self.tilts = tilts
        self.image_quality = image_quality
        self.rotation = rotation
        self._callback = callback
        self._codec = codec
        self._stats = stats

    def __repr__(self) -> str:
        return f"ImageSaver(path={str(self.path)!r}, rotation={self.rotation})"

    def run(self) -> None:
        start = time.perf_counter()
        try:
            buffer = bgr_to_buffer(image_to_bgr(self.image, self._codec))
            buffer = rotate(buffer, self.rotation)
            buffer = scale_to_long_side(buffer, self.long_side_size, self._codec)
            data = encode_jpeg(buffer, self.image_quality, self._codec)
            write_atomic(self.path, data)
        except OSError as e:
            self._fail(start, ErrorCode.IO_ERROR, e)
            return
        except Exception as e:
            self._fail(start, ErrorCode.UNKNOWN_ERROR, e)
            return
        finally:
            self.image.close()

        duration_ms = (time.perf_counter() - start) * 1000
        if self._stats is not None:
            self._stats.record(TAKE_PICTURE, duration_ms, success=True)
        logger.info(
            "Picture saved",
            path=str(self.path),
            width=buffer.width,
            height=buffer.height,
            rotation=self.rotation,
            bytes=len(data),
            duration_ms=round(duration_ms, 1),
        )
        tilts = self.tilts
        self._callback.on_complete(
            TakePictureResult(
                result_path=str(self.path.absolute()),
                horizontal_tilt=tilts.horizontal_tilt,
                vertical_tilt=tilts.vertical_tilt,
                is_horizontal_tilt_available=tilts.is_horizontal_tilt_available,
                is_vertical_tilt_available=tilts.is_vertical_tilt_available,
                mode=tilts.mode,
                width=buffer.width,
                height=buffer.height,
            )
        )

    def _fail(self, start: float, code: ErrorCode, error: Exception) -> None:
        duration_ms = (time.perf_counter() - start) * 1000
        if self._stats is not None:
            self._stats.record(
                TAKE_PICTURE, duration_ms, success=False, error_type=type(error).__name__
            )
        logger.error(
            "Failed saving image",
            path=str(self.path),
            code=str(code),
            error=str(error),
        )
        self._callback.on_error(str(code), f"Failed saving image: {error!r}")
