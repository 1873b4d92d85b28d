"""1D barcode recognition over preview frames.

Frames enter through ``FrameGate``, which admits one frame at a time; the
rest are dropped while a decode is in flight. An admitted frame is
rotated upright, cropped to the scan window, then decoded at up to four
scales (1, 1/2, 1/4, 1/8) with a min-pool downscale between attempts.

Example:
    pipeline = BarcodePipeline(
        ZXingBarcodeDecoder(),
        BarcodeCropSpec(left=10, right=10),
        rotation=lambda: 90,
        emit=print,
    )
    pipeline.process(buffer)
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import numpy as np

from camera_scanner.devices.orientation import capture_rotation
from camera_scanner.observability import BARCODE_DECODE, get_logger
from camera_scanner.utils.image import crop, downscale2x, luminance, rotate

if TYPE_CHECKING:
    from camera_scanner.devices.orientation import DeviceTilts
    from camera_scanner.observability import PipelineStats
    from camera_scanner.utils.image import PixelBuffer

logger = get_logger(__name__)

#: Decode attempts per frame; each retry halves the frame.
MAX_DECODE_STEPS = 4

#: Host names of the supported symbologies.
SUPPORTED_FORMATS = ("EAN_8", "EAN_13", "RSS_EXPANDED", "RSS_14")

# zxing-cpp format name -> host format name
_ZXING_FORMAT_NAMES = {
    "EAN8": "EAN_8",
    "EAN13": "EAN_13",
    "DataBar": "RSS_14",
    "DataBarExpanded": "RSS_EXPANDED",
}


@dataclass(frozen=True)
class BarcodeCropSpec:
    """Scan window as percentage margins of the upright frame.

    An axis is cropped only when both of its margins are positive and
    their sum stays below 100.
    """

    left: int = 0
    right: int = 0
    top: int = 0
    bottom: int = 0

    def apply(self, buffer: PixelBuffer) -> PixelBuffer:
        return crop(buffer, self.left, self.right, self.top, self.bottom)


@dataclass(frozen=True)
class CameraBarcode:
    """Barcode stream event: a decoded code or a pipeline error."""

    text: str | None = None
    format: str | None = None
    error_description: str | None = None

    def to_map(self) -> dict[str, Any]:
        return {
            "text": self.text if self.text is not None else "",
            "format": self.format if self.format is not None else "",
            "errorDescription": self.error_description,
        }


@dataclass(frozen=True)
class DecodedBarcode:
    text: str
    format: str


@runtime_checkable
class BarcodeDecoder(Protocol):  # pragma: no cover
    """Decodes one 1D barcode from a buffer."""

    def decode(self, buffer: PixelBuffer) -> DecodedBarcode | None:
        """Return the decoded barcode, or None when nothing was found."""
        ...


class ZXingBarcodeDecoder:
    """zxing-cpp reader restricted to EAN-8, EAN-13 and DataBar.

    Built once per camera open; the format set and binarizer are fixed.
    zxingcpp is imported on construction.
    """

    def __init__(self) -> None:
        import zxingcpp

        self._zxing = zxingcpp
        fmt = zxingcpp.BarcodeFormat
        self._formats = fmt.EAN8 | fmt.EAN13 | fmt.DataBar | fmt.DataBarExpanded
        self._binarizer = zxingcpp.Binarizer.GlobalHistogram

    def __repr__(self) -> str:
        return f"ZXingBarcodeDecoder(formats={SUPPORTED_FORMATS})"

    def decode(self, buffer: PixelBuffer) -> DecodedBarcode | None:
        if buffer.width == 0 or buffer.height == 0:
            return None
        gray = np.ascontiguousarray(luminance(buffer))
        results = self._zxing.read_barcodes(
            gray,
            formats=self._formats,
            binarizer=self._binarizer,
            try_rotate=False,
            try_downscale=False,
        )
        if not results:
            return None
        result = results[0]
        name = str(result.format).replace("BarcodeFormat.", "")
        return DecodedBarcode(result.text, _ZXING_FORMAT_NAMES.get(name, name))


def compute_target_rotation(tilts: DeviceTilts, ui_angle: int, sensor_angle: int) -> int:
    """Rotation for stream frames, normalised to {0, 90, 180, 270}."""
    return capture_rotation(
        tilts.target_image_rotation, tilts.locked_capture_angle, ui_angle, sensor_angle
    )


class FrameGate:
    """Admits at most one frame into the barcode pipeline at a time.

    ``open()`` starts admitting, ``try_admit()`` takes the single slot,
    ``release()`` returns it after the frame is processed and ``close()``
    stops admission until the next ``open()``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._open = False
        self._requested = False
        self.admitted = 0
        self.dropped = 0

    def __repr__(self) -> str:
        return (
            f"FrameGate(open={self._open}, requested={self._requested}, "
            f"admitted={self.admitted}, dropped={self.dropped})"
        )

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def next_image_is_requested(self) -> bool:
        return self._requested

    def open(self) -> None:
        with self._lock:
            self._open = True
            self._requested = True

    def close(self) -> None:
        with self._lock:
            self._open = False
            self._requested = False

    def try_admit(self) -> bool:
        with self._lock:
            if self._open and self._requested:
                self._requested = False
                self.admitted += 1
                return True
            self.dropped += 1
            return False

    def release(self) -> None:
        with self._lock:
            if self._open:
                self._requested = True


class BarcodePipeline:
    """Rotate, crop and multi-scale decode of admitted frames.

    Args:
        decoder: Barcode decoder reused across frames.
        crop_spec: Scan window margins.
        rotation: Returns the current target rotation in degrees.
        emit: Receives each CameraBarcode event.
        stats: Optional statistics sink.
    """

    def __init__(
        self,
        decoder: BarcodeDecoder,
        crop_spec: BarcodeCropSpec,
        rotation: Callable[[], int],
        emit: Callable[[CameraBarcode], None],
        stats: PipelineStats | None = None,
    ) -> None:
        self.decoder = decoder
        self.crop_spec = crop_spec
        self._rotation = rotation
        self._emit = emit
        self._stats = stats

    def __repr__(self) -> str:
        return f"BarcodePipeline(decoder={self.decoder!r}, crop={self.crop_spec})"

    def process(self, buffer: PixelBuffer) -> int | None:
        """Decode one frame; returns the step that found a code, or None.

        Exceptions are reported as an error event instead of propagating.
        """
        start = time.perf_counter()
        try:
            frame = self.crop_spec.apply(rotate(buffer, self._rotation()))
            for step in range(MAX_DECODE_STEPS):
                if frame.width == 0 or frame.height == 0:
                    break
                found = self.decoder.decode(frame)
                if found is not None:
                    self._record(start, True, step=step)
                    logger.debug(
                        "Barcode decoded",
                        step=step,
                        format=found.format,
                        text=found.text,
                    )
                    self._emit(CameraBarcode(found.text, found.format, None))
                    return step
                if step < MAX_DECODE_STEPS - 1:
                    frame = downscale2x(frame)
        except Exception as e:
            self._record(start, False, error_type=type(e).__name__)
            logger.exception("Barcode exception", error=str(e))
            self._emit(CameraBarcode(None, None, repr(e)))
            return None

        self._record(start, False, error_type="NotFound")
        return None

    def _record(
        self,
        start: float,
        success: bool,
        error_type: str | None = None,
        step: int | None = None,
    ) -> None:
        if self._stats is None:
            return
        duration_ms = (time.perf_counter() - start) * 1000
        self._stats.record(
            BARCODE_DECODE, duration_ms, success, error_type=error_type, step=step
        )
