"""Test helpers for camera-scanner.

Provides protocol compliance checks, a controllable clock, scripted
barcode decoders, an EAN-13 renderer and a loop that drives the digital
twin until a condition holds.

Example:
    from tests.helpers import FakeClock, FixedDecoder, drive_until

    decoder = FixedDecoder("4006381333931", "EAN_13")
    assert drive_until(driver, camera, lambda: future.done())
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any, Protocol

import numpy as np

from camera_scanner.devices.barcode import DecodedBarcode


def assert_implements_protocol(instance: object, protocol: type[Protocol]) -> None:
    """Assert that an instance implements a runtime checkable Protocol.

    Business context: the capture core only talks to drivers through
    protocols, so every twin must satisfy them or a host implementing the
    same protocol could not be swapped in.

    Raises:
        AssertionError: Listing the protocol members the instance lacks.
    """
    if isinstance(instance, protocol):
        return
    protocol_attrs = {
        attr for attr in set(dir(protocol)) - set(dir(object)) if not attr.startswith("_")
    }
    missing = sorted(attr for attr in protocol_attrs if not hasattr(instance, attr))
    missing_str = ", ".join(missing) if missing else "unknown"
    raise AssertionError(
        f"{type(instance).__name__} does not implement {protocol.__name__}. "
        f"Missing: {missing_str}"
    )


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def monotonic(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000.0


class FixedDecoder:
    """Decoder that finds the same barcode in every buffer it sees."""

    def __init__(self, text: str = "4006381333931", format: str = "EAN_13") -> None:
        self.text = text
        self.format = format
        self.calls: list[tuple[int, int]] = []

    def decode(self, buffer: Any) -> DecodedBarcode | None:
        self.calls.append((buffer.width, buffer.height))
        return DecodedBarcode(self.text, self.format)


class ScriptedDecoder:
    """Decoder that succeeds only once a buffer is at most ``max_width`` wide."""

    def __init__(self, max_width: int | None = None) -> None:
        self.max_width = max_width
        self.calls: list[tuple[int, int]] = []

    def decode(self, buffer: Any) -> DecodedBarcode | None:
        self.calls.append((buffer.width, buffer.height))
        if self.max_width is not None and buffer.width <= self.max_width:
            return DecodedBarcode("96385074", "EAN_8")
        return None


class RaisingDecoder:
    """Decoder whose every call fails."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error or RuntimeError("decoder crashed")

    def decode(self, buffer: Any) -> DecodedBarcode | None:
        raise self.error


class BlockingDecoder:
    """Decoder that holds each call until ``release`` is set."""

    def __init__(self) -> None:
        self.release = threading.Event()
        self.entered = threading.Event()
        self.calls = 0

    def decode(self, buffer: Any) -> DecodedBarcode | None:
        self.calls += 1
        self.entered.set()
        self.release.wait(5.0)
        return None


# =============================================================================
# EAN-13 rendering
# =============================================================================

_L_CODES = (
    "0001101", "0011001", "0010011", "0111101", "0100011",
    "0110001", "0101111", "0111011", "0110111", "0001011",
)  # fmt: skip
_G_CODES = (
    "0100111", "0110011", "0011011", "0100001", "0011101",
    "0111001", "0000101", "0010001", "0001001", "0010111",
)  # fmt: skip
_R_CODES = tuple("".join("1" if c == "0" else "0" for c in code) for code in _L_CODES)
_PARITY = (
    "LLLLLL", "LLGLGG", "LLGGLG", "LLGGGL", "LGLLGG",
    "LGGLLG", "LGGGLL", "LGLGLG", "LGLGGL", "LGGLGL",
)  # fmt: skip


def ean13_check_digit(digits12: str) -> str:
    total = sum(int(d) * (3 if i % 2 else 1) for i, d in enumerate(digits12))
    return str((10 - total % 10) % 10)


def render_ean13(
    code: str, module_px: int = 3, height: int = 120, quiet_modules: int = 15
) -> np.ndarray:
    """Grayscale (h, w) uint8 image of an EAN-13 symbol, bars vertical."""
    if len(code) == 12:
        code += ean13_check_digit(code)
    parity = _PARITY[int(code[0])]
    bits = "101"
    for digit, kind in zip(code[1:7], parity, strict=True):
        bits += (_L_CODES if kind == "L" else _G_CODES)[int(digit)]
    bits += "01010"
    for digit in code[7:]:
        bits += _R_CODES[int(digit)]
    bits += "101"
    bits = "0" * quiet_modules + bits + "0" * quiet_modules

    row = np.array([0 if b == "1" else 255 for b in bits], dtype=np.uint8)
    row = np.repeat(row, module_px)
    return np.tile(row, (height, 1))


# =============================================================================
# Twin driving
# =============================================================================


def drive_until(
    driver: Any,
    camera: Any,
    predicate: Callable[[], bool],
    max_frames: int = 60,
) -> bool:
    """Pump twin frames and drain the camera workers until ``predicate()``."""
    for _ in range(max_frames):
        camera.camera_worker.drain()
        camera.barcode_worker.drain()
        if predicate():
            return True
        driver.pump(1)
    camera.camera_worker.drain()
    camera.barcode_worker.drain()
    return predicate()
