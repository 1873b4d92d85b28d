"""CLI entry point for camera-scanner.

Provides the ``camera-scanner`` console script with subcommands:

- ``cameras``: List the simulated cameras
- ``scan``: Decode a barcode from an image file
- ``capture``: Take a still with the simulated camera
- ``stream``: Run the barcode stream over simulated preview frames

Usage::

    camera-scanner cameras
    camera-scanner scan label.png --crop 10 10 30 30
    camera-scanner capture --image label.png --output-dir /tmp/shots
    camera-scanner stream --image label.png --seconds 3

Every command writes JSON to stdout; logs go to stderr.
"""

from __future__ import annotations

import argparse
import json
import sys
import tempfile
import threading
from pathlib import Path
from typing import Any

import cv2

from camera_scanner.devices.barcode import (
    BarcodeCropSpec,
    BarcodePipeline,
    CameraBarcode,
    ZXingBarcodeDecoder,
)
from camera_scanner.devices.errors import MethodCallError
from camera_scanner.devices.messenger import (
    ChannelRegistry,
    MainLoop,
    RecordingEventListener,
)
from camera_scanner.drivers.cameras import DigitalTwinConfig, ImageSource
from camera_scanner.drivers.config import DriverFactory, PluginConfig
from camera_scanner.observability import configure_logging, get_logger
from camera_scanner.tools.methods import CameraMethodHandler, available_cameras
from camera_scanner.utils.image import bgr_to_buffer

logger = get_logger(__name__)

PROG = "camera-scanner"
STREAM_FRAME_INTERVAL_S = 1 / 30
STARTUP_TIMEOUT_S = 10.0


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _crop_spec(values: list[int] | None) -> BarcodeCropSpec:
    if not values:
        return BarcodeCropSpec()
    left, right, top, bottom = values
    return BarcodeCropSpec(left=left, right=right, top=top, bottom=bottom)


def _twin_config(image: Path | None, frame_interval_s: float) -> DigitalTwinConfig:
    if image is None:
        return DigitalTwinConfig(frame_interval_s=frame_interval_s)
    source = ImageSource.DIRECTORY if image.is_dir() else ImageSource.FILE
    return DigitalTwinConfig(
        image_source=source, image_path=image, frame_interval_s=frame_interval_s
    )


class _Session:
    """One camera driven through the method handler on a local main loop."""

    def __init__(self, args: argparse.Namespace, frame_interval_s: float):
        output_dir = args.output_dir or Path(tempfile.mkdtemp(prefix="camera-scanner-"))
        self.config = PluginConfig(
            cache_dir=output_dir,
            twin=_twin_config(args.image, frame_interval_s),
        )
        self.main = MainLoop()
        self.listener = RecordingEventListener()
        self.channels = ChannelRegistry()
        self.handler = CameraMethodHandler(
            DriverFactory(self.config).create_camera_driver(),
            self.channels,
            self.listener,
            self.config,
            self.main,
        )
        self.args = args

    def call(self, method: str, arguments: dict[str, Any] | None = None) -> Any:
        future = self.handler.handle(method, arguments)
        if not self.main.run_until(future.done, timeout=STARTUP_TIMEOUT_S):
            raise TimeoutError(f"{method} did not complete")
        return future.result()

    def start(self, barcode_stream: bool) -> None:
        self.call(
            "create",
            {
                "cameraName": self.args.camera,
                "resolutionPreset": self.args.preset,
                "longSideSize": self.args.long_side,
            },
        )
        arguments: dict[str, Any] = {"isBarcodeStreamEnabled": barcode_stream}
        if barcode_stream:
            crop = _crop_spec(self.args.crop)
            arguments.update(
                cropLeft=crop.left,
                cropRight=crop.right,
                cropTop=crop.top,
                cropBottom=crop.bottom,
            )
        self.call("initialize", arguments)
        ready = self.main.run_until(
            lambda: bool(
                self.listener.of_type("cameraInitialized")
                or self.listener.of_type("cameraError")
            ),
            timeout=STARTUP_TIMEOUT_S,
        )
        errors = self.listener.of_type("cameraError")
        if not ready or errors:
            description = errors[-1].get("description") if errors else "timeout"
            raise RuntimeError(f"Camera failed to start: {description}")

    def stop(self) -> None:
        self.call("dispose")


def run_cameras(args: argparse.Namespace) -> int:
    driver = DriverFactory().create_camera_driver()
    _emit(available_cameras(driver))
    return 0


def run_scan(args: argparse.Namespace) -> int:
    bgr = cv2.imread(str(args.image), cv2.IMREAD_COLOR)
    if bgr is None:
        logger.error("Cannot read image", path=str(args.image))
        return 2

    events: list[CameraBarcode] = []
    pipeline = BarcodePipeline(
        ZXingBarcodeDecoder(),
        _crop_spec(args.crop),
        rotation=lambda: args.rotation,
        emit=events.append,
    )
    step = pipeline.process(bgr_to_buffer(bgr))
    if not events:
        _emit({"found": False})
        return 1
    _emit({"found": step is not None, "step": step, **events[0].to_map()})
    return 0 if step is not None else 1


def run_capture(args: argparse.Namespace) -> int:
    session = _Session(args, STREAM_FRAME_INTERVAL_S)
    try:
        session.start(barcode_stream=False)
        _emit(session.call("takePicture"))
    except MethodCallError as e:
        logger.error("takePicture failed", code=e.code, error=e.message)
        return 1
    finally:
        session.stop()
    return 0


def run_stream(args: argparse.Namespace) -> int:
    session = _Session(args, STREAM_FRAME_INTERVAL_S)
    seen: list[dict[str, Any]] = []
    done = threading.Event()

    def on_barcode(event: CameraBarcode) -> None:
        payload = event.to_map()
        seen.append(payload)
        _emit(payload)
        if args.first and payload["text"]:
            done.set()

    try:
        session.start(barcode_stream=True)
        session.channels.channel("camera/barcodeStream/0").listen(on_barcode)
        timer = threading.Timer(args.seconds, done.set)
        timer.start()
        session.main.run_forever(done)
        timer.cancel()
        session.call("stopBarcodeStream")
    finally:
        session.stop()
    logger.info("Barcode stream finished", events=len(seen))
    return 0 if any(p["text"] for p in seen) else 1


def _add_camera_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--image",
        type=Path,
        help="Image file or directory the simulated camera shows",
    )
    parser.add_argument("--camera", default="0", help="Camera name (default: 0)")
    parser.add_argument(
        "--preset",
        default="custom43",
        help="Resolution preset (default: custom43)",
    )
    parser.add_argument(
        "--long-side",
        type=int,
        default=1600,
        help="Long side of custom43 sizes (default: 1600)",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        help="Directory for captured files (default: a new temp dir)",
    )


def _add_crop_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--crop",
        type=int,
        nargs=4,
        metavar=("LEFT", "RIGHT", "TOP", "BOTTOM"),
        help="Scan window margins in percent",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Camera capture and 1D barcode scanning on a simulated camera",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs as JSON lines",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("cameras", help="List available cameras")

    scan = subparsers.add_parser("scan", help="Decode a barcode from an image")
    scan.add_argument("image", type=Path, help="Image file")
    scan.add_argument(
        "--rotation",
        type=int,
        default=0,
        choices=[0, 90, 180, 270],
        help="Clockwise rotation applied before decoding",
    )
    _add_crop_argument(scan)

    capture = subparsers.add_parser("capture", help="Take a still picture")
    _add_camera_arguments(capture)

    stream = subparsers.add_parser("stream", help="Run the barcode stream")
    _add_camera_arguments(stream)
    _add_crop_argument(stream)
    stream.add_argument(
        "--seconds",
        type=float,
        default=5.0,
        help="How long to stream (default: 5)",
    )
    stream.add_argument(
        "--first",
        action="store_true",
        help="Stop after the first decoded barcode",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point for camera-scanner.

    Returns:
        Exit code: 0 on success, 1 when nothing was decoded or the
        operation failed, 2 for unreadable input.
    """
    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level, json_format=args.json_logs, force=True)

    commands = {
        "cameras": run_cameras,
        "scan": run_scan,
        "capture": run_capture,
        "stream": run_stream,
    }
    return commands[args.command](args)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
