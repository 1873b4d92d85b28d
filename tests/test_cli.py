"""Tests for camera_scanner.cli: argument parsing and command dispatch.

Test Categories:
    - ``build_parser``: subcommands, defaults and argument validation
    - ``run_cameras``: JSON listing of the simulated cameras
    - ``run_scan``: decoding image files through the barcode pipeline
    - ``run_capture``: a still taken on the simulated camera
"""

from __future__ import annotations

import json
from pathlib import Path

import cv2
import numpy as np
import pytest

from camera_scanner.cli import _crop_spec, _twin_config, build_parser, main
from camera_scanner.devices.barcode import BarcodeCropSpec
from camera_scanner.drivers.cameras import ImageSource
from camera_scanner.observability import configure_logging, reset_logging
from tests.helpers import render_ean13


@pytest.fixture(autouse=True)
def _restore_logging():
    """main() reconfigures package logging; put the defaults back."""
    yield
    reset_logging()
    configure_logging(force=True)


@pytest.fixture
def ean13_png(tmp_path: Path) -> Path:
    path = tmp_path / "label.png"
    cv2.imwrite(str(path), render_ean13("400638133393"))
    return path


def stdout_json(capsys) -> object:
    return json.loads(capsys.readouterr().out)


# =========================================================================
# build_parser
# =========================================================================


class TestBuildParser:
    """Tests for the argparse definition."""

    def test_command_is_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_capture_defaults(self) -> None:
        args = build_parser().parse_args(["capture"])
        assert args.camera == "0"
        assert args.preset == "custom43"
        assert args.long_side == 1600
        assert args.image is None
        assert args.log_level == "WARNING"

    def test_stream_arguments(self) -> None:
        args = build_parser().parse_args(
            ["--json-logs", "stream", "--crop", "10", "10", "0", "0", "--seconds", "2", "--first"]
        )
        assert args.crop == [10, 10, 0, 0]
        assert args.seconds == 2.0
        assert args.first
        assert args.json_logs

    def test_crop_needs_four_values(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["scan", "x.png", "--crop", "10", "10"])

    def test_rotation_choices(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["scan", "x.png", "--rotation", "45"])


class TestHelpers:
    def test_crop_spec(self) -> None:
        assert _crop_spec(None) == BarcodeCropSpec()
        assert _crop_spec([1, 2, 3, 4]) == BarcodeCropSpec(left=1, right=2, top=3, bottom=4)

    def test_twin_config_sources(self, tmp_path: Path, ean13_png: Path) -> None:
        assert _twin_config(None, 0.0).image_source == ImageSource.SYNTHETIC
        assert _twin_config(ean13_png, 0.0).image_source == ImageSource.FILE
        assert _twin_config(tmp_path, 0.5).image_source == ImageSource.DIRECTORY
        assert _twin_config(tmp_path, 0.5).frame_interval_s == 0.5


# =========================================================================
# Commands
# =========================================================================


class TestCameras:
    def test_lists_cameras_as_json(self, capsys) -> None:
        assert main(["cameras"]) == 0
        cameras = stdout_json(capsys)
        assert [c["name"] for c in cameras] == ["0", "1"]
        assert cameras[0]["lensFacing"] == "back"


class TestScan:
    """Tests for decoding image files."""

    @pytest.fixture(autouse=True)
    def _needs_zxing(self) -> None:
        pytest.importorskip("zxingcpp")

    def test_decodes_label(self, capsys, ean13_png: Path) -> None:
        """Verifies a rendered EAN-13 label is decoded from disk.

        Arrangement:
        PNG of EAN-13 4006381333931 written with OpenCV.

        Action:
        Run ``scan`` on the file.

        Assertion Strategy:
        Exit code 0 and the JSON carries text, format and the step.
        """
        assert main(["scan", str(ean13_png)]) == 0
        assert stdout_json(capsys) == {
            "found": True,
            "step": 0,
            "text": "4006381333931",
            "format": "EAN_13",
            "errorDescription": None,
        }

    def test_rotation_rights_sideways_label(self, capsys, tmp_path: Path) -> None:
        path = tmp_path / "sideways.png"
        cv2.imwrite(str(path), np.ascontiguousarray(np.rot90(render_ean13("400638133393"))))
        assert main(["scan", str(path), "--rotation", "90"]) == 0
        assert stdout_json(capsys)["text"] == "4006381333931"

    def test_blank_image_finds_nothing(self, capsys, tmp_path: Path) -> None:
        path = tmp_path / "blank.png"
        cv2.imwrite(str(path), np.full((120, 300), 255, dtype=np.uint8))
        assert main(["scan", str(path)]) == 1
        assert stdout_json(capsys) == {"found": False}

    def test_unreadable_file(self, capsys, tmp_path: Path) -> None:
        assert main(["scan", str(tmp_path / "missing.png")]) == 2
        assert capsys.readouterr().out == ""


class TestCapture:
    def test_takes_picture_on_simulated_camera(self, capsys, tmp_path: Path) -> None:
        """Verifies ``capture`` prints the saved still and disposes the camera."""
        assert main(["capture", "--output-dir", str(tmp_path), "--preset", "low"]) == 0
        result = stdout_json(capsys)
        path = Path(result["resultPath"])
        assert path.parent == tmp_path
        assert path.exists()
        assert result["width"] > 0 and result["height"] > 0
