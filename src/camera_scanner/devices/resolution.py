"""Capture and preview size selection.

Presets other than ``custom43`` map onto camcorder profiles through a
fall-through chain; ``custom43`` scans the JPEG and YUV output sizes for
the smallest 4:3 size covering the configured long and short sides.

Example:
    choice = select_resolution(driver, "0", ResolutionPreset.CUSTOM43, 1600, 1200)
    choice.capture_size, choice.capture_format
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from camera_scanner.devices.errors import InvalidArgumentError, NoRecordingProfileError
from camera_scanner.drivers.cameras.types import (
    ImageFormat,
    RecordingProfile,
    Size,
)
from camera_scanner.observability import get_logger

if TYPE_CHECKING:
    from camera_scanner.drivers.cameras import CameraDriver
    from camera_scanner.drivers.cameras.types import CaptureRequestBuilder

logger = get_logger(__name__)

MIN_43_ASPECT = 1.3
MAX_43_ASPECT = 1.4


class ResolutionPreset(Enum):
    """Resolution presets in ascending order; values are the host strings."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "veryHigh"
    ULTRA_HIGH = "ultraHigh"
    MAX = "max"
    CUSTOM43 = "custom43"

    @property
    def ordinal(self) -> int:
        return _PRESET_ORDER.index(self)

    @classmethod
    def parse(cls, value: str) -> ResolutionPreset:
        """Preset for a host string.

        Raises:
            InvalidArgumentError: For unknown preset names.
        """
        for preset in cls:
            if preset.value == value:
                return preset
        raise InvalidArgumentError(f"Unknown resolution preset: {value}")


_PRESET_ORDER = tuple(ResolutionPreset)

# Profiles tried for each preset; a preset falls through to the lower ones.
_PROFILE_CHAIN = (
    (ResolutionPreset.MAX, "HIGH"),
    (ResolutionPreset.ULTRA_HIGH, "2160P"),
    (ResolutionPreset.VERY_HIGH, "1080P"),
    (ResolutionPreset.HIGH, "720P"),
    (ResolutionPreset.MEDIUM, "480P"),
    (ResolutionPreset.LOW, "QVGA"),
)
_FALLBACK_PROFILE = "LOW"


@dataclass(frozen=True)
class ResolutionChoice:
    """Sizes and format chosen for one camera and preset."""

    capture_size: Size
    preview_size: Size
    capture_format: ImageFormat
    recording_profile: RecordingProfile | None


def parse_camera_id(camera_name: str) -> int:
    """Numeric camera id, or -1 when the name is not a non-negative integer."""
    try:
        camera_id = int(camera_name, 10)
    except ValueError:
        return -1
    return camera_id if camera_id >= 0 else -1


def is_supported_camera_name(camera_name: str) -> bool:
    return parse_camera_id(camera_name) >= 0


def best_profile_for_preset(
    driver: CameraDriver, camera_id: int, preset: ResolutionPreset
) -> RecordingProfile:
    """Best available camcorder profile at or below ``preset``.

    Raises:
        InvalidArgumentError: For negative camera ids.
        NoRecordingProfileError: When not even the LOW profile exists.
    """
    if camera_id < 0:
        raise InvalidArgumentError(
            "best_profile_for_preset can only be used with valid (>=0) camera identifiers."
        )

    started = False
    for chain_preset, quality in _PROFILE_CHAIN:
        started = started or chain_preset == preset
        if not started:
            continue
        profile = driver.get_recording_profile(camera_id, quality)
        if profile is not None:
            return profile

    profile = driver.get_recording_profile(camera_id, _FALLBACK_PROFILE)
    if profile is None:
        raise NoRecordingProfileError(
            "No capture session available for current capture session."
        )
    return profile


def compute_best_preview_size(
    driver: CameraDriver, camera_id: int, preset: ResolutionPreset
) -> Size:
    """Preview size for ``preset``, never above the ``high`` tier."""
    if preset.ordinal > ResolutionPreset.HIGH.ordinal:
        preset = ResolutionPreset.HIGH
    return best_profile_for_preset(driver, camera_id, preset).video_size


def closest_43_size(
    sizes: Iterable[Size], long_side: int, short_side: int
) -> Size | None:
    """Smallest roughly 4:3 size covering ``long_side`` x ``short_side``.

    Sizes are scanned by ascending width, then height.
    """
    for size in sorted(sizes, key=lambda s: (s.width, s.height)):
        if size.height <= 0:
            continue
        aspect = size.width / size.height
        if (
            MIN_43_ASPECT <= aspect <= MAX_43_ASPECT
            and size.width >= long_side
            and size.height >= short_side
        ):
            return size
    return None


def choose_43_candidate(
    jpeg: Size | None, yuv: Size | None, long_side: int, short_side: int
) -> tuple[Size, ImageFormat] | None:
    """Pick between the JPEG and YUV 4:3 candidates.

    An exact ``long_side`` x ``short_side`` match wins, YUV first. Otherwise
    the candidate whose width and height are both <= the other's wins, and
    JPEG when neither is.
    """
    if jpeg is not None and yuv is not None:
        exact = Size(long_side, short_side)
        if yuv == exact:
            return yuv, ImageFormat.YUV_420_888
        if jpeg == exact:
            return jpeg, ImageFormat.JPEG
        if yuv.width <= jpeg.width and yuv.height <= jpeg.height:
            return yuv, ImageFormat.YUV_420_888
        return jpeg, ImageFormat.JPEG
    if jpeg is not None:
        return jpeg, ImageFormat.JPEG
    if yuv is not None:
        return yuv, ImageFormat.YUV_420_888
    return None


def select_resolution(
    driver: CameraDriver,
    camera_name: str,
    preset: ResolutionPreset,
    long_side: int,
    short_side: int,
) -> ResolutionChoice:
    """Resolve sizes, capture format and recording profile for a camera.

    Raises:
        InvalidArgumentError: If the camera name is not a numeric id.
        NoRecordingProfileError: If the camera has no camcorder profile.
    """
    camera_id = parse_camera_id(camera_name)
    if camera_id < 0:
        raise InvalidArgumentError(
            f"Camera with name {camera_name} is not supported by this plugin."
        )

    profile = best_profile_for_preset(driver, camera_id, preset)
    choice = ResolutionChoice(
        capture_size=profile.video_size,
        preview_size=compute_best_preview_size(driver, camera_id, preset),
        capture_format=ImageFormat.JPEG,
        recording_profile=profile,
    )
    if preset != ResolutionPreset.CUSTOM43:
        return choice

    output_sizes = driver.get_characteristics(camera_name).output_sizes
    jpeg_sizes = output_sizes.get(ImageFormat.JPEG, ())
    yuv_sizes = output_sizes.get(ImageFormat.YUV_420_888, ())
    if not jpeg_sizes and not yuv_sizes:
        logger.info("No JPEG or YUV output sizes", camera=camera_name)
        return choice

    jpeg = closest_43_size(jpeg_sizes, long_side, short_side)
    if jpeg is None:
        logger.info("No 4:3 JPEG size", camera=camera_name)
    yuv = closest_43_size(yuv_sizes, long_side, short_side)
    if yuv is None:
        logger.info("No 4:3 YUV size", camera=camera_name)

    picked = choose_43_candidate(jpeg, yuv, long_side, short_side)
    if picked is None:
        return choice
    size, image_format = picked
    logger.debug(
        "Selected 4:3 capture size",
        camera=camera_name,
        size=str(size),
        format=image_format.value,
    )
    return ResolutionChoice(
        capture_size=size,
        preview_size=size,
        capture_format=image_format,
        recording_profile=profile,
    )


class ResolutionFeature:
    """Resolution setting of an open camera.

    Unsupported camera names (not a non-negative integer) leave the sizes
    unset; the coordinator refuses to open such cameras.
    """

    debug_name = "ResolutionFeature"

    def __init__(
        self,
        driver: CameraDriver,
        camera_name: str,
        preset: ResolutionPreset,
        long_side: int,
        short_side: int,
    ) -> None:
        self._driver = driver
        self.camera_name = camera_name
        self.long_side = long_side
        self.short_side = short_side
        self._preset = preset
        self.choice: ResolutionChoice | None = None
        if self.is_supported:
            self.choice = select_resolution(
                driver, camera_name, preset, long_side, short_side
            )

    @property
    def is_supported(self) -> bool:
        return is_supported_camera_name(self.camera_name)

    @property
    def value(self) -> ResolutionPreset:
        return self._preset

    @value.setter
    def value(self, preset: ResolutionPreset) -> None:
        self._preset = preset
        if self.is_supported:
            self.choice = select_resolution(
                self._driver, self.camera_name, preset, self.long_side, self.short_side
            )

    @property
    def capture_size(self) -> Size | None:
        return self.choice.capture_size if self.choice else None

    @property
    def preview_size(self) -> Size | None:
        return self.choice.preview_size if self.choice else None

    @property
    def capture_format(self) -> ImageFormat:
        return self.choice.capture_format if self.choice else ImageFormat.JPEG

    @property
    def recording_profile(self) -> RecordingProfile | None:
        return self.choice.recording_profile if self.choice else None

    def update_builder(self, builder: CaptureRequestBuilder) -> None:
        """Resolution is fixed by the session outputs; nothing to set."""
