"""Media recorder construction for video recording."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from camera_scanner.drivers.cameras.types import RecorderSettings
from camera_scanner.observability import get_logger

if TYPE_CHECKING:
    from camera_scanner.drivers.cameras import MediaRecorder
    from camera_scanner.drivers.cameras.types import RecordingProfile

logger = get_logger(__name__)


class MediaRecorderBuilder:
    """Builds and prepares a recorder from a camcorder profile.

    Usage:
        recorder = (
            MediaRecorderBuilder(profile, "/cache/REC123.mp4", driver.create_media_recorder)
            .set_enable_audio(True)
            .set_media_orientation(0)
            .build()
        )
    """

    def __init__(
        self,
        profile: RecordingProfile,
        output_path: str,
        recorder_factory: Callable[[], MediaRecorder],
    ) -> None:
        self.profile = profile
        self.output_path = output_path
        self._factory = recorder_factory
        self.enable_audio = False
        self.media_orientation = 0

    def set_enable_audio(self, enable_audio: bool) -> MediaRecorderBuilder:
        self.enable_audio = enable_audio
        return self

    def set_media_orientation(self, orientation: int) -> MediaRecorderBuilder:
        self.media_orientation = orientation
        return self

    def settings(self) -> RecorderSettings:
        p = self.profile
        return RecorderSettings(
            output_path=self.output_path,
            video_size=p.video_size,
            video_frame_rate=p.video_frame_rate,
            video_bit_rate=p.video_bit_rate,
            video_codec=p.video_codec,
            file_format=p.file_format,
            orientation_hint=self.media_orientation,
            enable_audio=self.enable_audio,
            audio_codec=p.audio_codec,
            audio_bit_rate=p.audio_bit_rate,
            audio_sample_rate=p.audio_sample_rate,
            audio_channels=p.audio_channels,
        )

    def build(self) -> MediaRecorder:
        """Create, configure and prepare a recorder.

        Raises:
            OSError: If the output file cannot be prepared.
        """
        recorder = self._factory()
        settings = self.settings()
        recorder.configure(settings)
        recorder.prepare()
        logger.debug(
            "Media recorder prepared",
            path=self.output_path,
            size=str(settings.video_size),
            audio=self.enable_audio,
            orientation=self.media_orientation,
        )
        return recorder
