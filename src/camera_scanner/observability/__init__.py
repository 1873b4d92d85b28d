"""Observability for camera-scanner.

Structured logging and pipeline statistics.

Example:
    from camera_scanner.observability import get_logger, LogContext

    logger = get_logger(__name__)
    with LogContext(camera_name="0"):
        logger.info("Preview started", width=1600, height=1200)

Statistics Example:
    from camera_scanner.observability import PipelineStats

    stats = PipelineStats()
    handler = CameraMethodHandler(driver, channels, listener, stats=stats)
    print(stats.get_summary("barcode_decode").success_rate)
"""

from camera_scanner.observability.logging import (
    DeviceLogHandler,
    LogContext,
    StructuredLogger,
    configure_logging,
    get_logger,
    reset_logging,
)
from camera_scanner.observability.stats import (
    BARCODE_DECODE,
    TAKE_PICTURE,
    PipelineStats,
    StatsSummary,
)

__all__ = [
    # Logging
    "DeviceLogHandler",
    "LogContext",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
    "reset_logging",
    # Statistics
    "BARCODE_DECODE",
    "TAKE_PICTURE",
    "PipelineStats",
    "StatsSummary",
]
