"""Pipeline statistics for camera-scanner.

Counts outcomes and times the two hot paths of the plugin: still capture
(``take_picture``) and barcode decoding (``barcode_decode``). Counters
cover the whole lifetime of a collector; duration aggregates come from a
bounded window of recent successful attempts.

Example:
    stats = PipelineStats()
    stats.record(BARCODE_DECODE, duration_ms=12.5, success=True, step=2)
    print(f"Hit rate: {stats.get_summary(BARCODE_DECODE).success_rate:.0%}")
"""

from __future__ import annotations

import threading
import time
from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

#: Successful durations kept per operation.
DEFAULT_STATS_WINDOW_SIZE: int = 1000

TAKE_PICTURE = "take_picture"
BARCODE_DECODE = "barcode_decode"


@dataclass
class StatsSummary:
    """Snapshot of one operation.

    Attributes:
        operation: Operation name.
        total: All recorded attempts.
        successful: Attempts that produced a result.
        failed: Attempts that did not.
        success_rate: successful / total, 0.0 with no attempts.
        min_duration_ms: Fastest successful attempt in the window.
        max_duration_ms: Slowest successful attempt in the window.
        avg_duration_ms: Mean successful duration in the window.
        p95_duration_ms: 95th percentile successful duration.
        error_counts: Failures per category.
        step_counts: Decode hits per downscale step.
        last_time: UTC time of the latest attempt.
        uptime_seconds: Seconds since creation or reset.
    """

    operation: str
    total: int = 0
    successful: int = 0
    failed: int = 0
    success_rate: float = 0.0
    min_duration_ms: float = 0.0
    max_duration_ms: float = 0.0
    avg_duration_ms: float = 0.0
    p95_duration_ms: float = 0.0
    error_counts: dict[str, int] = field(default_factory=dict)
    step_counts: dict[int, int] = field(default_factory=dict)
    last_time: datetime | None = None
    uptime_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly form; step keys become strings."""
        data = asdict(self)
        data["step_counts"] = {str(step): n for step, n in self.step_counts.items()}
        data["last_time"] = self.last_time.isoformat() if self.last_time else None
        return data


class OperationStatsCollector:
    """Thread-safe statistics for a single operation.

    The camera worker and the barcode worker record into the same
    ``PipelineStats`` concurrently.

    Args:
        operation: Label for the summary.
        window_size: Successful durations retained for aggregates.
    """

    def __init__(
        self, operation: str, window_size: int = DEFAULT_STATS_WINDOW_SIZE
    ) -> None:
        self.operation = operation
        self._lock = threading.Lock()
        self._durations: deque[float] = deque(maxlen=window_size)
        self._clear()

    def _clear(self) -> None:
        self._durations.clear()
        self._errors: Counter[str] = Counter()
        self._steps: Counter[int] = Counter()
        self._total = 0
        self._successful = 0
        self._last_time: datetime | None = None
        self._started = time.monotonic()

    def record(
        self,
        duration_ms: float,
        success: bool,
        error_type: str | None = None,
        step: int | None = None,
    ) -> None:
        """Record one attempt.

        Args:
            duration_ms: Time spent on the attempt.
            success: Whether it produced a result.
            error_type: Failure category such as "IOError" or "NotFound".
            step: Downscale step a decode hit at.
        """
        now = datetime.now(UTC)
        with self._lock:
            self._total += 1
            self._last_time = now
            if not success:
                if error_type:
                    self._errors[error_type] += 1
                return
            self._successful += 1
            if step is not None:
                self._steps[step] += 1
            # zero means "not timed"
            if duration_ms > 0:
                self._durations.append(duration_ms)

    def get_summary(self) -> StatsSummary:
        with self._lock:
            durations = sorted(self._durations)
            summary = StatsSummary(
                operation=self.operation,
                total=self._total,
                successful=self._successful,
                failed=self._total - self._successful,
                error_counts=dict(self._errors),
                step_counts=dict(self._steps),
                last_time=self._last_time,
                uptime_seconds=time.monotonic() - self._started,
            )
        if summary.total:
            summary.success_rate = summary.successful / summary.total
        if durations:
            summary.min_duration_ms = durations[0]
            summary.max_duration_ms = durations[-1]
            summary.avg_duration_ms = sum(durations) / len(durations)
            summary.p95_duration_ms = _percentile(durations, 95)
        return summary

    def reset(self) -> None:
        """Clear counters, durations and the uptime clock."""
        with self._lock:
            self._clear()


class PipelineStats:
    """Per-operation collectors, created on first use.

    Usage:
        stats = PipelineStats()
        stats.record(TAKE_PICTURE, duration_ms=420.0, success=True)
        stats.record(TAKE_PICTURE, 0.0, success=False, error_type="IOError")
        stats.to_dict()
    """

    def __init__(self, window_size: int = DEFAULT_STATS_WINDOW_SIZE) -> None:
        self._window_size = window_size
        self._collectors: dict[str, OperationStatsCollector] = {}
        self._lock = threading.Lock()

    def _collector(self, operation: str) -> OperationStatsCollector:
        with self._lock:
            collector = self._collectors.get(operation)
            if collector is None:
                collector = OperationStatsCollector(operation, self._window_size)
                self._collectors[operation] = collector
            return collector

    def record(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error_type: str | None = None,
        step: int | None = None,
    ) -> None:
        self._collector(operation).record(
            duration_ms, success, error_type=error_type, step=step
        )

    def get_summary(self, operation: str) -> StatsSummary:
        """Summary for ``operation``; empty if it was never recorded."""
        return self._collector(operation).get_summary()

    def get_all_summaries(self) -> dict[str, StatsSummary]:
        with self._lock:
            collectors = dict(self._collectors)
        return {name: c.get_summary() for name, c in collectors.items()}

    def reset(self, operation: str | None = None) -> None:
        """Reset ``operation``, or every operation when None."""
        with self._lock:
            if operation is None:
                targets = list(self._collectors.values())
            else:
                targets = [c for n, c in self._collectors.items() if n == operation]
        for collector in targets:
            collector.reset()

    def to_dict(self) -> dict[str, Any]:
        summaries = self.get_all_summaries()
        return {"operations": {n: s.to_dict() for n, s in summaries.items()}}


def _percentile(sorted_data: list[float], p: float) -> float:
    """Linear-interpolated percentile of ascending data.

    Args:
        sorted_data: Values in ascending order.
        p: Percentile in [0, 100].

    Returns:
        The interpolated value, 0.0 for empty input.

    Raises:
        ValueError: If p is outside [0, 100].

    Example:
        >>> _percentile([100.0, 150.0, 200.0], 95)
        195.0
    """
    if not 0 <= p <= 100:
        raise ValueError(f"Percentile must be between 0 and 100, got {p}")
    if not sorted_data:
        return 0.0
    position = (len(sorted_data) - 1) * p / 100
    lower = int(position)
    if lower + 1 >= len(sorted_data):
        return sorted_data[-1]
    weight = position - lower
    return sorted_data[lower] + (sorted_data[lower + 1] - sorted_data[lower]) * weight
