"""Host-facing messaging: method results, event channels and camera events.

Everything that reaches the host is published on the main executor. The
camera and barcode workers never call host objects directly; they go
through ``EventMessenger`` (camera and device events, method results) or
a barcode ``EventSink`` obtained from an ``EventChannel``.

Example:
    main = MainLoop()
    messenger = EventMessenger(main, listener)
    messenger.send_camera_error("The camera was disconnected.")
    main.run_pending()   # listener.on_event("cameraError", {...}) runs here
"""

from __future__ import annotations

import queue
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from camera_scanner.devices.errors import MethodCallError, NotImplementedMethodError
from camera_scanner.observability import get_logger

if TYPE_CHECKING:
    from camera_scanner.devices.orientation import DeviceOrientation, DeviceTilts

logger = get_logger(__name__)

# =============================================================================
# Main executor
# =============================================================================


@runtime_checkable
class MainThreadExecutor(Protocol):  # pragma: no cover
    """Runs tasks on the host's main thread."""

    def execute(self, task: Callable[[], None]) -> None:
        """Schedule ``task`` on the main thread."""
        ...


class ImmediateExecutor:
    """Runs tasks inline on the calling thread."""

    def execute(self, task: Callable[[], None]) -> None:
        task()


class MainLoop:
    """Queue-backed main thread for hosts without their own event loop.

    Tasks run when the owning thread calls ``run_pending()``,
    ``run_until()`` or ``run_forever()``.
    """

    def __init__(self) -> None:
        self._tasks: queue.Queue[Callable[[], None]] = queue.Queue()

    def execute(self, task: Callable[[], None]) -> None:
        self._tasks.put(task)

    def run_pending(self) -> int:
        """Run every queued task; returns how many ran."""
        count = 0
        while True:
            try:
                task = self._tasks.get_nowait()
            except queue.Empty:
                return count
            self._run(task)
            count += 1

    def run_until(
        self,
        predicate: Callable[[], bool],
        timeout: float = 10.0,
        poll_s: float = 0.01,
    ) -> bool:
        """Run tasks until ``predicate()`` holds; False on timeout."""
        deadline = time.monotonic() + timeout
        while not predicate():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            try:
                task = self._tasks.get(timeout=min(poll_s, remaining))
            except queue.Empty:
                continue
            self._run(task)
        return True

    def run_forever(self, stop: threading.Event, poll_s: float = 0.05) -> None:
        """Run tasks until ``stop`` is set."""
        while not stop.is_set():
            try:
                task = self._tasks.get(timeout=poll_s)
            except queue.Empty:
                continue
            self._run(task)
        self.run_pending()

    @staticmethod
    def _run(task: Callable[[], None]) -> None:
        try:
            task()
        except Exception as e:
            logger.exception("Main thread task failed", error=str(e))


# =============================================================================
# Method results
# =============================================================================


@runtime_checkable
class MethodResult(Protocol):  # pragma: no cover
    """Reply slot of one host method call."""

    def success(self, value: Any = None) -> None:
        """Complete with a value."""
        ...

    def error(self, code: str, message: str | None, details: Any = None) -> None:
        """Complete with an error code."""
        ...

    def not_implemented(self) -> None:
        """Complete as an unknown method."""
        ...


class FutureResult:
    """MethodResult backed by a concurrent.futures.Future.

    Only the first completion counts; later ones are logged and ignored.
    Errors complete the future with ``MethodCallError``.
    """

    def __init__(self, method: str = "") -> None:
        self.method = method
        self.future: Future[Any] = Future()
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"FutureResult(method={self.method!r}, done={self.future.done()})"

    def success(self, value: Any = None) -> None:
        with self._lock:
            if self._check_pending("success"):
                self.future.set_result(value)

    def error(self, code: str, message: str | None, details: Any = None) -> None:
        with self._lock:
            if self._check_pending("error", code=code):
                self.future.set_exception(MethodCallError(code, message, details))

    def not_implemented(self) -> None:
        with self._lock:
            if self._check_pending("not_implemented"):
                self.future.set_exception(NotImplementedMethodError(self.method))

    def _check_pending(self, outcome: str, **fields: Any) -> bool:
        if self.future.done():
            logger.warning(
                "Method result already completed",
                method=self.method,
                outcome=outcome,
                **fields,
            )
            return False
        return True


# =============================================================================
# Event channels
# =============================================================================


@runtime_checkable
class EventSink(Protocol):  # pragma: no cover
    """Receiving end of an event channel."""

    def success(self, event: Any) -> None:
        """Deliver an event."""
        ...

    def error(self, code: str, message: str | None, details: Any = None) -> None:
        """Deliver an error event."""
        ...

    def end_of_stream(self) -> None:
        """Signal that no more events follow."""
        ...


@runtime_checkable
class StreamHandler(Protocol):  # pragma: no cover
    """Producer side of an event channel."""

    def on_listen(self, arguments: Any, sink: EventSink) -> None:
        """A listener subscribed; events go to ``sink``."""
        ...

    def on_cancel(self, arguments: Any) -> None:
        """The listener unsubscribed."""
        ...


class _ChannelSink:
    """Sink forwarding events to a subscriber callback."""

    def __init__(
        self,
        on_event: Callable[[Any], None],
        on_error: Callable[[MethodCallError], None] | None,
    ) -> None:
        self._on_event = on_event
        self._on_error = on_error
        self.ended = False

    def success(self, event: Any) -> None:
        if not self.ended:
            self._on_event(event)

    def error(self, code: str, message: str | None, details: Any = None) -> None:
        if not self.ended and self._on_error is not None:
            self._on_error(MethodCallError(code, message, details))

    def end_of_stream(self) -> None:
        self.ended = True


class EventChannel:
    """Named event stream between a producer and one host subscriber."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._handler: StreamHandler | None = None
        self._sink: _ChannelSink | None = None
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"EventChannel(name={self.name!r}, listening={self.listening})"

    @property
    def listening(self) -> bool:
        return self._sink is not None

    def set_stream_handler(self, handler: StreamHandler | None) -> None:
        with self._lock:
            self._handler = handler

    def listen(
        self,
        on_event: Callable[[Any], None],
        on_error: Callable[[MethodCallError], None] | None = None,
        arguments: Any = None,
    ) -> None:
        """Subscribe the host; replaces any previous subscription."""
        with self._lock:
            handler = self._handler
            if handler is None:
                raise RuntimeError(f"No stream handler on channel {self.name}")
            self._sink = _ChannelSink(on_event, on_error)
            sink = self._sink
        handler.on_listen(arguments, sink)

    def cancel(self, arguments: Any = None) -> None:
        """Unsubscribe the host."""
        with self._lock:
            handler = self._handler
            sink = self._sink
            self._sink = None
        if sink is not None:
            sink.end_of_stream()
            if handler is not None:
                handler.on_cancel(arguments)


class ChannelRegistry:
    """Event channels by name."""

    def __init__(self) -> None:
        self._channels: dict[str, EventChannel] = {}
        self._lock = threading.Lock()

    def channel(self, name: str) -> EventChannel:
        """Get or create the channel called ``name``."""
        with self._lock:
            if name not in self._channels:
                self._channels[name] = EventChannel(name)
            return self._channels[name]

    def get(self, name: str) -> EventChannel | None:
        with self._lock:
            return self._channels.get(name)

    def names(self) -> list[str]:
        with self._lock:
            return list(self._channels)


# =============================================================================
# Camera events
# =============================================================================


class CameraEventType(StrEnum):
    """Names of events sent to the host camera listener."""

    INITIALIZED = "cameraInitialized"
    CLOSING = "cameraClosing"
    ERROR = "cameraError"
    ORIENTATION_CHANGED = "deviceOrientationChanged"
    TILTS_CHANGED = "deviceTiltsChanged"
    LOG_INFO = "deviceLogInfo"
    LOG_ERROR = "deviceLogError"


@runtime_checkable
class CameraEventListener(Protocol):  # pragma: no cover
    """Host-side receiver of camera and device events."""

    def on_event(self, event: str, payload: dict[str, Any]) -> None:
        """Handle one event."""
        ...


class RecordingEventListener:
    """Listener keeping every event, for hosts that poll and for tests."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)

    def on_event(self, event: str, payload: dict[str, Any]) -> None:
        with self._changed:
            self.events.append((event, payload))
            self._changed.notify_all()

    def of_type(self, event: str) -> list[dict[str, Any]]:
        with self._lock:
            return [p for name, p in self.events if name == event]

    def wait_for(self, event: str, timeout: float = 5.0) -> dict[str, Any] | None:
        """Block until an ``event`` arrives; returns its latest payload."""
        deadline = time.monotonic() + timeout
        with self._changed:
            while True:
                matches = [p for name, p in self.events if name == event]
                if matches:
                    return matches[-1]
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._changed.wait(remaining)


class EventMessenger:
    """Publishes camera events and method results on the main executor.

    Args:
        main: Executor for the host's main thread.
        listener: Host receiver of camera/device events; None drops them.
    """

    def __init__(
        self,
        main: MainThreadExecutor,
        listener: CameraEventListener | None = None,
    ) -> None:
        self._main = main
        self._listener = listener

    def __repr__(self) -> str:
        return f"EventMessenger(main={type(self._main).__name__})"

    def send_camera_initialized(
        self,
        preview_width: int,
        preview_height: int,
        exposure_mode: str,
        focus_mode: str,
        exposure_point_supported: bool,
        focus_point_supported: bool,
    ) -> None:
        self._send(
            CameraEventType.INITIALIZED,
            {
                "previewWidth": preview_width,
                "previewHeight": preview_height,
                "exposureMode": exposure_mode,
                "focusMode": focus_mode,
                "exposurePointSupported": exposure_point_supported,
                "focusPointSupported": focus_point_supported,
            },
        )

    def send_camera_closing(self) -> None:
        self._send(CameraEventType.CLOSING, {})

    def send_camera_error(self, description: str | None) -> None:
        payload = {} if description is None else {"description": description}
        self._send(CameraEventType.ERROR, payload)

    def send_device_orientation_changed(self, orientation: DeviceOrientation) -> None:
        self._send(
            CameraEventType.ORIENTATION_CHANGED,
            {"orientation": orientation.value},
        )

    def send_device_tilts_changed(self, tilts: DeviceTilts) -> None:
        self._send(CameraEventType.TILTS_CHANGED, tilts.to_map())

    def send_device_log_info(self, message: str) -> None:
        self._send(CameraEventType.LOG_INFO, {"message": message})

    def send_device_log_error(self, message: str) -> None:
        self._send(CameraEventType.LOG_ERROR, {"message": message})

    def finish(self, result: MethodResult, value: Any = None) -> None:
        """Complete a method call with a value on the main thread."""
        self._main.execute(lambda: result.success(value))

    def error(
        self,
        result: MethodResult,
        code: str,
        message: str | None,
        details: Any = None,
    ) -> None:
        """Complete a method call with an error on the main thread."""
        self._main.execute(lambda: result.error(code, message, details))

    def send_to_sink(self, sink: EventSink | None, event: Any) -> None:
        """Deliver an event to a stream sink on the main thread, if any."""
        if sink is None:
            return
        self._main.execute(lambda: sink.success(event))

    def _send(self, event: CameraEventType, payload: dict[str, Any]) -> None:
        listener = self._listener
        if listener is None:
            return
        name = str(event)
        self._main.execute(lambda: listener.on_event(name, payload))
