"""Tests for method results, event channels and the main loop."""

import threading

import pytest

from camera_scanner.devices.errors import MethodCallError, NotImplementedMethodError
from camera_scanner.devices.messenger import (
    ChannelRegistry,
    EventChannel,
    EventMessenger,
    FutureResult,
    MainLoop,
    RecordingEventListener,
)


class _EchoHandler:
    def __init__(self) -> None:
        self.sink = None
        self.cancelled = False

    def on_listen(self, arguments, sink) -> None:
        self.sink = sink

    def on_cancel(self, arguments) -> None:
        self.cancelled = True


class TestFutureResult:
    """Tests for FutureResult completion."""

    def test_success(self) -> None:
        result = FutureResult("availableCameras")
        result.success([1])
        assert result.future.result(timeout=1) == [1]

    def test_error_raises_method_call_error(self) -> None:
        result = FutureResult("setZoomLevel")
        result.error("ZOOM_ERROR", "out of range", {"zoom": 9})
        with pytest.raises(MethodCallError) as info:
            result.future.result(timeout=1)
        assert info.value.code == "ZOOM_ERROR"
        assert info.value.details == {"zoom": 9}

    def test_not_implemented(self) -> None:
        result = FutureResult("fly")
        result.not_implemented()
        with pytest.raises(NotImplementedMethodError):
            result.future.result(timeout=1)

    def test_first_completion_wins(self) -> None:
        """A second completion is ignored instead of raising InvalidStateError."""
        result = FutureResult("dispose")
        result.success(None)
        result.error("X", "late")
        assert result.future.result(timeout=1) is None


class TestEventChannel:
    """Tests for EventChannel subscription."""

    def test_listen_without_handler_raises(self) -> None:
        with pytest.raises(RuntimeError, match="No stream handler"):
            EventChannel("camera/barcodeStream/0").listen(lambda e: None)

    def test_events_reach_subscriber(self) -> None:
        channel = EventChannel("c")
        handler = _EchoHandler()
        channel.set_stream_handler(handler)
        received = []
        channel.listen(received.append)

        handler.sink.success({"text": "x"})

        assert received == [{"text": "x"}]
        assert channel.listening

    def test_cancel_ends_stream(self) -> None:
        channel = EventChannel("c")
        handler = _EchoHandler()
        channel.set_stream_handler(handler)
        received = []
        channel.listen(received.append)
        sink = handler.sink

        channel.cancel()
        sink.success("late")

        assert received == []
        assert handler.cancelled
        assert not channel.listening

    def test_errors_reach_error_callback(self) -> None:
        channel = EventChannel("c")
        handler = _EchoHandler()
        channel.set_stream_handler(handler)
        errors = []
        channel.listen(lambda e: None, errors.append)
        handler.sink.error("BARCODE", "bad frame")
        assert errors[0].code == "BARCODE"

    def test_registry_reuses_channels(self) -> None:
        registry = ChannelRegistry()
        assert registry.channel("a") is registry.channel("a")
        assert registry.get("b") is None
        assert registry.names() == ["a"]


class TestMainLoop:
    """Tests for the queue-backed main thread."""

    def test_run_pending_runs_in_order(self) -> None:
        loop = MainLoop()
        order = []
        loop.execute(lambda: order.append(1))
        loop.execute(lambda: order.append(2))
        assert loop.run_pending() == 2
        assert order == [1, 2]

    def test_failing_task_does_not_stop_loop(self) -> None:
        loop = MainLoop()
        ran = []

        def boom() -> None:
            raise ValueError("boom")

        loop.execute(boom)
        loop.execute(lambda: ran.append(True))
        assert loop.run_pending() == 2
        assert ran == [True]

    def test_run_until_times_out(self) -> None:
        assert MainLoop().run_until(lambda: False, timeout=0.05) is False

    def test_run_until_runs_tasks_from_other_threads(self) -> None:
        loop = MainLoop()
        done = threading.Event()
        threading.Thread(target=lambda: loop.execute(done.set)).start()
        assert loop.run_until(done.is_set, timeout=2.0)

    def test_run_forever_drains_after_stop(self) -> None:
        loop = MainLoop()
        stop = threading.Event()
        stop.set()
        ran = []
        loop.execute(lambda: ran.append(1))
        loop.run_forever(stop)
        assert ran == [1]


class TestEventMessenger:
    """Tests for event publication."""

    def test_events_wait_for_main_thread(self) -> None:
        """Verifies camera events are delivered on the main executor.

        Arrangement:
        Messenger over a MainLoop that has not run yet.

        Action:
        Send a camera error, then run pending tasks.

        Assertion Strategy:
        Nothing reaches the listener until run_pending().
        """
        loop = MainLoop()
        listener = RecordingEventListener()
        messenger = EventMessenger(loop, listener)

        messenger.send_camera_error("disconnected")
        assert listener.events == []

        loop.run_pending()
        assert listener.events == [("cameraError", {"description": "disconnected"})]

    def test_error_without_description(self, messenger, listener) -> None:
        messenger.send_camera_error(None)
        assert listener.of_type("cameraError") == [{}]

    def test_no_listener_drops_events(self) -> None:
        loop = MainLoop()
        EventMessenger(loop).send_camera_closing()
        assert loop.run_pending() == 0

    def test_send_to_missing_sink_is_noop(self, messenger) -> None:
        messenger.send_to_sink(None, {"text": "x"})

    def test_finish_and_error(self, messenger) -> None:
        ok = FutureResult("a")
        bad = FutureResult("b")
        messenger.finish(ok, 3)
        messenger.error(bad, "cameraAccess", "denied")
        assert ok.future.result(timeout=1) == 3
        with pytest.raises(MethodCallError, match="denied"):
            bad.future.result(timeout=1)

    def test_wait_for_returns_latest(self) -> None:
        listener = RecordingEventListener()
        listener.on_event("cameraClosing", {})
        assert listener.wait_for("cameraClosing", timeout=0.1) == {}
        assert listener.wait_for("cameraError", timeout=0.01) is None
