"""Tests for the still capture state machine."""

import pytest

from camera_scanner.devices.capture import (
    CameraCaptureCallback,
    CaptureAction,
    CaptureState,
    CaptureTimeouts,
    Timeout,
    next_transition,
)
from camera_scanner.drivers.cameras.types import (
    AeState,
    AfState,
    CaptureRequest,
    CaptureResult,
    RequestTemplate,
    ResultKey,
)
from tests.helpers import FakeClock


def result(ae=None, af=None) -> CaptureResult:
    values = {}
    if ae is not None:
        values[ResultKey.CONTROL_AE_STATE] = ae
    if af is not None:
        values[ResultKey.CONTROL_AF_STATE] = af
    request = CaptureRequest(RequestTemplate.PREVIEW, {}, ())
    return CaptureResult(request, 0, values)


class _Listener:
    def __init__(self) -> None:
        self.calls: list[str] = []

    def on_converged(self) -> None:
        self.calls.append("converged")

    def on_precapture(self) -> None:
        self.calls.append("precapture")


@pytest.fixture
def timeouts(clock) -> CaptureTimeouts:
    return CaptureTimeouts(3000, 3000, clock)


class TestTimeout:
    """Tests for resettable deadlines."""

    def test_expires_strictly_after_budget(self, clock) -> None:
        timeout = Timeout(100, clock)
        clock.advance_ms(100)
        assert not timeout.is_expired
        clock.advance_ms(1)
        assert timeout.is_expired

    def test_reset_restarts(self, clock) -> None:
        timeout = Timeout(100, clock)
        clock.advance_ms(150)
        timeout.reset()
        assert timeout.elapsed_ms == 0
        assert not timeout.is_expired


class TestWaitingFocus:
    def test_missing_af_state_waits(self, timeouts) -> None:
        t = next_transition(CaptureState.WAITING_FOCUS, AeState.CONVERGED, None, timeouts)
        assert t.state is None
        assert t.action == CaptureAction.NONE

    def test_locked_and_converged_captures(self, timeouts) -> None:
        t = next_transition(
            CaptureState.WAITING_FOCUS, AeState.CONVERGED, AfState.FOCUSED_LOCKED, timeouts
        )
        assert t.state == CaptureState.CAPTURING
        assert t.action == CaptureAction.CONVERGED

    def test_locked_but_not_converged_runs_precapture(self, timeouts) -> None:
        t = next_transition(
            CaptureState.WAITING_FOCUS,
            AeState.SEARCHING,
            AfState.NOT_FOCUSED_LOCKED,
            timeouts,
        )
        assert t.state is None
        assert t.action == CaptureAction.PRECAPTURE

    def test_focusing_timeout_forces_progress(self, timeouts, clock) -> None:
        clock.advance_ms(3001)
        t = next_transition(
            CaptureState.WAITING_FOCUS, None, AfState.ACTIVE_SCAN, timeouts
        )
        assert t.state == CaptureState.CAPTURING
        assert t.timed_out


class TestPrecapture:
    """Tests for the precapture metering states."""

    @pytest.mark.parametrize(
        "ae", [None, AeState.CONVERGED, AeState.PRECAPTURE, AeState.FLASH_REQUIRED]
    )
    def test_start_detected(self, timeouts, ae) -> None:
        t = next_transition(CaptureState.WAITING_PRECAPTURE_START, ae, None, timeouts)
        assert t.state == CaptureState.WAITING_PRECAPTURE_DONE
        assert not t.timed_out

    def test_start_waits_while_searching(self, timeouts) -> None:
        t = next_transition(
            CaptureState.WAITING_PRECAPTURE_START, AeState.SEARCHING, None, timeouts
        )
        assert t.state is None

    def test_start_timeout(self, timeouts, clock) -> None:
        clock.advance_ms(3500)
        t = next_transition(
            CaptureState.WAITING_PRECAPTURE_START, AeState.SEARCHING, None, timeouts
        )
        assert t.state == CaptureState.WAITING_PRECAPTURE_DONE
        assert t.timed_out

    def test_done_when_ae_leaves_precapture(self, timeouts) -> None:
        t = next_transition(
            CaptureState.WAITING_PRECAPTURE_DONE, AeState.CONVERGED, None, timeouts
        )
        assert t.state == CaptureState.WAITING_CONVERGED

    def test_done_waits_during_precapture(self, timeouts) -> None:
        t = next_transition(
            CaptureState.WAITING_PRECAPTURE_DONE, AeState.PRECAPTURE, None, timeouts
        )
        assert t.state is None


class TestWaitingConverged:
    @pytest.mark.parametrize("ae", [None, AeState.CONVERGED, AeState.LOCKED, AeState.FLASH_REQUIRED])
    @pytest.mark.parametrize("af", [None, AfState.INACTIVE, AfState.PASSIVE_FOCUSED, AfState.FOCUSED_LOCKED])
    def test_settled_states_capture(self, timeouts, ae, af) -> None:
        t = next_transition(CaptureState.WAITING_CONVERGED, ae, af, timeouts)
        assert t.state == CaptureState.CAPTURING
        assert t.action == CaptureAction.CONVERGED

    def test_scanning_af_waits(self, timeouts) -> None:
        t = next_transition(
            CaptureState.WAITING_CONVERGED, AeState.CONVERGED, AfState.ACTIVE_SCAN, timeouts
        )
        assert t.state is None

    @pytest.mark.parametrize("state", [CaptureState.PREVIEW, CaptureState.CAPTURING])
    def test_idle_states_ignore_results(self, timeouts, state) -> None:
        t = next_transition(state, AeState.CONVERGED, AfState.FOCUSED_LOCKED, timeouts)
        assert t.state is None
        assert t.action == CaptureAction.NONE


class TestCameraCaptureCallback:
    """Tests for the callback feeding results to the reducer."""

    def test_full_precapture_sequence(self, clock) -> None:
        """Verifies the callback walks the metering states to a capture.

        Arrangement:
        Callback in WAITING_PRECAPTURE_START with a recording listener.

        Action:
        Deliver PRECAPTURE, PRECAPTURE, CONVERGED AE results.

        Assertion Strategy:
        States pass through DONE and CONVERGED to CAPTURING and the
        listener is told to take the picture exactly once.
        """
        listener = _Listener()
        callback = CameraCaptureCallback(listener, CaptureTimeouts(clock=clock))
        callback.set_camera_state(CaptureState.WAITING_PRECAPTURE_START)

        callback.on_capture_completed(None, None, result(AeState.PRECAPTURE))
        assert callback.camera_state == CaptureState.WAITING_PRECAPTURE_DONE
        callback.on_capture_completed(None, None, result(AeState.PRECAPTURE))
        assert callback.camera_state == CaptureState.WAITING_PRECAPTURE_DONE
        callback.on_capture_progressed(None, None, result(AeState.CONVERGED))
        assert callback.camera_state == CaptureState.WAITING_CONVERGED
        callback.on_capture_completed(None, None, result(AeState.CONVERGED))

        assert callback.camera_state == CaptureState.CAPTURING
        assert listener.calls == ["converged"]
        assert callback.properties.results_seen == 4

    def test_timeouts_run_from_the_picture_request(self, clock) -> None:
        """Verifies a never-converging AE still captures shortly after 3s.

        Arrangement:
        Timeouts restarted as take_picture does, callback in
        WAITING_PRECAPTURE_START.

        Action:
        Deliver SEARCHING AE results every 100ms for 3.5s.

        Assertion Strategy:
        Both deadlines expire together, so the callback has reached
        CAPTURING and asked for the picture exactly once.
        """
        listener = _Listener()
        timeouts = CaptureTimeouts(clock=clock)
        callback = CameraCaptureCallback(listener, timeouts)
        timeouts.reset()
        callback.set_camera_state(CaptureState.WAITING_PRECAPTURE_START)

        for _ in range(35):
            clock.advance_ms(100)
            callback.on_capture_completed(None, None, result(AeState.SEARCHING))

        assert callback.camera_state == CaptureState.CAPTURING
        assert listener.calls == ["converged"]

    def test_entering_waiting_converged_keeps_focusing_deadline(self, clock) -> None:
        listener = _Listener()
        callback = CameraCaptureCallback(listener, CaptureTimeouts(clock=clock))
        clock.advance_ms(5000)
        callback.set_camera_state(CaptureState.WAITING_CONVERGED)

        callback.on_capture_completed(None, None, result(AeState.SEARCHING))

        assert callback.camera_state == CaptureState.CAPTURING
        assert listener.calls == ["converged"]

    def test_timeouts_are_recorded(self, clock) -> None:
        listener = _Listener()
        callback = CameraCaptureCallback(listener, CaptureTimeouts(100, 100, clock))
        callback.set_camera_state(CaptureState.WAITING_FOCUS)
        clock.advance_ms(200)

        callback.on_capture_completed(None, None, result(AeState.SEARCHING, AfState.ACTIVE_SCAN))

        assert callback.properties.timeouts_hit == [CaptureState.WAITING_FOCUS]
        assert listener.calls == ["precapture"]
        assert callback.properties.last_af_state == AfState.ACTIVE_SCAN
