"""Still capture state machine.

The preview and precapture requests report every capture result to
``CameraCaptureCallback``, which feeds the AE/AF states through the pure
reducer ``next_transition``. Two timeouts, both restarted when a picture
is requested, force progress when a camera never reports convergence:

    PREVIEW --take_picture--> WAITING_PRECAPTURE_START
    WAITING_PRECAPTURE_START --AE precapture/flash/converged or timeout--> WAITING_PRECAPTURE_DONE
    WAITING_PRECAPTURE_DONE --AE not precapture or timeout--> WAITING_CONVERGED
    WAITING_CONVERGED --AE and AF settled or focusing timeout--> CAPTURING (on_converged)
    CAPTURING --still saved--> PREVIEW

A missing AE or AF state in a result counts as settled.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from camera_scanner.drivers.cameras.types import AeState, AfState, CaptureResult
from camera_scanner.observability import get_logger

logger = get_logger(__name__)

DEFAULT_PRECAPTURE_TIMEOUT_MS = 3000
DEFAULT_PRE_CAPTURE_FOCUSING_TIMEOUT_MS = 3000

_PRECAPTURE_STARTED = (AeState.CONVERGED, AeState.PRECAPTURE, AeState.FLASH_REQUIRED)
_AE_SETTLED = (AeState.CONVERGED, AeState.FLASH_REQUIRED, AeState.LOCKED)
_AF_SETTLED = (
    AfState.FOCUSED_LOCKED,
    AfState.NOT_FOCUSED_LOCKED,
    AfState.INACTIVE,
    AfState.PASSIVE_FOCUSED,
    AfState.PASSIVE_UNFOCUSED,
)
_AF_LOCKED = (AfState.FOCUSED_LOCKED, AfState.NOT_FOCUSED_LOCKED)


@runtime_checkable
class Clock(Protocol):  # pragma: no cover
    """Monotonic time source (injectable for testing).

    Example:
        class FakeClock:
            def __init__(self):
                self.now = 0.0

            def monotonic(self) -> float:
                return self.now
    """

    def monotonic(self) -> float:
        """Return monotonic time in seconds."""
        ...


class SystemClock:
    """Clock backed by time.monotonic()."""

    def monotonic(self) -> float:
        return time.monotonic()


class Timeout:
    """Deadline that restarts on ``reset()``.

    Args:
        timeout_ms: Budget in milliseconds.
        clock: Time source.
    """

    def __init__(self, timeout_ms: int, clock: Clock) -> None:
        self.timeout_ms = timeout_ms
        self._clock = clock
        self._started = clock.monotonic()

    def __repr__(self) -> str:
        return f"Timeout(timeout_ms={self.timeout_ms}, expired={self.is_expired})"

    def reset(self) -> None:
        self._started = self._clock.monotonic()

    @property
    def elapsed_ms(self) -> float:
        return (self._clock.monotonic() - self._started) * 1000.0

    @property
    def is_expired(self) -> bool:
        return self.elapsed_ms > self.timeout_ms


class CaptureTimeouts:
    """Precapture metering and pre-capture focusing deadlines."""

    def __init__(
        self,
        precapture_ms: int = DEFAULT_PRECAPTURE_TIMEOUT_MS,
        pre_capture_focusing_ms: int = DEFAULT_PRE_CAPTURE_FOCUSING_TIMEOUT_MS,
        clock: Clock | None = None,
    ) -> None:
        self.clock = clock or SystemClock()
        self.precapture = Timeout(precapture_ms, self.clock)
        self.pre_capture_focusing = Timeout(pre_capture_focusing_ms, self.clock)

    def reset(self) -> None:
        self.precapture.reset()
        self.pre_capture_focusing.reset()


class CaptureState(Enum):
    PREVIEW = "preview"
    WAITING_FOCUS = "waitingFocus"
    WAITING_PRECAPTURE_START = "waitingPrecaptureStart"
    WAITING_PRECAPTURE_DONE = "waitingPrecaptureDone"
    WAITING_CONVERGED = "waitingConverged"
    CAPTURING = "capturing"


class CaptureAction(Enum):
    """Side effect requested by a transition."""

    NONE = "none"
    CONVERGED = "converged"
    PRECAPTURE = "precapture"


@dataclass(frozen=True)
class Transition:
    """Reducer output; ``state`` None means stay."""

    state: CaptureState | None = None
    action: CaptureAction = CaptureAction.NONE
    timed_out: bool = False


_STAY = Transition()


def _focus_done(ae_state: AeState | None) -> Transition:
    if ae_state is None or ae_state == AeState.CONVERGED:
        return Transition(CaptureState.CAPTURING, CaptureAction.CONVERGED)
    return Transition(None, CaptureAction.PRECAPTURE)


def next_transition(
    state: CaptureState,
    ae_state: AeState | None,
    af_state: AfState | None,
    timeouts: CaptureTimeouts,
) -> Transition:
    """Pure step of the capture state machine for one capture result."""
    if state == CaptureState.WAITING_FOCUS:
        if af_state is None:
            return _STAY
        if af_state in _AF_LOCKED:
            return _focus_done(ae_state)
        if timeouts.pre_capture_focusing.is_expired:
            t = _focus_done(ae_state)
            return Transition(t.state, t.action, timed_out=True)
        return _STAY

    if state == CaptureState.WAITING_PRECAPTURE_START:
        if ae_state is None or ae_state in _PRECAPTURE_STARTED:
            return Transition(CaptureState.WAITING_PRECAPTURE_DONE)
        if timeouts.precapture.is_expired:
            return Transition(CaptureState.WAITING_PRECAPTURE_DONE, timed_out=True)
        return _STAY

    if state == CaptureState.WAITING_PRECAPTURE_DONE:
        if ae_state is None or ae_state != AeState.PRECAPTURE:
            return Transition(CaptureState.WAITING_CONVERGED)
        if timeouts.precapture.is_expired:
            return Transition(CaptureState.WAITING_CONVERGED, timed_out=True)
        return _STAY

    if state == CaptureState.WAITING_CONVERGED:
        ae_ok = ae_state is None or ae_state in _AE_SETTLED
        af_ok = af_state is None or af_state in _AF_SETTLED
        if ae_ok and af_ok:
            return Transition(CaptureState.CAPTURING, CaptureAction.CONVERGED)
        if timeouts.pre_capture_focusing.is_expired:
            return Transition(
                CaptureState.CAPTURING, CaptureAction.CONVERGED, timed_out=True
            )
        return _STAY

    return _STAY


@runtime_checkable
class CaptureStateListener(Protocol):  # pragma: no cover
    """Receives the actions of the capture state machine."""

    def on_converged(self) -> None:
        """AE/AF settled; take the still picture now."""
        ...

    def on_precapture(self) -> None:
        """Focus settled but exposure did not; run the precapture sequence."""
        ...


@dataclass
class CaptureProperties:
    """Last AE/AF states seen, for diagnostics."""

    last_ae_state: AeState | None = None
    last_af_state: AfState | None = None
    results_seen: int = 0
    timeouts_hit: list[CaptureState] = field(default_factory=list)


class CameraCaptureCallback:
    """Capture callback driving ``next_transition``.

    Runs on the camera worker; the listener is invoked inline.
    """

    def __init__(self, listener: CaptureStateListener, timeouts: CaptureTimeouts) -> None:
        self._listener = listener
        self.timeouts = timeouts
        self.camera_state = CaptureState.PREVIEW
        self.properties = CaptureProperties()

    def __repr__(self) -> str:
        return f"CameraCaptureCallback(state={self.camera_state.value})"

    def set_camera_state(self, state: CaptureState) -> None:
        if state != self.camera_state:
            logger.debug(
                "Capture state changed",
                old=self.camera_state.value,
                new=state.value,
            )
        self.camera_state = state

    def on_capture_progressed(self, session: Any, request: Any, result: CaptureResult) -> None:
        self._process(result)

    def on_capture_completed(self, session: Any, request: Any, result: CaptureResult) -> None:
        self._process(result)

    def _process(self, result: CaptureResult) -> None:
        ae_state = result.ae_state
        af_state = result.af_state
        props = self.properties
        props.last_ae_state = ae_state
        props.last_af_state = af_state
        props.results_seen += 1

        state = self.camera_state
        transition = next_transition(state, ae_state, af_state, self.timeouts)
        if transition.timed_out:
            props.timeouts_hit.append(state)
            logger.warning(
                "Capture timeout forced progress",
                state=state.value,
                ae_state=None if ae_state is None else int(ae_state),
                af_state=None if af_state is None else int(af_state),
            )
        if transition.state is not None:
            self.set_camera_state(transition.state)
        if transition.action == CaptureAction.CONVERGED:
            self._listener.on_converged()
        elif transition.action == CaptureAction.PRECAPTURE:
            self._listener.on_precapture()
