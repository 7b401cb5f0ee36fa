"""
Relay Monitor State Machine - Pure Functions

All functions are pure: same input = same output, no side effects.
Each returns the new state and the status events to publish; the
RelayMonitor thread is the imperative shell that runs them.

    IDLE ──started──▶ RUNNING ──poll(alive)──▶ RUNNING
                         │
                         └──poll(dead)──▶ FAILED   (emitted once, polling ends)

    any ──stopped──▶ IDLE
"""

from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

from .model import RelayState, StatusEvent

FAILURE_DETAIL = "process exited unexpectedly"
STOPPED_DETAIL = "stopped"
STARTED_DETAIL = "media server started"


@dataclass(frozen=True)
class MonitorState:
    """
    Monitor state (immutable).

    Attributes:
        state: IDLE, RUNNING or FAILED
        polls: Successful liveness checks since start
        last_poll: Timestamp of the last liveness check
        exit_code: Exit code observed on failure
    """
    state: RelayState = RelayState.IDLE
    polls: int = 0
    last_poll: Optional[float] = None
    exit_code: Optional[int] = None

    @property
    def is_polling(self) -> bool:
        return self.state == RelayState.RUNNING


def _event(previous: MonitorState, new: MonitorState, now: float, detail: str) -> StatusEvent:
    return StatusEvent(
        timestamp=now,
        previous_state=previous.state,
        new_state=new.state,
        detail=detail,
        exit_code=new.exit_code,
    )


def on_started(state: MonitorState, now: float) -> Tuple[MonitorState, List[StatusEvent]]:
    """Supervisor start succeeded - begin polling."""
    if state.state == RelayState.RUNNING:
        return state, []
    new_state = MonitorState(state=RelayState.RUNNING, last_poll=now)
    return new_state, [_event(state, new_state, now, STARTED_DETAIL)]


def on_poll(
    state: MonitorState,
    alive: bool,
    now: float,
    exit_code: Optional[int] = None,
) -> Tuple[MonitorState, List[StatusEvent]]:
    """Result of one liveness check."""
    if state.state != RelayState.RUNNING:
        # Polling has ceased (idle or already failed)
        return state, []

    if alive:
        return replace(state, polls=state.polls + 1, last_poll=now), []

    new_state = replace(state, state=RelayState.FAILED, last_poll=now, exit_code=exit_code)
    return new_state, [_event(state, new_state, now, FAILURE_DETAIL)]


def on_stopped(state: MonitorState, now: float) -> Tuple[MonitorState, List[StatusEvent]]:
    """Explicit stop - back to IDLE from any state, never FAILED."""
    if state.state == RelayState.IDLE:
        return state, []
    new_state = MonitorState(state=RelayState.IDLE, last_poll=state.last_poll)
    return new_state, [_event(state, new_state, now, STOPPED_DETAIL)]
