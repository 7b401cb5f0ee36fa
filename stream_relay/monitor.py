"""
Relay Monitor - background liveness polling.

One daemon thread asks the supervisor whether the media server is still
alive every `poll_interval` seconds and publishes StatusEvents to
listeners. Transitions come from the pure functions in fsm.py.

Stop ordering: `stop()` sets the cancellation flag under the same lock the
poll loop takes before it may enter FAILED. Once `stop()` has returned,
terminating the process can no longer produce a FAILED event.
"""

import logging
import threading
import time
from typing import Callable, List, Optional

from .fsm import MonitorState, on_poll, on_started, on_stopped
from .model import RelayState, StatusEvent

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0

Listener = Callable[[StatusEvent], None]


class RelayMonitor:
    """
    Watches one media server session.

    The supervisor is only ever read through `is_alive()` and `exit_code()`.
    Listeners run on the monitor thread (or on the caller's thread for
    start/stop events) and must not block.
    """

    def __init__(self, supervisor, poll_interval: float = DEFAULT_POLL_INTERVAL,
                 clock: Callable[[], float] = time.time):
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self.supervisor = supervisor
        self.poll_interval = poll_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._state = MonitorState()
        self._cancel = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._listeners: List[Listener] = []

    # =========================================================================
    # LISTENERS
    # =========================================================================

    def add_listener(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _publish(self, events: List[StatusEvent]) -> None:
        for event in events:
            logger.info(f"Relay monitor: {event.previous_state.value} -> {event.new_state.value} ({event.detail})")
            for listener in list(self._listeners):
                try:
                    listener(event)
                except Exception as e:
                    logger.error(f"Error in status listener: {e}")

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def state(self) -> RelayState:
        return self._state.state

    @property
    def snapshot(self) -> MonitorState:
        return self._state

    @property
    def is_polling(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        """Begin polling (IDLE -> RUNNING)."""
        with self._lock:
            if self.is_polling:
                logger.warning("Relay monitor already polling")
                return
            cancel = threading.Event()
            self._cancel = cancel
            self._state, events = on_started(self._state, self._clock())
            thread = threading.Thread(
                target=self._run, args=(cancel,), name="relay-monitor", daemon=True
            )
            self._thread = thread
        self._publish(events)
        thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Cancel polling and return to IDLE.

        Never emits FAILED. Blocks until the poll thread has exited (or
        `timeout`, default one poll interval plus a second).
        """
        with self._lock:
            self._cancel.set()
            self._state, events = on_stopped(self._state, self._clock())
            thread = self._thread
        self._publish(events)

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.poll_interval + 1.0 if timeout is None else timeout)
            if thread.is_alive():
                logger.warning("Relay monitor thread did not exit in time")

    def _run(self, cancel: threading.Event) -> None:
        """Poll loop (monitor thread)."""
        logger.debug(f"Relay monitor polling every {self.poll_interval}s")
        while not cancel.wait(self.poll_interval):
            alive = self.supervisor.is_alive()
            exit_code = None if alive else self.supervisor.exit_code()

            with self._lock:
                if cancel.is_set():
                    break
                self._state, events = on_poll(self._state, alive, self._clock(), exit_code)
                polling = self._state.is_polling

            self._publish(events)
            if not polling:
                break
        logger.debug("Relay monitor loop exited")
