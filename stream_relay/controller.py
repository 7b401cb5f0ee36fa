"""
RelayController - single facade for the relay engine.

Hides: config generation, the media server process, the monitor thread.
Exposes: start(credentials) / stop() / current_status() and status events.

    controller = RelayController(load_settings())
    controller.add_listener(print)
    controller.start([PlatformCredential(Platform.TWITCH, key)])
    ...
    controller.stop()

Session states:

    IDLE ─▶ STARTING ─▶ RUNNING ─▶ STOPPING ─▶ IDLE
               │           │
               ▼           ▼
             FAILED ◀──────┘   (acknowledge_failure() or stop() ─▶ IDLE)
"""

import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Iterable, List, Optional

from .config_gen import generate_config
from .errors import AlreadyRunning, NoPlatformsConfigured, ProcessError, RelayError, redact
from .model import PlatformCredential, RelayConfig, RelaySession, RelayState, StatusEvent
from .monitor import RelayMonitor
from .profiles import apply_overrides, default_targets
from .settings import RelaySettings
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

Listener = Callable[[StatusEvent], None]

ACTIVE_STATES = (RelayState.STARTING, RelayState.RUNNING, RelayState.STOPPING)


class RelayController:
    """
    Composes ConfigGenerator, ProcessSupervisor and RelayMonitor.

    Validation happens here: nothing is written or spawned unless at least
    one platform has a stream key.
    """

    def __init__(
        self,
        settings: Optional[RelaySettings] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        monitor_factory: Optional[Callable[[ProcessSupervisor], RelayMonitor]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or RelaySettings()
        self.supervisor = supervisor or ProcessSupervisor(
            runtime_dir=self.settings.runtime_dir,
            executable=self.settings.media_server,
            kill_timeout=self.settings.kill_timeout,
            startup_grace=self.settings.startup_grace,
        )
        self._monitor_factory = monitor_factory or self._default_monitor
        self._targets = apply_overrides(default_targets(), self.settings.profile_overrides)
        self._clock = clock

        self._lock = threading.RLock()
        self._session = RelaySession()
        self._monitor: Optional[RelayMonitor] = None
        self._listeners: List[Listener] = []

    def _default_monitor(self, supervisor: ProcessSupervisor) -> RelayMonitor:
        return RelayMonitor(supervisor, poll_interval=self.settings.poll_interval)

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
            for listener in list(self._listeners):
                try:
                    listener(event)
                except Exception as e:
                    logger.error(f"Error in status listener: {e}")

    def _transition_locked(
        self,
        session: RelaySession,
        events: List[StatusEvent],
        exit_code: Optional[int] = None,
    ) -> None:
        previous = self._session.state
        self._session = session
        if previous != session.state:
            events.append(StatusEvent(
                timestamp=self._clock(),
                previous_state=previous,
                new_state=session.state,
                detail=session.detail,
                exit_code=exit_code,
            ))
            logger.info(f"Relay {previous.value} -> {session.state.value}"
                        + (f" ({session.detail})" if session.detail else ""))

    # =========================================================================
    # STATUS
    # =========================================================================

    def current_status(self) -> RelaySession:
        """Snapshot of the current session (immutable)."""
        return self._session

    @property
    def state(self) -> RelayState:
        return self._session.state

    @property
    def ingest_url(self) -> str:
        """URL the broadcaster publishes to (the active session's, else the configured one)."""
        session_url = self._session.ingest_url
        if session_url:
            return session_url
        return f"rtmp://localhost:{self.settings.listen_port}/{self.settings.application_name}"

    # =========================================================================
    # CONFIG
    # =========================================================================

    def build_config(
        self,
        credentials: Iterable[PlatformCredential],
        listen_port: Optional[int] = None,
    ) -> RelayConfig:
        """
        Validate credentials into a RelayConfig.

        Raises:
            NoPlatformsConfigured: no credential has a stream key
            ConfigurationError: duplicate platform, bad key, bad port
        """
        credentials = list(credentials)
        if not any(c.enabled for c in credentials):
            raise NoPlatformsConfigured()
        return RelayConfig.build(
            credentials,
            listen_port=listen_port if listen_port is not None else self.settings.listen_port,
            application_name=self.settings.application_name,
            targets=self._targets,
            transcoder=self.settings.transcoder,
            runtime_dir=str(self.settings.runtime_dir),
        )

    def render_config(
        self,
        credentials: Iterable[PlatformCredential],
        listen_port: Optional[int] = None,
    ) -> str:
        """Config text a start() with these credentials would launch."""
        return generate_config(self.build_config(credentials, listen_port))

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(
        self,
        credentials: Iterable[PlatformCredential],
        listen_port: Optional[int] = None,
    ) -> RelaySession:
        """
        Start relaying to every platform with a stream key.

        Raises:
            NoPlatformsConfigured: before anything is written or spawned
            ConfigurationError: invalid credentials or settings
            AlreadyRunning: a session is active (left untouched)
            ProcessError: the media server could not be started
        """
        events: List[StatusEvent] = []
        try:
            with self._lock:
                if self._session.state in ACTIVE_STATES:
                    raise AlreadyRunning(f"relay is {self._session.state.value}")

                config = self.build_config(credentials, listen_port)
                text = generate_config(config)

                if self._session.state == RelayState.FAILED:
                    self._release_locked(events)

                names = ", ".join(p.value for p in config.platforms)
                self._transition_locked(
                    RelaySession(state=RelayState.STARTING, config=config, detail=f"relaying to {names}"),
                    events,
                )

                try:
                    handle = self.supervisor.start(text)
                except ProcessError as e:
                    detail = f"{e.kind}: {redact(str(e), config.secrets)}"
                    logger.error(f"Relay start failed: {detail}")
                    self._transition_locked(
                        replace(self._session, state=RelayState.FAILED, detail=detail),
                        events,
                        exit_code=getattr(e, "exit_code", None),
                    )
                    raise

                monitor = self._monitor_factory(self.supervisor)
                monitor.add_listener(lambda event, m=monitor: self._on_monitor_event(m, event))
                self._monitor = monitor
                self._transition_locked(
                    RelaySession(
                        state=RelayState.RUNNING,
                        config=config,
                        pid=handle.pid,
                        started_at=handle.started_at,
                        detail=f"relaying to {names}",
                    ),
                    events,
                )
                monitor.start()
                logger.info(f"Relay running on port {config.listen_port} for {names}")
                return self._session
        finally:
            self._publish(events)

    def stop(self) -> None:
        """
        Stop the session and return to IDLE.

        The monitor is cancelled before the media server is terminated, so a
        deliberate stop never shows up as a failure. Cleanup always runs to
        the end; the first error is re-raised afterwards.
        """
        events: List[StatusEvent] = []
        with self._lock:
            if self._session.state in (RelayState.IDLE, RelayState.STOPPING):
                return
            monitor = self._monitor
            self._transition_locked(replace(self._session, state=RelayState.STOPPING, detail="stopping"), events)
        self._publish(events)
        events = []

        first_error: Optional[RelayError] = None
        if monitor is not None:
            monitor.stop()

        try:
            self.supervisor.stop(timeout=self.settings.stop_timeout)
        except ProcessError as e:
            logger.error(f"Error stopping media server: {e}")
            first_error = e

        with self._lock:
            self._monitor = None
            self._transition_locked(
                RelaySession(detail=f"{first_error.kind}: {first_error}" if first_error else "stopped"),
                events,
            )
        self._publish(events)

        if first_error is not None:
            raise first_error

    def acknowledge_failure(self) -> None:
        """Release a FAILED session (FAILED -> IDLE). No-op otherwise."""
        if self._session.state == RelayState.FAILED:
            self.stop()

    def _release_locked(self, events: List[StatusEvent]) -> None:
        """Reap what a failed session left behind before starting anew."""
        if self._monitor is not None:
            self._monitor.stop()
            self._monitor = None
        try:
            self.supervisor.stop(timeout=self.settings.stop_timeout)
        except ProcessError as e:
            logger.warning(f"Cleanup of failed session incomplete: {e}")
        self._transition_locked(RelaySession(detail="failure acknowledged"), events)

    def _on_monitor_event(self, monitor: RelayMonitor, event: StatusEvent) -> None:
        """Monitor thread: surface runtime failures as a FAILED session."""
        if event.new_state != RelayState.FAILED:
            return
        events: List[StatusEvent] = []
        with self._lock:
            # Stale monitor or a stop already in progress
            if monitor is not self._monitor or self._session.state != RelayState.RUNNING:
                return
            self._transition_locked(
                replace(self._session, state=RelayState.FAILED, detail=event.detail),
                events,
                exit_code=event.exit_code,
            )
            logger.error(f"Media server exited unexpectedly (exit code {event.exit_code})")
        self._publish(events)
