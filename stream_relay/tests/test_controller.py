"""
Tests for RelayController: validation, lifecycle ordering, failures, secrecy.

Most tests use the stub supervisor from conftest; TestWithProcess runs the
whole engine against the fake media server.
"""

import logging

import pytest

from stream_relay import (
    AlreadyRunning,
    DuplicatePlatform,
    NoPlatformsConfigured,
    Platform,
    PlatformCredential,
    RelayController,
    RelayMonitor,
    RelaySettings,
    RelayState,
    SpawnFailed,
    StopTimeoutExceeded,
)

INTERVAL = 0.02
SECRET = "sk_live_9f8e7d6c5b4a"


class RecordingMonitor(RelayMonitor):
    """RelayMonitor that records when it is stopped."""

    def __init__(self, supervisor, calls):
        super().__init__(supervisor, poll_interval=INTERVAL)
        self.calls = calls

    def stop(self, timeout=None):
        self.calls.append("monitor.stop")
        super().stop(timeout)


@pytest.fixture
def settings(tmp_path):
    return RelaySettings(runtime_dir=tmp_path / "run", poll_interval=INTERVAL)


@pytest.fixture
def events():
    return []


@pytest.fixture
def controller(settings, stub_supervisor, call_log, events):
    ctrl = RelayController(
        settings,
        supervisor=stub_supervisor,
        monitor_factory=lambda sup: RecordingMonitor(sup, call_log),
    )
    ctrl.add_listener(events.append)
    yield ctrl
    if ctrl.state != RelayState.IDLE:
        ctrl.stop()


@pytest.fixture
def secret_creds():
    return [PlatformCredential(Platform.TWITCH, SECRET)]


def _states(events):
    return [e.new_state for e in events]


# =============================================================================
# Validation
# =============================================================================

class TestValidation:

    def test_no_credentials(self, controller, stub_supervisor, events, settings):
        with pytest.raises(NoPlatformsConfigured):
            controller.start([])
        assert stub_supervisor.calls == []
        assert controller.state == RelayState.IDLE
        assert events == []
        assert not settings.runtime_dir.exists()

    def test_blank_credentials(self, controller, stub_supervisor):
        with pytest.raises(NoPlatformsConfigured):
            controller.start([
                PlatformCredential(Platform.TWITCH, ""),
                PlatformCredential(Platform.YOUTUBE, "   "),
            ])
        assert stub_supervisor.calls == []

    def test_duplicate_platform(self, controller, stub_supervisor):
        with pytest.raises(DuplicatePlatform):
            controller.start([
                PlatformCredential(Platform.TWITCH, "a"),
                PlatformCredential(Platform.TWITCH, "b"),
            ])
        assert stub_supervisor.calls == []

    def test_render_config(self, controller, twitch_only):
        text = controller.render_config(twitch_only, listen_port=1940)
        assert "listen 1940;" in text
        assert '"rtmp://live.twitch.tv/app/abc123"' in text

    def test_profile_overrides_applied(self, tmp_path, stub_supervisor, twitch_only):
        settings = RelaySettings(
            runtime_dir=tmp_path,
            profile_overrides={"twitch": {"video_bitrate_kbps": 4500}},
        )
        ctrl = RelayController(settings, supervisor=stub_supervisor)
        assert "-b:v 4500k" in ctrl.render_config(twitch_only)


# =============================================================================
# Lifecycle
# =============================================================================

class TestLifecycle:

    def test_start(self, controller, stub_supervisor, events, twitch_only):
        session = controller.start(twitch_only)

        assert session.state == RelayState.RUNNING
        assert session.pid is not None
        assert session.config.platforms == [Platform.TWITCH]
        assert session.ingest_url == "rtmp://localhost:1935/live"
        assert controller.current_status() is session
        assert _states(events) == [RelayState.STARTING, RelayState.RUNNING]
        assert "abc123" in stub_supervisor.started_with[0]

    def test_start_uses_port_override(self, controller, stub_supervisor, twitch_only):
        session = controller.start(twitch_only, listen_port=1999)
        assert session.config.listen_port == 1999
        assert "listen 1999;" in stub_supervisor.started_with[0]
        assert controller.ingest_url == "rtmp://localhost:1999/live"

    def test_ingest_url_falls_back_to_settings(self, controller, twitch_only):
        assert controller.ingest_url == "rtmp://localhost:1935/live"
        controller.start(twitch_only, listen_port=1999)
        controller.stop()
        assert controller.ingest_url == "rtmp://localhost:1935/live"

    def test_already_running_leaves_session(self, controller, stub_supervisor, twitch_only, events):
        session = controller.start(twitch_only)
        with pytest.raises(AlreadyRunning):
            controller.start([PlatformCredential(Platform.KICK, "other")])
        assert controller.current_status() is session
        assert stub_supervisor.calls == ["supervisor.start"]
        assert _states(events) == [RelayState.STARTING, RelayState.RUNNING]

    def test_stop_cancels_monitor_before_process(self, controller, call_log, events, twitch_only):
        controller.start(twitch_only)
        controller.stop()

        assert call_log == ["supervisor.start", "monitor.stop", "supervisor.stop"]
        assert controller.state == RelayState.IDLE
        assert _states(events) == [
            RelayState.STARTING, RelayState.RUNNING, RelayState.STOPPING, RelayState.IDLE,
        ]

    def test_stop_when_idle_is_noop(self, controller, call_log, events):
        controller.stop()
        assert call_log == []
        assert events == []

    def test_restart_after_stop(self, controller, twitch_only):
        controller.start(twitch_only)
        controller.stop()
        session = controller.start(twitch_only)
        assert session.state == RelayState.RUNNING

    def test_stop_error_still_reaches_idle(self, controller, stub_supervisor, twitch_only):
        controller.start(twitch_only)
        stub_supervisor.stop_error = StopTimeoutExceeded("media server did not exit")
        with pytest.raises(StopTimeoutExceeded):
            controller.stop()
        assert controller.state == RelayState.IDLE
        assert "StopTimeoutExceeded" in controller.current_status().detail

    def test_listener_errors_are_contained(self, controller, twitch_only):
        def broken(event):
            raise RuntimeError("listener bug")

        controller.add_listener(broken)
        assert controller.start(twitch_only).state == RelayState.RUNNING


# =============================================================================
# Failures
# =============================================================================

class TestFailures:

    def test_spawn_failure(self, controller, stub_supervisor, events, twitch_only):
        stub_supervisor.start_error = SpawnFailed("media server exited during startup with code 1", exit_code=1)
        with pytest.raises(SpawnFailed):
            controller.start(twitch_only)

        assert controller.state == RelayState.FAILED
        assert _states(events) == [RelayState.STARTING, RelayState.FAILED]
        assert events[-1].exit_code == 1
        assert events[-1].detail.startswith("SpawnFailed:")

    def test_runtime_failure(self, controller, stub_supervisor, events, twitch_only, poll_until):
        controller.start(twitch_only)
        stub_supervisor.die(code=1)

        assert poll_until(lambda: controller.state == RelayState.FAILED)
        failed = [e for e in events if e.new_state == RelayState.FAILED]
        assert len(failed) == 1
        assert failed[0].previous_state == RelayState.RUNNING
        assert failed[0].exit_code == 1

    def test_acknowledge_failure(self, controller, stub_supervisor, call_log, twitch_only, poll_until):
        controller.start(twitch_only)
        stub_supervisor.die()
        assert poll_until(lambda: controller.state == RelayState.FAILED)

        controller.acknowledge_failure()
        assert controller.state == RelayState.IDLE
        assert call_log[-1] == "supervisor.stop"

    def test_acknowledge_when_not_failed_is_noop(self, controller, call_log, twitch_only):
        controller.start(twitch_only)
        controller.acknowledge_failure()
        assert controller.state == RelayState.RUNNING
        assert call_log == ["supervisor.start"]

    def test_start_from_failed(self, controller, stub_supervisor, events, twitch_only, poll_until):
        controller.start(twitch_only)
        stub_supervisor.die()
        assert poll_until(lambda: controller.state == RelayState.FAILED)

        session = controller.start(twitch_only)
        assert session.state == RelayState.RUNNING
        assert _states(events)[-3:] == [RelayState.IDLE, RelayState.STARTING, RelayState.RUNNING]

    def test_no_failure_after_deliberate_stop(self, controller, stub_supervisor, events, twitch_only):
        controller.start(twitch_only)
        controller.stop()
        stub_supervisor.die()
        assert RelayState.FAILED not in _states(events)


# =============================================================================
# Secrecy
# =============================================================================

class TestSecrets:

    def test_key_never_logged_or_published(self, controller, stub_supervisor, events, secret_creds,
                                          caplog, poll_until):
        caplog.set_level(logging.DEBUG)
        controller.start(secret_creds)
        stub_supervisor.die()
        assert poll_until(lambda: controller.state == RelayState.FAILED)
        controller.start(secret_creds)
        controller.stop()

        assert SECRET not in caplog.text
        for event in events:
            assert SECRET not in repr(event)
            assert SECRET not in (event.detail or "")
        assert SECRET not in repr(controller.current_status())

    def test_process_error_detail_is_redacted(self, controller, stub_supervisor, events, secret_creds, caplog):
        caplog.set_level(logging.DEBUG)
        stub_supervisor.start_error = SpawnFailed(f"nginx: bad url rtmp://live.twitch.tv/app/{SECRET}")
        with pytest.raises(SpawnFailed):
            controller.start(secret_creds)

        assert SECRET not in controller.current_status().detail
        assert SECRET not in events[-1].detail
        assert SECRET not in caplog.text


# =============================================================================
# Whole engine against the fake media server
# =============================================================================

@pytest.mark.posix
class TestWithProcess:

    @pytest.fixture
    def real_controller(self, tmp_path, fake_server, server_mode, events):
        settings = RelaySettings(
            media_server=str(fake_server),
            runtime_dir=tmp_path / "run",
            poll_interval=INTERVAL,
            stop_timeout=2.0,
            startup_grace=0.0,
        )
        ctrl = RelayController(settings)
        ctrl.add_listener(events.append)
        yield ctrl
        ctrl.stop()

    def test_start_and_stop(self, real_controller, twitch_only, events):
        session = real_controller.start(twitch_only)
        assert real_controller.supervisor.is_alive()
        assert session.pid == real_controller.supervisor.handle.pid

        real_controller.stop()
        assert not real_controller.supervisor.is_alive()
        assert RelayState.FAILED not in _states(events)
        assert real_controller.state == RelayState.IDLE

    def test_crash_reported(self, real_controller, server_mode, twitch_only, poll_until):
        server_mode("exit", FAKE_SERVER_EXIT_CODE="4")
        real_controller.start(twitch_only)
        assert poll_until(lambda: real_controller.state == RelayState.FAILED)
