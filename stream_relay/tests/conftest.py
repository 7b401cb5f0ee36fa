"""
Pytest configuration and fixtures for stream_relay tests.

Process tests run against a tiny stand-in for the media server: a Python
script that reads its behaviour from FAKE_SERVER_MODE.
"""

import stat
import sys
import threading
import time
from pathlib import Path
from typing import List, Optional

import pytest

from stream_relay import Platform, PlatformCredential
from stream_relay.model import ProcessHandle


FAKE_SERVER = """#!{python}
import os, signal, subprocess, sys, time

mode = os.environ.get("FAKE_SERVER_MODE", "serve")

if mode == "exit":
    sys.exit(int(os.environ.get("FAKE_SERVER_EXIT_CODE", "1")))
if mode == "stubborn":
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
if mode == "children":
    child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(600)"])
    with open(os.environ["FAKE_SERVER_CHILD_PID"], "w") as f:
        f.write(str(child.pid))
    signal.signal(signal.SIGTERM, lambda *a: sys.exit(0))

print("fake media server ready", flush=True)
while True:
    time.sleep(0.05)
"""


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "posix: needs POSIX process groups and shebang scripts"
    )


def pytest_collection_modifyitems(config, items):
    if sys.platform != "win32":
        return
    skip = pytest.mark.skip(reason="fake media server needs a POSIX shell")
    for item in items:
        if "posix" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def fake_server(tmp_path) -> Path:
    """Executable fake media server script."""
    path = tmp_path / "bin" / "fake-nginx"
    path.parent.mkdir()
    path.write_text(FAKE_SERVER.format(python=sys.executable))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def server_mode(monkeypatch):
    """Select the fake server behaviour for processes spawned by this test."""
    def select(mode: str, **extra: str):
        monkeypatch.setenv("FAKE_SERVER_MODE", mode)
        for key, value in extra.items():
            monkeypatch.setenv(key, value)
    select("serve")
    return select


@pytest.fixture
def twitch_only():
    return [PlatformCredential(Platform.TWITCH, "abc123")]


@pytest.fixture
def all_platforms():
    return [
        PlatformCredential(Platform.KICK, "kick-key"),
        PlatformCredential(Platform.TWITCH, "twitch-key"),
        PlatformCredential(Platform.YOUTUBE, "yt-key"),
    ]


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll until predicate() is true or timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


# =============================================================================
# Stubs
# =============================================================================

class _FakeProcess:
    def __init__(self):
        self.returncode: Optional[int] = None

    def poll(self):
        return self.returncode


class StubSupervisor:
    """In-memory supervisor: records calls, never spawns anything."""

    def __init__(self, calls: Optional[List[str]] = None):
        self.calls = calls if calls is not None else []
        self.alive = False
        self.code: Optional[int] = None
        self.start_error: Optional[Exception] = None
        self.stop_error: Optional[Exception] = None
        self.started_with: List[str] = []
        self._lock = threading.Lock()
        self._next_pid = 4000

    def start(self, config_text: str) -> ProcessHandle:
        self.calls.append("supervisor.start")
        if self.start_error is not None:
            raise self.start_error
        self.started_with.append(config_text)
        with self._lock:
            self.alive = True
            self.code = None
            self._next_pid += 1
            pid = self._next_pid
        return ProcessHandle(pid=pid, executable="nginx", config_path="nginx.conf",
                             started_at=time.time(), process=_FakeProcess())

    def is_alive(self, handle=None) -> bool:
        return self.alive

    def exit_code(self) -> Optional[int]:
        return self.code

    def die(self, code: int = 1) -> None:
        with self._lock:
            self.alive = False
            self.code = code

    def stop(self, handle=None, timeout: float = 5.0) -> None:
        self.calls.append("supervisor.stop")
        self.alive = False
        if self.stop_error is not None:
            raise self.stop_error

    def output_tail(self, lines: int = 20) -> str:
        return ""


@pytest.fixture
def call_log():
    """Shared call order recorder."""
    return []


@pytest.fixture
def stub_supervisor(call_log):
    return StubSupervisor(call_log)


@pytest.fixture
def poll_until():
    return wait_for
