"""
Process Supervisor - owns the media server process.

Start, health-check and stop one media server (nginx with the rtmp module)
together with the transcoder children it execs. At most one process is
owned at a time; nothing outside this class touches the Popen object.
"""

import logging
import os
import shutil
import signal
import subprocess
import sys
import tempfile
import threading
import time
from pathlib import Path
from typing import IO, List, Optional

import psutil

from .errors import (
    AlreadyRunning,
    ConfigWriteFailed,
    ExecutableNotFound,
    NotRunning,
    SpawnFailed,
    StopTimeoutExceeded,
)
from .model import ProcessHandle

logger = logging.getLogger(__name__)

DEFAULT_STOP_TIMEOUT = 5.0
DEFAULT_KILL_TIMEOUT = 2.0
LOG_FILE_NAME = "media-server.log"
CONFIG_FILE_NAME = "nginx.conf"


class ProcessSupervisor:
    """
    Lifecycle of the media server process.

    Usage:
        supervisor = ProcessSupervisor(runtime_dir)
        handle = supervisor.start(config_text)
        supervisor.is_alive()
        supervisor.stop(timeout=5.0)
    """

    def __init__(
        self,
        runtime_dir: Path,
        executable: Optional[str] = None,
        config_path: Optional[Path] = None,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
        startup_grace: float = 0.0,
    ):
        self.runtime_dir = Path(runtime_dir)
        self.config_path = Path(config_path) if config_path else self.runtime_dir / CONFIG_FILE_NAME
        self.log_path = self.runtime_dir / LOG_FILE_NAME
        self.custom_executable = executable
        self.kill_timeout = kill_timeout
        self.startup_grace = startup_grace

        self._lock = threading.Lock()
        self._handle: Optional[ProcessHandle] = None
        self._log_file: Optional[IO[bytes]] = None

    # =========================================================================
    # EXECUTABLE LOOKUP
    # =========================================================================

    def find_executable(self) -> Optional[str]:
        """Find the media server executable."""
        if self.custom_executable:
            custom = Path(self.custom_executable).expanduser()
            if custom.is_file():
                return str(custom)
            # Bare names go through PATH
            return shutil.which(self.custom_executable)

        found = shutil.which("nginx")
        if found:
            return found

        # Common locations, then a copy bundled next to the working directory
        candidates = [
            Path("/usr/sbin/nginx"),
            Path("/usr/local/nginx/sbin/nginx"),
            Path("/usr/local/sbin/nginx"),
            Path("/opt/homebrew/bin/nginx"),
            Path("/usr/local/bin/nginx"),
            Path.cwd() / "nginx" / ("nginx.exe" if sys.platform == "win32" else "nginx"),
        ]
        for candidate in candidates:
            if candidate.is_file():
                return str(candidate)
        return None

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @property
    def handle(self) -> Optional[ProcessHandle]:
        return self._handle

    def start(self, config_text: str) -> ProcessHandle:
        """
        Write the config and launch the media server.

        Raises:
            AlreadyRunning: a live process is already owned
            ExecutableNotFound: no media server binary
            ConfigWriteFailed: the config could not be written
            SpawnFailed: the OS refused to launch it, or it died during startup
        """
        with self._lock:
            if self._handle is not None:
                if self._handle.process.poll() is None:
                    raise AlreadyRunning(f"media server already running (PID: {self._handle.pid})")
                # Previous process died on its own - reap it before reuse
                self._release_locked()

            executable = self.find_executable()
            if not executable:
                raise ExecutableNotFound(
                    "media server executable (nginx) not found; install nginx with the rtmp module "
                    "or set its path explicitly"
                )

            self._write_config(config_text)

            try:
                self._log_file = open(self.log_path, "wb")
            except OSError as e:
                raise SpawnFailed(f"cannot open media server log {self.log_path}: {e.strerror}") from e

            cmd = [executable, "-c", str(self.config_path)]
            try:
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=self._log_file,
                    stderr=subprocess.STDOUT,
                    cwd=str(self.runtime_dir),
                    **_new_group_kwargs(),
                )
            except OSError as e:
                self._close_log()
                raise SpawnFailed(f"failed to launch {executable}: {e.strerror or e}") from e

            self._handle = ProcessHandle(
                pid=process.pid,
                executable=executable,
                config_path=str(self.config_path),
                started_at=time.time(),
                process=process,
            )
            logger.info(f"Launched media server {executable} (PID: {process.pid})")

        if self.startup_grace > 0:
            try:
                code = process.wait(timeout=self.startup_grace)
            except subprocess.TimeoutExpired:
                pass
            else:
                with self._lock:
                    self._release_locked()
                logger.error(f"Media server exited during startup with code {code}")
                raise SpawnFailed(f"media server exited during startup with code {code}", exit_code=code)

        return self._handle

    def is_alive(self, handle: Optional[ProcessHandle] = None) -> bool:
        """Non-blocking liveness check."""
        current = self._handle
        if current is None or (handle is not None and handle is not current):
            return False
        return current.process.poll() is None

    def exit_code(self) -> Optional[int]:
        current = self._handle
        return current.process.poll() if current else None

    def stop(self, handle: Optional[ProcessHandle] = None, timeout: float = DEFAULT_STOP_TIMEOUT) -> None:
        """
        Stop the owned media server.

        Graceful terminate first; after `timeout` the whole process tree is
        killed. The process is always reaped and the handle released.

        Raises:
            NotRunning: `handle` is not the owned process
            StopTimeoutExceeded: even the forced kill could not be reaped
        """
        with self._lock:
            current = self._handle
            if current is None:
                return
            if handle is not None and handle is not current:
                raise NotRunning(f"PID {handle.pid} is not owned by this supervisor")
            try:
                self._terminate_locked(current, timeout)
            finally:
                self._release_locked()

    def _terminate_locked(self, handle: ProcessHandle, timeout: float) -> None:
        process = handle.process
        children = _children(handle.pid)

        try:
            if process.poll() is None:
                logger.info(f"Stopping media server (PID: {handle.pid})")
                try:
                    process.terminate()
                except OSError as e:
                    logger.warning(f"Terminate failed for PID {handle.pid}: {e}")
                try:
                    process.wait(timeout=timeout)
                except subprocess.TimeoutExpired:
                    logger.warning(f"Media server did not exit within {timeout}s, killing process tree")
                    _kill_tree(process, _children(handle.pid) or children, self.kill_timeout)
                    try:
                        process.wait(timeout=self.kill_timeout)
                    except subprocess.TimeoutExpired:
                        logger.error(f"Media server (PID: {handle.pid}) could not be reaped after kill")
                        raise StopTimeoutExceeded(
                            f"media server (PID: {handle.pid}) did not exit within "
                            f"{timeout + self.kill_timeout:.1f}s"
                        ) from None
        finally:
            # Transcoders outliving their parent
            leftovers = [c for c in children if _alive(c)]
            if leftovers:
                logger.info(f"Killing {len(leftovers)} leftover transcoder process(es)")
                _kill_tree(None, leftovers, self.kill_timeout)
        logger.info(f"Media server stopped (exit code {process.returncode})")

    def _release_locked(self) -> None:
        if self._handle is not None:
            try:
                self._handle.process.wait(timeout=0)
            except subprocess.TimeoutExpired:
                pass
        self._handle = None
        self._close_log()

    def _close_log(self) -> None:
        if self._log_file is not None:
            try:
                self._log_file.close()
            except OSError:
                pass
            self._log_file = None

    # =========================================================================
    # CONFIG + OUTPUT
    # =========================================================================

    def _write_config(self, config_text: str) -> None:
        """Replace the config file atomically."""
        try:
            self.runtime_dir.mkdir(parents=True, exist_ok=True)
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=str(self.config_path.parent), prefix=".nginx-", suffix=".conf")
            try:
                with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
                    f.write(config_text)
                # Keys live in here
                os.chmod(tmp, 0o600)
                os.replace(tmp, self.config_path)
            except BaseException:
                try:
                    os.unlink(tmp)
                except OSError:
                    pass
                raise
        except OSError as e:
            raise ConfigWriteFailed(f"cannot write media server config {self.config_path}: {e.strerror or e}") from e
        logger.debug(f"Wrote media server config to {self.config_path}")

    def output_tail(self, lines: int = 20) -> str:
        """Last lines the media server wrote to stdout/stderr."""
        try:
            with open(self.log_path, "rb") as f:
                data = f.read()
        except OSError:
            return ""
        text = data.decode("utf-8", errors="replace")
        return "\n".join(text.splitlines()[-lines:])


# =============================================================================
# PROCESS TREE HELPERS
# =============================================================================

def _new_group_kwargs() -> dict:
    # Own process group so a terminal Ctrl+C does not hit the media server directly
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def _children(pid: int) -> List[psutil.Process]:
    try:
        return psutil.Process(pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return []


def _alive(proc: psutil.Process) -> bool:
    try:
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


def _kill_tree(process: Optional[subprocess.Popen], children: List[psutil.Process], timeout: float) -> None:
    """Kill children first, then the parent, and wait for them."""
    for child in children:
        try:
            child.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
    if process is not None and process.poll() is None:
        try:
            if sys.platform == "win32":
                process.kill()
            else:
                os.killpg(process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            process.kill()
    gone, alive = psutil.wait_procs(children, timeout=timeout)
    if alive:
        logger.warning(f"Processes still alive after kill: {[p.pid for p in alive]}")
