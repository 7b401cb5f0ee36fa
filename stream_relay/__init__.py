"""
Stream Relay

Relay orchestration engine: takes one local RTMP ingest and fans it out to
several streaming platforms through an nginx-rtmp media server that execs
one ffmpeg transcoder per platform.

Features:
- Injection-safe media server config generation (pure, deterministic)
- Media server lifecycle with graceful stop and forced process-tree kill
- Background liveness monitor publishing status events
- Single facade with validation and start/stop ordering guarantees

Usage:
    from stream_relay import (
        RelayController, PlatformCredential, Platform, load_settings,
    )

    controller = RelayController(load_settings())
    controller.add_listener(lambda event: print(event.new_state, event.detail))
    controller.start([
        PlatformCredential(Platform.TWITCH, twitch_key),
        PlatformCredential(Platform.YOUTUBE, youtube_key),
    ])
    print(controller.ingest_url)   # point the broadcaster here
    ...
    controller.stop()
"""

from .errors import (
    RelayError,
    ConfigurationError,
    NoPlatformsConfigured,
    UnsupportedPlatformError,
    DuplicatePlatform,
    InvalidStreamKey,
    InvalidSetting,
    ProcessError,
    ExecutableNotFound,
    SpawnFailed,
    ConfigWriteFailed,
    AlreadyRunning,
    StopTimeoutExceeded,
    NotRunning,
    RuntimeFailure,
    redact,
)
from .model import (
    Platform,
    PlatformCredential,
    EncodeProfile,
    PlatformTarget,
    RelayConfig,
    RelayState,
    RelaySession,
    StatusEvent,
    ProcessHandle,
)
from .profiles import DEFAULT_TARGETS, default_targets, apply_overrides
from .config_gen import generate_config, scan_config
from .fsm import MonitorState, on_started, on_poll, on_stopped
from .supervisor import ProcessSupervisor
from .monitor import RelayMonitor
from .controller import RelayController
from .settings import RelaySettings, load_settings, DEFAULT_CONFIG_PATH

__all__ = [
    # Errors
    "RelayError",
    "ConfigurationError",
    "NoPlatformsConfigured",
    "UnsupportedPlatformError",
    "DuplicatePlatform",
    "InvalidStreamKey",
    "InvalidSetting",
    "ProcessError",
    "ExecutableNotFound",
    "SpawnFailed",
    "ConfigWriteFailed",
    "AlreadyRunning",
    "StopTimeoutExceeded",
    "NotRunning",
    "RuntimeFailure",
    "redact",
    # Model
    "Platform",
    "PlatformCredential",
    "EncodeProfile",
    "PlatformTarget",
    "RelayConfig",
    "RelayState",
    "RelaySession",
    "StatusEvent",
    "ProcessHandle",
    # Profiles
    "DEFAULT_TARGETS",
    "default_targets",
    "apply_overrides",
    # Config generation
    "generate_config",
    "scan_config",
    # Monitor FSM
    "MonitorState",
    "on_started",
    "on_poll",
    "on_stopped",
    # Engine
    "ProcessSupervisor",
    "RelayMonitor",
    "RelayController",
    # Settings
    "RelaySettings",
    "load_settings",
    "DEFAULT_CONFIG_PATH",
]

__version__ = "1.0.0"
