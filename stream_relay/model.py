"""
Domain Models for the Relay Engine

Immutable data structures for platform credentials, encode profiles,
the relay configuration, session snapshots and status events.

Stream keys only ever live inside PlatformCredential and RelayConfig.
Both keep them out of repr() so they never leak into logs.
"""

import re
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import (
    DuplicatePlatform,
    InvalidSetting,
    InvalidStreamKey,
    UnsupportedPlatformError,
)


# =============================================================================
# PLATFORMS
# =============================================================================

class Platform(Enum):
    """
    Streaming destinations.

    The value doubles as the internal application name in the generated
    media server config. Declaration order is the output order.
    """
    TWITCH = "twitch"
    YOUTUBE = "youtube"
    KICK = "kick"

    @classmethod
    def parse(cls, name: str) -> "Platform":
        """Look up a platform by name, case-insensitive."""
        try:
            return cls(name.strip().lower())
        except ValueError:
            raise UnsupportedPlatformError(f"unsupported platform: {name!r}") from None

    @property
    def order(self) -> int:
        return list(Platform).index(self)

    @property
    def label(self) -> str:
        return {"youtube": "YouTube"}.get(self.value, self.value.capitalize())


def has_control_chars(value: str) -> bool:
    return any(ord(ch) < 0x20 or 0x7F <= ord(ch) <= 0x9F for ch in value)


@dataclass(frozen=True)
class PlatformCredential:
    """A stream key for one platform. Disabled when the key is blank."""
    platform: Platform
    stream_key: str = field(default="", repr=False)

    @property
    def enabled(self) -> bool:
        return bool(self.stream_key.strip())

    def validate(self) -> None:
        """Reject keys that could never be embedded safely."""
        if has_control_chars(self.stream_key):
            # Never echo the key itself
            raise InvalidStreamKey(f"{self.platform.label} stream key contains control characters")


# =============================================================================
# ENCODE PROFILES
# =============================================================================

@dataclass(frozen=True)
class EncodeProfile:
    """Transcoder settings for one platform."""
    video_bitrate_kbps: int
    audio_bitrate_kbps: int = 160
    framerate: int = 30
    keyframe_interval: int = 50
    preset: str = "veryfast"
    tuning: str = "zerolatency"
    audio_sample_rate: int = 44100
    audio_channels: int = 2
    pixel_format: str = "yuv420p"
    extra_args: Tuple[str, ...] = ()

    def __post_init__(self):
        for name in ("video_bitrate_kbps", "audio_bitrate_kbps", "framerate",
                     "keyframe_interval", "audio_sample_rate", "audio_channels"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise InvalidSetting(f"{name} must be a positive integer, got {value!r}")
        for name in ("preset", "tuning", "pixel_format"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value or has_control_chars(value):
                raise InvalidSetting(f"{name} must be a non-empty string without control characters")
        for arg in self.extra_args:
            if has_control_chars(arg):
                raise InvalidSetting("extra transcoder arguments must not contain control characters")


@dataclass(frozen=True)
class PlatformTarget:
    """Where a platform's stream goes and how it is encoded."""
    platform: Platform
    ingest_url: str
    profile: EncodeProfile


# =============================================================================
# RELAY CONFIG
# =============================================================================

APPLICATION_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(frozen=True)
class RelayConfig:
    """
    Everything the config generator needs (immutable).

    Regenerated in full on every start, never mutated.

    Attributes:
        listen_port: Port of the ingest listener
        application_name: Ingest application the broadcaster publishes to
        credentials: Enabled credentials, in platform declaration order
        targets: Ingest URL and encode profile per platform
        transcoder: Transcoder executable invoked by the media server
        runtime_dir: Directory for the media server's pid file and error log
    """
    listen_port: int
    application_name: str = "live"
    credentials: Tuple[PlatformCredential, ...] = ()
    targets: Mapping[Platform, PlatformTarget] = field(default_factory=lambda: MappingProxyType({}))
    transcoder: str = "ffmpeg"
    runtime_dir: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.listen_port, bool) or not isinstance(self.listen_port, int) \
                or not 1 <= self.listen_port <= 65535:
            raise InvalidSetting(f"listen port must be between 1 and 65535, got {self.listen_port!r}")
        if not APPLICATION_NAME_RE.match(self.application_name or ""):
            raise InvalidSetting(f"invalid application name: {self.application_name!r}")
        if not self.transcoder or has_control_chars(self.transcoder):
            raise InvalidSetting("transcoder path must be a non-empty string without control characters")
        if self.runtime_dir is not None and has_control_chars(self.runtime_dir):
            raise InvalidSetting("runtime directory must not contain control characters")

    @classmethod
    def build(
        cls,
        credentials: Iterable[PlatformCredential],
        listen_port: int = 1935,
        application_name: str = "live",
        targets: Optional[Mapping[Platform, PlatformTarget]] = None,
        transcoder: str = "ffmpeg",
        runtime_dir: Optional[str] = None,
    ) -> "RelayConfig":
        """
        Build a config from raw credentials.

        Disabled (blank) credentials are dropped, keys are stripped and
        validated, and duplicate platforms are rejected.
        """
        if targets is None:
            from .profiles import default_targets
            targets = default_targets()

        seen: Dict[Platform, PlatformCredential] = {}
        for cred in credentials:
            if cred.platform in seen:
                raise DuplicatePlatform(f"{cred.platform.label} configured more than once")
            seen[cred.platform] = cred

        enabled: List[PlatformCredential] = []
        for platform in sorted(seen, key=lambda p: p.order):
            cred = seen[platform]
            if not cred.enabled:
                continue
            cred = PlatformCredential(platform, cred.stream_key.strip())
            cred.validate()
            enabled.append(cred)

        return cls(
            listen_port=listen_port,
            application_name=application_name,
            credentials=tuple(enabled),
            targets=MappingProxyType({
                c.platform: targets[c.platform] for c in enabled if c.platform in targets
            }),
            transcoder=transcoder,
            runtime_dir=runtime_dir,
        )

    @property
    def platforms(self) -> List[Platform]:
        return [c.platform for c in self.credentials]

    @property
    def profiles(self) -> Dict[Platform, EncodeProfile]:
        return {p: t.profile for p, t in self.targets.items()}

    @property
    def secrets(self) -> List[str]:
        return [c.stream_key for c in self.credentials]

    @property
    def ingest_url(self) -> str:
        return f"rtmp://localhost:{self.listen_port}/{self.application_name}"


# =============================================================================
# SESSION STATE
# =============================================================================

class RelayState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


@dataclass(frozen=True)
class RelaySession:
    """Snapshot of the current relay session."""
    state: RelayState = RelayState.IDLE
    config: Optional[RelayConfig] = None
    pid: Optional[int] = None
    started_at: Optional[float] = None
    detail: Optional[str] = None

    @property
    def ingest_url(self) -> Optional[str]:
        return self.config.ingest_url if self.config else None

    def uptime(self, now: Optional[float] = None) -> float:
        """Seconds since the media server was started (0 when not started)."""
        if self.started_at is None:
            return 0.0
        return max(0.0, (now if now is not None else time.time()) - self.started_at)


@dataclass(frozen=True)
class StatusEvent:
    """A state transition reported to listeners. Never contains secrets."""
    timestamp: float
    previous_state: RelayState
    new_state: RelayState
    detail: Optional[str] = None
    exit_code: Optional[int] = None


# =============================================================================
# PROCESS HANDLE
# =============================================================================

@dataclass
class ProcessHandle:
    """A launched media server. Owned and manipulated only by the supervisor."""
    pid: int
    executable: str
    config_path: str
    started_at: float
    process: subprocess.Popen = field(repr=False, compare=False)

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode
