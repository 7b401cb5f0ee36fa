"""
Engine Settings

Load relay engine settings from a YAML file, then apply environment
overrides (a .env file is loaded first when present).

Stream keys are not settings: they are handed to RelayController.start()
by whoever owns them.

Example relay.yaml:

    listen_port: 1935
    application_name: live
    media_server: /usr/sbin/nginx
    transcoder: ffmpeg
    poll_interval: 5
    profiles:
      youtube:
        video_bitrate_kbps: 9000
        extra_args: "-threads 2"
"""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv

from .errors import InvalidSetting

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "stream_relay" / "relay.yaml"
DEFAULT_RUNTIME_DIR = Path.home() / ".cache" / "stream_relay"

ENV_OVERRIDES = {
    "STREAM_RELAY_PORT": "listen_port",
    "STREAM_RELAY_APP": "application_name",
    "STREAM_RELAY_NGINX": "media_server",
    "STREAM_RELAY_FFMPEG": "transcoder",
    "STREAM_RELAY_RUNTIME_DIR": "runtime_dir",
    "STREAM_RELAY_POLL_INTERVAL": "poll_interval",
    "STREAM_RELAY_STOP_TIMEOUT": "stop_timeout",
}


@dataclass(frozen=True)
class RelaySettings:
    """
    Engine settings (immutable).

    Attributes:
        listen_port: Ingest listener port
        application_name: Ingest application the broadcaster publishes to
        media_server: Explicit media server path (None = search)
        transcoder: Transcoder executable used in exec directives
        runtime_dir: Where the generated config, pid file and logs go
        poll_interval: Seconds between liveness checks
        stop_timeout: Graceful shutdown window before the forced kill
        kill_timeout: Secondary bound for reaping after the forced kill
        startup_grace: Seconds the media server must survive after launch
        profile_overrides: Platform name -> EncodeProfile field overrides
    """
    listen_port: int = 1935
    application_name: str = "live"
    media_server: Optional[str] = None
    transcoder: str = "ffmpeg"
    runtime_dir: Path = DEFAULT_RUNTIME_DIR
    poll_interval: float = 5.0
    stop_timeout: float = 5.0
    kill_timeout: float = 2.0
    startup_grace: float = 0.5
    profile_overrides: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)

    def __post_init__(self):
        if not 1 <= int(self.listen_port) <= 65535:
            raise InvalidSetting(f"listen_port must be between 1 and 65535, got {self.listen_port}")
        for name in ("poll_interval", "stop_timeout", "kill_timeout"):
            if float(getattr(self, name)) <= 0:
                raise InvalidSetting(f"{name} must be positive")
        if float(self.startup_grace) < 0:
            raise InvalidSetting("startup_grace must not be negative")


_FIELD_TYPES = {
    "listen_port": int,
    "application_name": str,
    "media_server": str,
    "transcoder": str,
    "runtime_dir": Path,
    "poll_interval": float,
    "stop_timeout": float,
    "kill_timeout": float,
    "startup_grace": float,
}


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    try:
        converted = _FIELD_TYPES[name](value)
    except (TypeError, ValueError):
        raise InvalidSetting(f"invalid value for {name}: {value!r}") from None
    if isinstance(converted, Path):
        converted = converted.expanduser()
    return converted


def settings_from_dict(data: Mapping[str, Any]) -> RelaySettings:
    """Build settings from a parsed YAML mapping."""
    known = {f.name for f in fields(RelaySettings)}
    values: Dict[str, Any] = {}
    for key, value in data.items():
        if key == "profiles":
            if not isinstance(value, Mapping):
                raise InvalidSetting("profiles must be a mapping of platform -> settings")
            overrides = {}
            for name, entry in value.items():
                if entry is None:
                    entry = {}
                if not isinstance(entry, Mapping):
                    raise InvalidSetting(f"profiles.{name} must be a mapping of field -> value")
                overrides[str(name)] = dict(entry)
            values["profile_overrides"] = overrides
        elif key in _FIELD_TYPES:
            values[key] = _coerce(key, value)
        elif key in known:
            values[key] = value
        else:
            logger.warning(f"Ignoring unknown setting: {key}")
    return RelaySettings(**values)


def apply_env(settings: RelaySettings, env: Optional[Mapping[str, str]] = None) -> RelaySettings:
    """Apply STREAM_RELAY_* environment overrides."""
    env = os.environ if env is None else env
    changes: Dict[str, Any] = {}
    for var, name in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw:
            changes[name] = _coerce(name, raw)
            logger.debug(f"{var} overrides {name}")
    return replace(settings, **changes) if changes else settings


def load_dotenv_files() -> None:
    """Load the first .env found in the working directory or home."""
    for env_path in (Path.cwd() / ".env", Path.home() / ".env"):
        if env_path.exists():
            load_dotenv(env_path)
            logger.debug(f"Loaded environment from {env_path}")
            break


def load_settings(path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> RelaySettings:
    """
    Load settings from YAML plus environment overrides.

    Args:
        path: YAML file (default: ~/.config/stream_relay/relay.yaml)
        env: Environment mapping (default: os.environ after loading .env)

    Returns:
        RelaySettings; defaults when the file does not exist
    """
    path = Path(path) if path else DEFAULT_CONFIG_PATH
    if env is None:
        load_dotenv_files()

    settings = RelaySettings()
    if path.exists():
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise InvalidSetting(f"cannot read settings from {path}: {e}") from e
        if not isinstance(data, Mapping):
            raise InvalidSetting(f"settings file {path} must contain a mapping")
        settings = settings_from_dict(data)
        logger.info(f"Loaded settings from {path}")
    else:
        logger.info(f"No settings file at {path}, using defaults")

    return apply_env(settings, env)
