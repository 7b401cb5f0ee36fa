"""
Platform Ingest and Encode Table

Static per-platform ingest endpoints and transcoder profiles.
Overrides from settings are applied on top without touching the defaults.
"""

import logging
from dataclasses import fields, replace
from typing import Any, Dict, Mapping, Optional

from .errors import InvalidSetting
from .model import EncodeProfile, Platform, PlatformTarget, has_control_chars

logger = logging.getLogger(__name__)


# =============================================================================
# DEFAULT TABLE
# =============================================================================

TWITCH_INGEST = "rtmp://live.twitch.tv/app/"
YOUTUBE_INGEST = "rtmp://a.rtmp.youtube.com/live2/"
KICK_INGEST = "rtmp://ingest.kick.com/live/"

DEFAULT_TARGETS: Mapping[Platform, PlatformTarget] = {
    Platform.TWITCH: PlatformTarget(
        platform=Platform.TWITCH,
        ingest_url=TWITCH_INGEST,
        profile=EncodeProfile(video_bitrate_kbps=6000),
    ),
    Platform.YOUTUBE: PlatformTarget(
        platform=Platform.YOUTUBE,
        ingest_url=YOUTUBE_INGEST,
        profile=EncodeProfile(video_bitrate_kbps=12000),
    ),
    Platform.KICK: PlatformTarget(
        platform=Platform.KICK,
        ingest_url=KICK_INGEST,
        profile=EncodeProfile(video_bitrate_kbps=10000),
    ),
}

PROFILE_FIELDS = {f.name for f in fields(EncodeProfile)}


def default_targets() -> Dict[Platform, PlatformTarget]:
    return dict(DEFAULT_TARGETS)


def apply_overrides(
    targets: Mapping[Platform, PlatformTarget],
    overrides: Optional[Mapping[str, Mapping[str, Any]]],
) -> Dict[Platform, PlatformTarget]:
    """
    Apply per-platform overrides to a target table.

    Args:
        targets: Base table (not modified)
        overrides: Platform name -> {field: value}; `ingest_url` replaces the
            endpoint, every other key must be an EncodeProfile field

    Returns:
        New table with overrides applied
    """
    result = dict(targets)
    for name, values in (overrides or {}).items():
        platform = Platform.parse(name)
        if platform not in result:
            raise InvalidSetting(f"no ingest target known for {platform.label}")
        if not isinstance(values, Mapping):
            raise InvalidSetting(f"overrides for {platform.label} must be a mapping")

        values = dict(values)
        target = result[platform]
        ingest_url = str(values.pop("ingest_url", target.ingest_url))
        if not ingest_url or has_control_chars(ingest_url):
            raise InvalidSetting(f"invalid ingest URL for {platform.label}")
        unknown = set(values) - PROFILE_FIELDS
        if unknown:
            raise InvalidSetting(f"unknown profile fields for {platform.label}: {', '.join(sorted(unknown))}")
        if "extra_args" in values:
            extra = values["extra_args"]
            if isinstance(extra, str):
                extra = extra.split()
            elif not isinstance(extra, (list, tuple)) or not all(isinstance(a, str) for a in extra):
                raise InvalidSetting(f"extra_args for {platform.label} must be a string or a list of strings")
            values["extra_args"] = tuple(extra)

        profile = replace(target.profile, **values)
        result[platform] = replace(target, ingest_url=ingest_url, profile=profile)
        logger.debug(f"Applied profile overrides for {platform.label}: {sorted(values)}")
    return result
