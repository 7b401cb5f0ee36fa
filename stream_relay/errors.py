"""
Error Taxonomy

Every failure carries a stable `kind` string plus a human readable message.
Messages never contain stream keys; anything derived from process output
goes through redact() first.

    RelayError
    ├── ConfigurationError   (bad input, caught before anything is spawned)
    ├── ProcessError         (media server lifecycle)
    └── RuntimeFailure       (media server died while running)
"""

from typing import Iterable, Optional


class RelayError(Exception):
    """Base class for all relay errors."""

    kind = "RelayError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def __str__(self) -> str:
        return self.message


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================

class ConfigurationError(RelayError):
    kind = "ConfigurationError"


class NoPlatformsConfigured(ConfigurationError):
    kind = "NoPlatformsConfigured"

    def __init__(self, message: str = "at least one platform stream key is required"):
        super().__init__(message)


class UnsupportedPlatformError(ConfigurationError):
    kind = "UnsupportedPlatformError"


class DuplicatePlatform(ConfigurationError):
    kind = "DuplicatePlatform"


class InvalidStreamKey(ConfigurationError):
    kind = "InvalidStreamKey"


class InvalidSetting(ConfigurationError):
    kind = "InvalidSetting"


# =============================================================================
# PROCESS ERRORS
# =============================================================================

class ProcessError(RelayError):
    kind = "ProcessError"


class ExecutableNotFound(ProcessError):
    kind = "ExecutableNotFound"


class SpawnFailed(ProcessError):
    kind = "SpawnFailed"

    def __init__(self, message: str = "", exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code


class ConfigWriteFailed(ProcessError):
    kind = "ConfigWriteFailed"


class AlreadyRunning(ProcessError):
    kind = "AlreadyRunning"

    def __init__(self, message: str = "a relay session is already active"):
        super().__init__(message)


class StopTimeoutExceeded(ProcessError):
    kind = "StopTimeoutExceeded"


class NotRunning(ProcessError):
    kind = "NotRunning"


# =============================================================================
# RUNTIME FAILURES
# =============================================================================

class RuntimeFailure(RelayError):
    kind = "RuntimeFailure"

    def __init__(self, message: str = "process exited unexpectedly", exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code


REDACTED = "********"


def redact(text: str, secrets: Iterable[str]) -> str:
    """Mask every occurrence of each secret in text."""
    # Longest first so a key that contains another key is fully masked
    for secret in sorted({s for s in secrets if s}, key=len, reverse=True):
        text = text.replace(secret, REDACTED)
    return text
