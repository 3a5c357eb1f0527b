from __future__ import annotations


class RoundwatchError(Exception):
    """Base class for all roundwatch errors."""


class TransientRemoteError(RoundwatchError):
    """Timeout, rate limit or connection reset; worth retrying."""


class PermanentRemoteError(RoundwatchError):
    """Malformed or unsupported remote data; retrying will not help."""


class RemoteUnavailableError(RoundwatchError):
    """Every retry of a single logical call failed."""

    def __init__(self, op: str, attempts: int, cause: BaseException | None):
        self.op = op
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"{op} failed after {attempts} attempts: {type(cause).__name__ if cause else 'n/a'}: {cause}")


class StartupError(RoundwatchError):
    """Unrecoverable startup condition (no reachable endpoint, unreadable store)."""
