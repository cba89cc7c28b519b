"""Installer error taxonomy.

Every error that crosses the command boundary carries an application-level
``code`` (mirrors HTTP semantics, but responses are always sent with HTTP 200)
and a message suitable for direct display in the front-end.
"""

from typing import Optional


class InstallerError(Exception):
    """Base class for all installer errors surfaced to callers."""

    code: int = 500
    error: str = "InstallerError"

    def __init__(self, message: str, state: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.state = state


class Forbidden(InstallerError):
    """Caller is not the authorized local session user."""

    code = 403
    error = "Forbidden"


class InvalidConfig(InstallerError):
    """Malformed or out-of-range install configuration."""

    code = 400
    error = "InvalidConfig"


class NoActiveSession(InstallerError):
    """Command needs an install session but none exists."""

    code = 404
    error = "NoActiveSession"


class SessionActive(InstallerError):
    """A non-terminal install session already exists."""

    code = 409
    error = "SessionActive"


class SessionAlreadyTerminal(InstallerError):
    """Session finished; it must be reset before anything else can happen."""

    code = 409
    error = "SessionAlreadyTerminal"


class NotInRetryableState(InstallerError):
    """Retry requested while no stage is paused on a retryable failure."""

    code = 409
    error = "NotInRetryableState"


class NotConfiguring(InstallerError):
    """Begin requested while the session is not in the configuring state."""

    code = 409
    error = "NotConfiguring"


class StageExecutionError(InstallerError):
    """A stage failed internally. Recorded in the stage result, not raised to callers."""

    code = 500
    error = "StageExecutionError"

    def __init__(self, stage: str, message: str):
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.detail = message


class TransportError(InstallerError):
    """Bus connection lost or malformed message (client side)."""

    code = 503
    error = "TransportError"


class ConfigError(Exception):
    """Raised when the service configuration file cannot be loaded."""


ERRORS_BY_NAME = {
    cls.error: cls
    for cls in (
        Forbidden,
        InvalidConfig,
        NoActiveSession,
        SessionActive,
        SessionAlreadyTerminal,
        NotInRetryableState,
        NotConfiguring,
        TransportError,
    )
}
