"""Status enums for the install state machine."""

from enum import Enum


class SessionState(str, Enum):
    """Install session lifecycle states.

    State transitions:
    idle → configuring → running ⇄ stage_paused
                            ↓           ↓
                 succeeded / failed / aborted   (terminal)

    Abort is accepted from every non-terminal state.
    """

    IDLE = "idle"
    CONFIGURING = "configuring"
    RUNNING = "running"
    STAGE_PAUSED = "stage_paused"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {SessionState.SUCCEEDED, SessionState.FAILED, SessionState.ABORTED}
)


class StageStatus(str, Enum):
    """Status of a single stage attempt."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class Outcome(str, Enum):
    """Terminal outcome of an install session."""

    NONE = "none"
    SUCCESS = "success"
    FAILURE = "failure"
    ABORTED = "aborted"
