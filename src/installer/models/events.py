"""Events broadcast to attached front-ends."""

from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field

from installer.models.session import StatusSnapshot
from installer.models.status import Outcome, SessionState, StageStatus


class Event(BaseModel):
    """Common event envelope."""

    seq: int = Field(..., ge=0, description="Monotonic per-service sequence number")
    session_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)


class SnapshotEvent(Event):
    """First event on every attach; the reconnecting client redraws from it."""

    name: Literal["Snapshot"] = "Snapshot"
    snapshot: StatusSnapshot


class StageStarted(Event):
    name: Literal["StageStarted"] = "StageStarted"
    stage: str
    position: int
    attempt: int


class StageProgress(Event):
    name: Literal["StageProgress"] = "StageProgress"
    stage: str
    progress: Optional[int] = Field(None, ge=0, le=100)
    text: Optional[str] = None


class StageCompleted(Event):
    name: Literal["StageCompleted"] = "StageCompleted"
    stage: str
    position: int
    attempt: int
    outcome: StageStatus
    error: Optional[str] = None


class SessionStateChanged(Event):
    name: Literal["SessionStateChanged"] = "SessionStateChanged"
    state: SessionState
    summary: Optional[str] = None


class InstallFinished(Event):
    name: Literal["InstallFinished"] = "InstallFinished"
    outcome: Outcome
    state: SessionState
    summary: str


AnyEvent = Union[
    SnapshotEvent,
    StageStarted,
    StageProgress,
    StageCompleted,
    SessionStateChanged,
    InstallFinished,
]

EVENT_TYPES = {
    cls.model_fields["name"].default: cls
    for cls in (
        SnapshotEvent,
        StageStarted,
        StageProgress,
        StageCompleted,
        SessionStateChanged,
        InstallFinished,
    )
}


def parse_event(name: str, data: str) -> Event:
    """Rebuild an event from its SSE name and JSON data."""
    try:
        cls = EVENT_TYPES[name]
    except KeyError:
        raise ValueError(f"Unknown event: {name}")
    return cls.model_validate_json(data)
