"""Install session, stage and connection records."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from installer.models.install_config import InstallConfig
from installer.models.status import Outcome, SessionState, StageStatus


class StageSpec(BaseModel):
    """Static description of one pipeline stage.

    Fixed when the session is created; the executor is not serialized.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str = Field(..., description="Stage identifier (e.g., 'partition')")
    title: str = Field(..., description="Human-readable stage title")
    position: int = Field(..., ge=0, description="Ordering position in the pipeline")
    skippable: bool = Field(default=False, description="May be deselected in the config")
    retryable: bool = Field(default=True, description="Failure pauses for retry instead of failing")
    selected: bool = Field(default=True, description="Whether the stage runs in this session")
    executor: Any = Field(default=None, exclude=True, repr=False)


class StageResult(BaseModel):
    """Outcome of one attempt of one stage. Appended, never rewritten after it finishes."""

    stage: str
    position: int = Field(..., ge=0)
    attempt: int = Field(..., ge=1)
    status: StageStatus = StageStatus.PENDING
    error: Optional[str] = Field(None, description="Error detail if status == failed")
    progress: Optional[int] = Field(None, ge=0, le=100)
    status_text: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_finished(self) -> bool:
        return self.status not in (StageStatus.PENDING, StageStatus.RUNNING)


class InstallSession(BaseModel):
    """The singleton record of one install attempt.

    Owned and mutated exclusively by the InstallOrchestrator.
    """

    session_id: str
    state: SessionState = SessionState.CONFIGURING
    created_at: datetime = Field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    config: InstallConfig
    stages: list[StageSpec]
    current_stage: Optional[int] = Field(
        None, description="Index into stages of the stage being executed"
    )
    results: list[StageResult] = Field(default_factory=list)
    outcome: Outcome = Outcome.NONE
    summary: Optional[str] = Field(None, description="Human-readable summary for display")

    def attempts_for(self, position: int) -> list[StageResult]:
        """All recorded attempts of the stage at ``position``, oldest first."""
        return [r for r in self.results if r.position == position]

    def latest_result(self) -> Optional[StageResult]:
        return self.results[-1] if self.results else None

    def current_spec(self) -> Optional[StageSpec]:
        if self.current_stage is None:
            return None
        return self.stages[self.current_stage]


class StatusSnapshot(BaseModel):
    """Full view of the current truth, returned by GetStatus and on attach."""

    state: SessionState
    session: Optional[InstallSession] = None
    last_seq: int = Field(0, ge=0, description="Sequence number of the last event generated")


class ClientConnection(BaseModel):
    """A live front-end attachment to the event stream."""

    connection_id: str
    authorized: bool
    reason: str = ""
    attached_at: datetime = Field(default_factory=datetime.now)
