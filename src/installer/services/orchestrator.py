"""Install orchestrator: the single owner of the install state machine."""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Callable, Mapping, Optional, Sequence

from installer.errors import (
    NoActiveSession,
    NotConfiguring,
    NotInRetryableState,
    SessionActive,
    SessionAlreadyTerminal,
    StageExecutionError,
)
from installer.models.events import (
    Event,
    InstallFinished,
    SessionStateChanged,
    StageCompleted,
    StageProgress,
    StageStarted,
)
from installer.models.install_config import InstallConfig
from installer.models.session import InstallSession, StageResult, StageSpec, StatusSnapshot
from installer.models.status import Outcome, SessionState, StageStatus
from installer.services.disks import Disk
from installer.services.executor import CancellationToken, StageContext, StageOutcome
from installer.services.history import HistoryStore
from installer.services.stages import select_stages

EventListener = Callable[[Event], None]


class InstallOrchestrator:
    """Owns the InstallSession and sequences its stages.

    Mutating commands are serialized by one asyncio.Lock. Each stage runs in
    its own task which never holds the lock, so Abort and status queries are
    always served while a stage is executing. Every state change emits its
    events before the lock is released, which fixes one global event order.
    """

    def __init__(
        self,
        catalog: Sequence[StageSpec],
        parameters: Callable[[InstallConfig], Mapping[str, object]],
        validate: Optional[Callable[[InstallConfig], Optional[Disk]]] = None,
        history: Optional[HistoryStore] = None,
        abort_grace_seconds: float = 10.0,
        force_kill_seconds: float = 5.0,
        auto_begin: bool = True,
    ):
        """Initialize orchestrator.

        Args:
            catalog: Stage pipeline in execution order
            parameters: Builds executor parameters from a config (may contain secrets)
            validate: Semantic config check raising InvalidConfig; returns the
                resolved target disk, whose path replaces the configured one
            history: Post-mortem record store (None disables)
            abort_grace_seconds: Time a stage gets to acknowledge cancellation
            force_kill_seconds: Time a force-cancelled stage gets to unwind
            auto_begin: Begin running right after StartInstall
        """
        self.logger = logging.getLogger("installer.orchestrator")
        self._catalog = list(catalog)
        self._parameters = parameters
        self._validate = validate
        self._history = history or HistoryStore(None)
        self._abort_grace = abort_grace_seconds
        self._force_kill = force_kill_seconds
        self._auto_begin = auto_begin

        self._lock = asyncio.Lock()
        self._session: Optional[InstallSession] = None
        self._params: Optional[Mapping[str, object]] = None
        self._seq = 0
        self._listeners: list[EventListener] = []

        self._driver: Optional[asyncio.Task] = None
        self._stage_task: Optional[asyncio.Task] = None
        self._token: Optional[CancellationToken] = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._session.state if self._session else SessionState.IDLE

    def snapshot(self) -> StatusSnapshot:
        """Detached copy of the current truth. Never waits for the command lock."""
        session = None
        if self._session is not None:
            session = InstallSession.model_validate(self._session.model_dump())
        return StatusSnapshot(state=self.state, session=session, last_seq=self._seq)

    def subscribe(self, listener: EventListener) -> None:
        """Register a callback that receives every event, in order."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def start_install(self, config: InstallConfig) -> StatusSnapshot:
        """Idle → configuring (→ running when auto_begin).

        Raises:
            SessionActive: A session is already in progress
            SessionAlreadyTerminal: The previous session was not reset
            InvalidConfig: The configuration is rejected
        """
        async with self._lock:
            if self._session is not None:
                if self._session.state.is_terminal:
                    raise SessionAlreadyTerminal(
                        "The previous installation has finished; reset it before starting again",
                        state=self._session.state.value,
                    )
                raise SessionActive(
                    "An installation is already in progress", state=self._session.state.value
                )

            stages = select_stages(self._catalog, config.stages)
            if self._validate is not None:
                disk = self._validate(config)
                if disk is not None and disk.path != config.target_disk:
                    # Partition paths are derived from the target, so run against the real node
                    self.logger.info(f"Target {config.target_disk} resolves to {disk.path}")
                    config = config.model_copy(update={"target_disk": disk.path})

            session = InstallSession(
                session_id=uuid.uuid4().hex,
                config=config,
                stages=stages,
                summary="Installation configured",
            )
            self._session = session
            self._params = self._parameters(config)
            self.logger.info(
                f"Session {session.session_id} created: target={config.target_disk}, "
                f"stages={[s.name for s in stages if s.selected]}"
            )
            self._emit(SessionStateChanged, state=session.state, summary=session.summary)

            if self._auto_begin:
                self._begin_locked(session)
            return self.snapshot()

    async def begin(self) -> StatusSnapshot:
        """Configuring → running.

        Raises:
            NoActiveSession: No session exists
            NotConfiguring: The session already began
        """
        async with self._lock:
            session = self._require_session()
            if session.state != SessionState.CONFIGURING:
                raise NotConfiguring(
                    f"Installation cannot begin from state {session.state.value}",
                    state=session.state.value,
                )
            self._begin_locked(session)
            return self.snapshot()

    async def retry(self) -> StatusSnapshot:
        """Stage_paused → running, re-invoking the failed stage as a new attempt.

        Raises:
            NotInRetryableState: No stage is paused on a retryable failure
        """
        async with self._lock:
            session = self._session
            if session is None or session.state != SessionState.STAGE_PAUSED:
                state = session.state.value if session else SessionState.IDLE.value
                raise NotInRetryableState(f"Nothing to retry in state {state}", state=state)

            spec = session.current_spec()
            self.logger.info(f"Session {session.session_id}: retrying stage {spec.name}")
            session.state = SessionState.RUNNING
            session.summary = f"Retrying: {spec.title}"
            self._emit(SessionStateChanged, state=session.state, summary=session.summary)
            self._start_driver()
            return self.snapshot()

    async def abort(self) -> StatusSnapshot:
        """Any non-terminal state → aborted.

        Waits up to the grace period for a running stage to acknowledge
        cancellation, then force-cancels it. The session ends aborted either way.

        Raises:
            NoActiveSession: No session exists
            SessionAlreadyTerminal: The session already finished
        """
        async with self._lock:
            session = self._require_session()
            if session.state.is_terminal:
                raise SessionAlreadyTerminal(
                    f"Installation already finished ({session.state.value})",
                    state=session.state.value,
                )

            self.logger.info(f"Session {session.session_id}: abort requested in state {session.state.value}")
            result = session.latest_result()
            task, token = self._stage_task, self._token
            if task is not None and result is not None and result.status == StageStatus.RUNNING:
                outcome = await self._cancel_stage(session.current_spec(), task, token)
                self._record_outcome(result, outcome)

            self._finish_locked(session, SessionState.ABORTED, Outcome.ABORTED, "Installation aborted by user")
            snapshot = self.snapshot()

        await self._history.save(session)
        return snapshot

    async def reset_session(self) -> StatusSnapshot:
        """Drop a finished session and return to idle. No-op when already idle.

        The session record written at the terminal transition stays in the
        history directory.

        Raises:
            SessionActive: The session has not reached a terminal state
        """
        async with self._lock:
            session = self._session
            if session is None:
                return self.snapshot()
            if not session.state.is_terminal:
                raise SessionActive(
                    "Cannot reset while an installation is in progress; abort it first",
                    state=session.state.value,
                )

            self._session = None
            self.logger.info(f"Session {session.session_id} archived ({session.outcome.value})")
            self._emit(SessionStateChanged, state=SessionState.IDLE, summary="Ready to install")
            return self.snapshot()

    async def shutdown(self) -> None:
        """Abandon a running install when the service stops."""
        if self._session is not None and not self._session.state.is_terminal:
            self.logger.warning(
                f"Service stopping during installation (state={self._session.state.value}), aborting"
            )
            try:
                await self.abort()
            except SessionAlreadyTerminal:
                pass

        if self._driver is not None and not self._driver.done():
            self._driver.cancel()
            await asyncio.gather(self._driver, return_exceptions=True)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _require_session(self) -> InstallSession:
        if self._session is None:
            raise NoActiveSession("No installation session", state=SessionState.IDLE.value)
        return self._session

    def _begin_locked(self, session: InstallSession) -> None:
        session.state = SessionState.RUNNING
        session.current_stage = 0
        session.summary = "Installation running"
        self._emit(SessionStateChanged, state=session.state, summary=session.summary)
        self._start_driver()

    def _start_driver(self) -> None:
        self._driver = asyncio.create_task(self._drive(self._session))

    async def _drive(self, session: InstallSession) -> None:
        """Run stages from session.current_stage until the session leaves running."""
        while True:
            async with self._lock:
                if self._session is not session or session.state != SessionState.RUNNING:
                    return

                if session.current_stage >= len(session.stages):
                    self._finish_locked(
                        session,
                        SessionState.SUCCEEDED,
                        Outcome.SUCCESS,
                        "Installation completed successfully",
                    )
                    break

                spec = session.stages[session.current_stage]
                if not spec.selected:
                    result = self._append_result(session, spec)
                    self._record_outcome(result, StageOutcome.skipped("Deselected in configuration"))
                    session.current_stage += 1
                    continue

                result = self._append_result(session, spec)
                result.status = StageStatus.RUNNING
                result.started_at = datetime.now()
                self.logger.info(f"Stage {spec.name} started (attempt {result.attempt})")
                self._emit(StageStarted, stage=spec.name, position=spec.position, attempt=result.attempt)

                token = CancellationToken()
                context = StageContext(
                    stage=spec.name,
                    attempt=result.attempt,
                    parameters=self._params or {},
                    report_progress=lambda progress, text, r=result: self._on_progress(r, progress, text),
                )
                task = asyncio.create_task(self._invoke(spec, context, token))
                self._stage_task, self._token = task, token

            await asyncio.wait({task})

            async with self._lock:
                if self._stage_task is task:
                    self._stage_task, self._token = None, None
                if self._session is not session or result.is_finished:
                    # Abort already recorded this attempt
                    return
                outcome = task.result() if not task.cancelled() else StageOutcome.cancelled()
                self._complete_stage_locked(session, spec, result, outcome)
                still_running = session.state == SessionState.RUNNING

            await self._history.save(session)
            if not still_running:
                return

        await self._history.save(session)

    async def _invoke(self, spec: StageSpec, context: StageContext, token: CancellationToken) -> StageOutcome:
        """Run one executor, turning crashes into recorded failures."""
        try:
            outcome = await spec.executor.execute(context, token)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = StageExecutionError(spec.name, str(e) or type(e).__name__)
            self.logger.error(f"Stage {spec.name} raised: {error.message}", exc_info=True)
            return StageOutcome.failed(error.detail)

        if not isinstance(outcome, StageOutcome) or outcome.status in (
            StageStatus.PENDING,
            StageStatus.RUNNING,
        ):
            self.logger.error(f"Stage {spec.name} returned an invalid outcome: {outcome!r}")
            return StageOutcome.failed("Stage returned an invalid outcome")
        if outcome.status == StageStatus.CANCELLED and not token.cancelled:
            return StageOutcome.failed("Stage stopped without being asked to")
        return outcome

    async def _cancel_stage(
        self, spec: StageSpec, task: asyncio.Task, token: CancellationToken
    ) -> StageOutcome:
        """Signal cancellation, wait for the grace period, then force-cancel."""
        token.cancel()
        done, _ = await asyncio.wait({task}, timeout=self._abort_grace)
        if task in done and not task.cancelled():
            outcome = task.result()
            self.logger.info(f"Stage {spec.name} acknowledged cancellation ({outcome.status.value})")
            return outcome

        self.logger.warning(
            f"Stage {spec.name} did not acknowledge cancellation within "
            f"{self._abort_grace}s, force-terminating"
        )
        task.cancel()
        done, _ = await asyncio.wait({task}, timeout=self._force_kill)
        if not done:
            self.logger.error(f"Stage {spec.name} still unwinding after force-termination, abandoning it")
        return StageOutcome(
            StageStatus.CANCELLED,
            error="Stage did not acknowledge cancellation and was terminated",
        )

    def _append_result(self, session: InstallSession, spec: StageSpec) -> StageResult:
        result = StageResult(
            stage=spec.name,
            position=spec.position,
            attempt=len(session.attempts_for(spec.position)) + 1,
        )
        session.results.append(result)
        return result

    def _record_outcome(self, result: StageResult, outcome: StageOutcome) -> None:
        result.status = outcome.status
        result.error = outcome.error
        result.finished_at = datetime.now()
        if outcome.status == StageStatus.SUCCEEDED:
            result.progress = 100
        if outcome.summary:
            result.status_text = outcome.summary
        self.logger.info(
            f"Stage {result.stage} attempt {result.attempt}: {outcome.status.value}"
            + (f" ({outcome.error})" if outcome.error else "")
        )
        self._emit(
            StageCompleted,
            stage=result.stage,
            position=result.position,
            attempt=result.attempt,
            outcome=result.status,
            error=result.error,
        )

    def _complete_stage_locked(
        self, session: InstallSession, spec: StageSpec, result: StageResult, outcome: StageOutcome
    ) -> None:
        self._record_outcome(result, outcome)

        if outcome.status in (StageStatus.SUCCEEDED, StageStatus.SKIPPED):
            session.current_stage += 1
            return

        error = outcome.error or "unknown error"
        if spec.retryable:
            session.state = SessionState.STAGE_PAUSED
            session.summary = f"{spec.title} failed: {error}. You can retry this step or abort the installation."
            self.logger.warning(f"Session {session.session_id} paused at {spec.name}: {error}")
            self._emit(SessionStateChanged, state=session.state, summary=session.summary)
        else:
            self._finish_locked(
                session, SessionState.FAILED, Outcome.FAILURE, f"{spec.title} failed: {error}"
            )

    def _finish_locked(
        self, session: InstallSession, state: SessionState, outcome: Outcome, summary: str
    ) -> None:
        session.state = state
        session.outcome = outcome
        session.summary = summary
        session.finished_at = datetime.now()
        self._params = None

        log = self.logger.info if outcome == Outcome.SUCCESS else self.logger.warning
        log(f"Session {session.session_id} finished: {state.value} ({summary})")
        self._emit(SessionStateChanged, state=state, summary=summary)
        self._emit(InstallFinished, outcome=outcome, state=state, summary=summary)

    def _on_progress(self, result: StageResult, progress: Optional[int], text: Optional[str]) -> None:
        """Progress callback handed to executors (must be called on the event loop)."""
        if result.status != StageStatus.RUNNING:
            return
        if progress is not None:
            progress = max(0, min(100, int(progress)))
            result.progress = progress
        if text is not None:
            result.status_text = text
        self._emit(StageProgress, stage=result.stage, progress=progress, text=text)

    def _emit(self, event_cls, **fields) -> None:
        self._seq += 1
        session_id = self._session.session_id if self._session else None
        event = event_cls(seq=self._seq, session_id=session_id, **fields)
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                self.logger.error(f"Event listener failed on {event.name}: {e}", exc_info=True)
