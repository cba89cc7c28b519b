"""Stage executor contract and the command-driven executor harness."""

import asyncio
import logging
import os
import re
import shlex
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

from installer.models.status import StageStatus


class CancellationToken:
    """Cooperative cancellation signal handed to each stage invocation."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class StageOutcome:
    """Result returned by StageExecutor.execute()."""

    status: StageStatus
    error: Optional[str] = None
    summary: Optional[str] = None

    @classmethod
    def succeeded(cls, summary: Optional[str] = None) -> "StageOutcome":
        return cls(StageStatus.SUCCEEDED, summary=summary)

    @classmethod
    def failed(cls, error: str) -> "StageOutcome":
        return cls(StageStatus.FAILED, error=error)

    @classmethod
    def cancelled(cls) -> "StageOutcome":
        return cls(StageStatus.CANCELLED, summary="Cancelled on request")

    @classmethod
    def skipped(cls, summary: Optional[str] = None) -> "StageOutcome":
        return cls(StageStatus.SKIPPED, summary=summary)


ProgressCallback = Callable[[Optional[int], Optional[str]], None]


@dataclass
class StageContext:
    """Per-invocation context: session parameters plus a progress sink."""

    stage: str
    attempt: int
    parameters: Mapping[str, object]
    report_progress: ProgressCallback = field(default=lambda progress, text: None)


class StageExecutor(ABC):
    """One privileged unit of install work.

    Implementations must return StageOutcome.cancelled() promptly once the
    token fires, and must tolerate being invoked again after a failure. The
    orchestrator never runs two invocations of the same stage at once.
    """

    @abstractmethod
    async def execute(self, context: StageContext, cancel: CancellationToken) -> StageOutcome:
        """Run the stage to completion, failure or cancellation."""


class Step(ABC):
    """A single checkpointed action inside a CommandStage."""

    description: str = ""

    @abstractmethod
    async def run(self, params: Mapping[str, object], cancel: CancellationToken) -> bool:
        """Run the step. Returns False when interrupted by cancellation.

        Raises:
            RuntimeError: If the step fails
        """


_PLACEHOLDER = re.compile(r"\$([A-Z][A-Z_]*)")


def substitute(template: str, params: Mapping[str, object]) -> str:
    """Replace $NAME placeholders with the value of params["name"].

    Single pass, so substituted values are never expanded again. Unknown
    placeholders are left as they are.
    """

    def _replace(match: re.Match) -> str:
        key = match.group(1).lower()
        if key not in params:
            return match.group(0)
        return str(params[key])

    return _PLACEHOLDER.sub(_replace, template)


class Command(Step):
    """Run an external command, killing it if cancellation is requested."""

    def __init__(
        self,
        template: str,
        stdin: Optional[str] = None,
        description: Optional[str] = None,
        ignore_errors: bool = False,
    ):
        self.template = template
        self.stdin = stdin
        self.description = description or template.split()[0].rsplit("/", 1)[-1]
        self.ignore_errors = ignore_errors
        self.logger = logging.getLogger("installer.stages")

    async def run(self, params: Mapping[str, object], cancel: CancellationToken) -> bool:
        argv = shlex.split(substitute(self.template, params))
        stdin_data = substitute(self.stdin, params).encode() if self.stdin else None
        # argv never contains secrets; they travel via stdin or 0600 files
        self.logger.info(f"Running: {shlex.join(argv)}")

        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        communicate = asyncio.ensure_future(process.communicate(stdin_data))
        cancelled = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {communicate, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
            if communicate not in done:
                self.logger.warning(f"Cancellation requested, terminating {argv[0]}")
                await _terminate(process)
                await asyncio.gather(communicate, return_exceptions=True)
                return False
        except asyncio.CancelledError:
            # Force-cancelled by the orchestrator: do not leave the child behind
            await _terminate(process)
            communicate.cancel()
            raise
        finally:
            cancelled.cancel()

        stdout, stderr = communicate.result()
        if stdout:
            self.logger.debug(stdout.decode(errors="replace").rstrip())
        if process.returncode != 0:
            if self.ignore_errors:
                self.logger.debug(f"{argv[0]} exited with {process.returncode}, ignored")
                return True
            raise RuntimeError(
                f"{shlex.join(argv)} failed with exit code {process.returncode}: "
                f"{stderr.decode(errors='replace').strip()}"
            )
        return True


async def _terminate(process: asyncio.subprocess.Process, timeout: float = 5.0) -> None:
    """SIGTERM, then SIGKILL if the child ignores it."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
        await asyncio.wait_for(process.wait(), timeout=timeout)
    except ProcessLookupError:
        return
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()


class WriteFile(Step):
    """Write a templated file, optionally with restricted permissions."""

    def __init__(self, path: str, content: str, mode: int = 0o644, description: Optional[str] = None):
        self.path = path
        self.content = content
        self.mode = mode
        self.description = description or f"Writing {path}"

    async def run(self, params: Mapping[str, object], cancel: CancellationToken) -> bool:
        target = Path(substitute(self.path, params))
        target.parent.mkdir(parents=True, exist_ok=True)
        # Write atomically with the final mode so secrets are never world readable
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(substitute(self.content, params))
            os.chmod(tmp_name, self.mode)
            os.replace(tmp_name, target)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return True


class CommandStage(StageExecutor):
    """Executor that runs an ordered list of steps.

    Progress is reported after each step; the cancellation token is checked
    between steps and while a command runs.
    """

    def __init__(
        self,
        name: str,
        steps: Sequence[Step],
        defaults: Optional[Mapping[str, object]] = None,
        condition: Optional[Callable[[Mapping[str, object]], bool]] = None,
    ):
        self.name = name
        self.steps = list(steps)
        self.defaults = dict(defaults or {})
        self.condition = condition
        self.logger = logging.getLogger("installer.stages")

    async def execute(self, context: StageContext, cancel: CancellationToken) -> StageOutcome:
        params = {**self.defaults, **context.parameters}

        if self.condition is not None and not self.condition(params):
            self.logger.info(f"Stage {self.name}: not required by configuration, skipping")
            return StageOutcome.skipped("Not required by configuration")

        total = len(self.steps)
        for idx, step in enumerate(self.steps):
            if cancel.cancelled:
                return StageOutcome.cancelled()

            context.report_progress(int(idx / total * 100), step.description)
            try:
                completed = await step.run(params, cancel)
            except (RuntimeError, OSError) as e:
                self.logger.error(f"Stage {self.name} step {idx + 1}/{total} failed: {e}")
                return StageOutcome.failed(str(e))

            if not completed:
                return StageOutcome.cancelled()

        context.report_progress(100, "Done")
        return StageOutcome.succeeded()
