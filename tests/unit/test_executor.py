"""Unit tests for the command-driven stage executor."""

import asyncio
import shlex
import stat
import sys
import time

import pytest

from installer.models.status import StageStatus
from installer.services.executor import (
    CancellationToken,
    Command,
    CommandStage,
    StageContext,
    Step,
    WriteFile,
    substitute,
)

PYTHON = shlex.quote(sys.executable)


class RecordingStep(Step):
    """Step double that records runs and can fail or be interrupted."""

    def __init__(self, description="step", error=None, completed=True, on_run=None):
        self.description = description
        self.error = error
        self.completed = completed
        self.on_run = on_run
        self.runs = []

    async def run(self, params, cancel):
        self.runs.append(dict(params))
        if self.on_run:
            self.on_run()
        if self.error:
            raise self.error
        return self.completed


def _context(parameters=None, progress=None):
    return StageContext(
        stage="test",
        attempt=1,
        parameters=parameters or {},
        report_progress=(lambda p, t: progress.append((p, t))) if progress is not None else (lambda p, t: None),
    )


@pytest.mark.unit
class TestSubstitute:
    """Placeholder expansion."""

    def test_replaces_known_placeholders(self):
        result = substitute("mkfs.ext4 $ROOT_DEVICE -L $LABEL", {"root_device": "/dev/sda2", "label": "root"})
        assert result == "mkfs.ext4 /dev/sda2 -L root"

    def test_unknown_placeholder_is_kept(self):
        assert substitute("echo $UNKNOWN", {}) == "echo $UNKNOWN"

    def test_values_are_not_expanded_again(self):
        result = substitute("$A", {"a": "$B", "b": "nope"})
        assert result == "$B"

    def test_longest_name_matches(self):
        result = substitute("$TARGET_DISK $TARGET", {"target": "x", "target_disk": "/dev/sda"})
        assert result == "/dev/sda x"


@pytest.mark.unit
class TestCommandStage:
    """Step sequencing, progress and cancellation."""

    @pytest.mark.asyncio
    async def test_runs_steps_in_order_with_progress(self):
        steps = [RecordingStep("one"), RecordingStep("two")]
        progress = []
        stage = CommandStage("demo", steps, defaults={"mode": "default", "x": 1})

        outcome = await stage.execute(_context({"x": 2}, progress), CancellationToken())

        assert outcome.status == StageStatus.SUCCEEDED
        assert progress == [(0, "one"), (50, "two"), (100, "Done")]
        # Session parameters override stage defaults
        assert steps[0].runs == [{"mode": "default", "x": 2}]

    @pytest.mark.asyncio
    async def test_step_error_fails_stage(self):
        later = RecordingStep("later")
        stage = CommandStage("demo", [RecordingStep(error=RuntimeError("mkfs failed")), later])

        outcome = await stage.execute(_context(), CancellationToken())

        assert outcome.status == StageStatus.FAILED
        assert outcome.error == "mkfs failed"
        assert later.runs == []

    @pytest.mark.asyncio
    async def test_os_error_fails_stage(self):
        stage = CommandStage("demo", [RecordingStep(error=FileNotFoundError("no such tool"))])

        outcome = await stage.execute(_context(), CancellationToken())

        assert outcome.status == StageStatus.FAILED
        assert "no such tool" in outcome.error

    @pytest.mark.asyncio
    async def test_cancel_between_steps(self):
        cancel = CancellationToken()
        later = RecordingStep("later")
        stage = CommandStage("demo", [RecordingStep(on_run=cancel.cancel), later])

        outcome = await stage.execute(_context(), cancel)

        assert outcome.status == StageStatus.CANCELLED
        assert later.runs == []

    @pytest.mark.asyncio
    async def test_interrupted_step_cancels_stage(self):
        stage = CommandStage("demo", [RecordingStep(completed=False)])

        outcome = await stage.execute(_context(), CancellationToken())

        assert outcome.status == StageStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_condition_skips_stage(self):
        step = RecordingStep()
        stage = CommandStage("syslinux", [step], condition=lambda p: p.get("install_syslinux"))

        outcome = await stage.execute(_context({"install_syslinux": False}), CancellationToken())

        assert outcome.status == StageStatus.SKIPPED
        assert step.runs == []

    @pytest.mark.asyncio
    async def test_can_run_again_after_failure(self):
        flaky = RecordingStep(error=RuntimeError("busy"))
        stage = CommandStage("demo", [flaky])

        first = await stage.execute(_context(), CancellationToken())
        flaky.error = None
        second = await stage.execute(_context(), CancellationToken())

        assert first.status == StageStatus.FAILED
        assert second.status == StageStatus.SUCCEEDED


@pytest.mark.unit
class TestCommand:
    """External commands run through the real subprocess machinery."""

    @pytest.mark.asyncio
    async def test_success(self):
        command = Command(f"{PYTHON} -c 'import sys; sys.exit(0)'")
        assert await command.run({}, CancellationToken()) is True

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises(self):
        command = Command(f"{PYTHON} -c 'import sys; sys.stderr.write(\"boom\"); sys.exit(3)'")

        with pytest.raises(RuntimeError) as exc_info:
            await command.run({}, CancellationToken())

        assert "exit code 3" in str(exc_info.value)
        assert "boom" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_ignore_errors(self):
        command = Command(f"{PYTHON} -c 'import sys; sys.exit(1)'", ignore_errors=True)
        assert await command.run({}, CancellationToken()) is True

    @pytest.mark.asyncio
    async def test_stdin_carries_secret(self, tmp_path):
        out = tmp_path / "out.txt"
        script = "import sys; open(sys.argv[1], 'w').write(sys.stdin.read())"
        command = Command(f"{PYTHON} -c {shlex.quote(script)} $OUTPUT", stdin="$DISK_PASSPHRASE")

        await command.run({"output": str(out), "disk_passphrase": "s3cret pass"}, CancellationToken())

        assert out.read_text() == "s3cret pass"

    @pytest.mark.asyncio
    async def test_cancel_terminates_child(self):
        cancel = CancellationToken()
        command = Command(f"{PYTHON} -c 'import time; time.sleep(30)'")

        asyncio.get_running_loop().call_later(0.2, cancel.cancel)
        started = time.monotonic()
        completed = await command.run({}, cancel)

        assert completed is False
        assert time.monotonic() - started < 5

    @pytest.mark.asyncio
    async def test_missing_binary_raises_os_error(self):
        command = Command("/nonexistent/tool --help")

        with pytest.raises(OSError):
            await command.run({}, CancellationToken())

    def test_description_defaults_to_program_name(self):
        assert Command("/sbin/cryptsetup luksFormat $LUKS_PARTITION").description == "cryptsetup"


@pytest.mark.unit
class TestFileSteps:
    """WriteFile."""

    @pytest.mark.asyncio
    async def test_write_file_with_mode(self, tmp_path):
        step = WriteFile("$INSTALL_MOUNT/etc/crypttab", "root UUID=$LUKS_UUID none\n", mode=0o600)

        await step.run({"install_mount": str(tmp_path), "luks_uuid": "abc"}, CancellationToken())

        target = tmp_path / "etc" / "crypttab"
        assert target.read_text() == "root UUID=abc none\n"
        assert stat.S_IMODE(target.stat().st_mode) == 0o600
        assert [p.name for p in target.parent.iterdir()] == ["crypttab"]

