"""Tests for converge.ops.command exit-code semantics."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from converge.errors import Cancelled, TaskExecutionError
from converge.ops.command import RUN_IF_SKIPPED, run_command
from converge.tasks.model import RunCommand, Skipped, Succeeded


def _sh(script: str) -> list[str]:
    return ["sh", "-c", script]


class TestRunCommand:
    def test_success_is_changed(self, make_task, captured_log) -> None:
        task = make_task("t")
        assert run_command(task, RunCommand(_sh("exit 0")), captured_log) == Succeeded(changed=True)

    def test_exit_204_is_unchanged(self, make_task, captured_log) -> None:
        task = make_task("t")
        assert run_command(task, RunCommand(_sh("exit 204")), captured_log) == Succeeded(changed=False)

    def test_shell_string(self, make_task, captured_log) -> None:
        task = make_task("t")
        assert run_command(task, RunCommand("exit 204"), captured_log) == Succeeded(changed=False)

    def test_failure_raises_with_exit_code(self, make_task, captured_log) -> None:
        task = make_task("t")
        with pytest.raises(TaskExecutionError) as exc_info:
            run_command(task, RunCommand(_sh("exit 3")), captured_log)
        assert exc_info.value.returncode == 3
        assert exc_info.value.task_id == "t"
        assert "exit code 3" in str(exc_info.value)

    def test_missing_executable(self, make_task, captured_log) -> None:
        task = make_task("t")
        with pytest.raises(TaskExecutionError, match="not found"):
            run_command(task, RunCommand(["converge-no-such-binary"]), captured_log)

    def test_missing_working_directory(self, make_task, captured_log, tmp_path: Path) -> None:
        task = make_task("t", working_directory=tmp_path / "nope")
        with pytest.raises(TaskExecutionError, match="working directory"):
            run_command(task, RunCommand(_sh("true")), captured_log)


class TestRunIf:
    def test_guard_204_skips(self, make_task, captured_log, tmp_path: Path) -> None:
        marker = tmp_path / "ran"
        task = make_task("t")
        op = RunCommand(run_cmd=_sh(f"touch {marker}"), run_if_cmd=_sh("exit 204"))
        assert run_command(task, op, captured_log) == Skipped(RUN_IF_SKIPPED)
        assert not marker.exists()

    def test_guard_zero_runs(self, make_task, captured_log, tmp_path: Path) -> None:
        marker = tmp_path / "ran"
        task = make_task("t")
        op = RunCommand(run_cmd=_sh(f"touch {marker}"), run_if_cmd=_sh("exit 0"))
        assert run_command(task, op, captured_log) == Succeeded(changed=True)
        assert marker.exists()

    def test_guard_failure_raises(self, make_task, captured_log) -> None:
        task = make_task("t")
        op = RunCommand(run_cmd=_sh("exit 0"), run_if_cmd=_sh("exit 1"))
        with pytest.raises(TaskExecutionError, match="run_if"):
            run_command(task, op, captured_log)


class TestEnvironment:
    def test_overrides_and_cwd(self, make_task, captured_log, tmp_path: Path) -> None:
        (tmp_path / "marker").write_text("")
        task = make_task("t", working_directory=tmp_path, env={"GREETING": "hi"})
        op = RunCommand(_sh('test "$GREETING" = hi && test -f marker'))
        assert run_command(task, op, captured_log) == Succeeded(changed=True)

    def test_process_environment_is_not_passed_on(
        self, make_task, captured_log, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("CONVERGE_TEST_VAR", "leaked")
        task = make_task("t", env={"ONLY": "this"})
        op = RunCommand(_sh('test -z "$CONVERGE_TEST_VAR" && test "$ONLY" = this'))
        assert run_command(task, op, captured_log) == Succeeded(changed=True)

    def test_env_is_exactly_the_overrides(self, make_task, captured_log) -> None:
        task = make_task("t", env={"A": "1", "B": "2"})
        run_command(task, RunCommand(["env"]), captured_log)
        lines = {line for line in captured_log.text.splitlines() if "=" in line}
        assert "A=1" in lines
        assert "B=2" in lines
        assert not any(line.startswith("HOME=") for line in lines)


class TestOutput:
    def test_duration_is_logged(self, make_task, captured_log) -> None:
        run_command(make_task("t"), RunCommand(_sh("exit 0")), captured_log)
        assert "ran in" in captured_log.text
        assert "with exit code 0" in captured_log.text

    def test_captured_output_goes_to_log(self, make_task, captured_log) -> None:
        task = make_task("t")
        run_command(task, RunCommand(_sh("echo out-line; echo err-line >&2")), captured_log)
        assert "out-line" in captured_log.text
        assert "err-line" in captured_log.text

    def test_cancel_terminates(self, make_task, captured_log) -> None:
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(Cancelled):
            run_command(make_task("t"), RunCommand(["sleep", "30"]), captured_log, cancel=cancel)
