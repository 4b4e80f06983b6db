"""Run a task's shell command, optionally guarded by a check command.

Exit code 204 is reserved: from the guard it means "skip this task", from
the command itself it means "nothing needed doing".
"""

from __future__ import annotations

import subprocess
import threading
import time

from rich.markup import escape

from converge import log
from converge.errors import Cancelled, TaskExecutionError
from converge.tasks.model import RunCommand, Skipped, Succeeded, TaskDefinition, TaskOutcome

SKIP_EXIT_CODE = 204
RUN_IF_SKIPPED = "run_if command requested skip"


def _display(cmd: list[str] | str) -> str:
    return cmd if isinstance(cmd, str) else " ".join(cmd)


def _communicate_with_cancel(
    proc: subprocess.Popen[str],
    cancel: threading.Event | None,
) -> tuple[str | None, str | None]:
    """Wait for *proc* while remaining responsive to the cancellation token."""
    if cancel is None:
        return proc.communicate()
    while True:
        if cancel.is_set():
            _terminate_process(proc)
            raise Cancelled()
        try:
            return proc.communicate(timeout=0.2)
        except subprocess.TimeoutExpired:
            continue


def _terminate_process(proc: subprocess.Popen[str]) -> None:
    """Terminate a subprocess promptly, killing it if it ignores SIGTERM."""
    if proc.poll() is None:
        try:
            proc.terminate()
        except OSError:
            pass
        try:
            proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            pass
    if proc.poll() is None:
        try:
            proc.kill()
        except OSError:
            pass
        proc.wait()


def run_process(
    task: TaskDefinition,
    cmd: list[str] | str,
    logger: log.Log,
    *,
    live: bool,
    cancel: threading.Event | None = None,
) -> int:
    """Run *cmd* for *task* and return its exit code.

    In live mode the child inherits stdio.  Otherwise its output is captured
    and written to *logger*, which is usually a buffered per-task handle.
    The child sees only the task's environment, not the process's.
    """
    env = dict(task.environment_overrides)
    cwd = task.working_directory
    if cwd is not None and not cwd.is_dir():
        raise TaskExecutionError(task.id, f"working directory doesn't exist: {cwd}")

    stdio = None if live else subprocess.PIPE
    logger.debug(f"{task.id}: running {escape(_display(cmd))}" + (f" in {cwd}" if cwd else ""))
    started = time.monotonic()
    try:
        proc = subprocess.Popen(
            cmd,
            shell=isinstance(cmd, str),
            stdin=None if live else subprocess.DEVNULL,
            stdout=stdio,
            stderr=stdio,
            text=True,
            encoding="utf-8",
            errors="replace",
            cwd=cwd,
            env=env,
        )
    except FileNotFoundError:
        name = cmd.split()[0] if isinstance(cmd, str) else cmd[0]
        raise TaskExecutionError(task.id, f"{name} not found") from None
    except PermissionError as exc:
        raise TaskExecutionError(task.id, f"cannot execute {_display(cmd)}: {exc.strerror}") from exc

    try:
        out, err = _communicate_with_cancel(proc, cancel)
    except KeyboardInterrupt:
        _terminate_process(proc)
        raise

    elapsed = time.monotonic() - started
    logger.debug(f"{task.id}: {escape(_display(cmd))} ran in {elapsed:.2f}s with exit code {proc.returncode}")
    if out:
        logger.raw(out)
    if err:
        logger.raw(err)
    return proc.returncode


def _failure(task: TaskDefinition, what: str, cmd: list[str] | str, code: int) -> TaskExecutionError:
    if code < 0:
        detail = f"killed by signal {-code}"
    else:
        detail = f"exit code {code}"
    return TaskExecutionError(task.id, f"{what} '{_display(cmd)}' failed ({detail})", returncode=code)


def run_command(
    task: TaskDefinition,
    op: RunCommand,
    logger: log.Log | None = None,
    *,
    live: bool = False,
    cancel: threading.Event | None = None,
) -> TaskOutcome:
    logger = logger or log.default()

    if op.run_if_cmd is not None:
        code = run_process(task, op.run_if_cmd, logger, live=live, cancel=cancel)
        if code == SKIP_EXIT_CODE:
            logger.debug(f"{task.id}: {RUN_IF_SKIPPED}")
            return Skipped(RUN_IF_SKIPPED)
        if code != 0:
            raise _failure(task, "run_if command", op.run_if_cmd, code)

    code = run_process(task, op.run_cmd, logger, live=live, cancel=cancel)
    if code == 0:
        return Succeeded(changed=True)
    if code == SKIP_EXIT_CODE:
        return Succeeded(changed=False)
    raise _failure(task, "command", op.run_cmd, code)
