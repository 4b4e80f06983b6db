"""Two-phase task execution: serial bootstrap, then a bounded parallel pool."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import assert_never

from rich.markup import escape

from converge import log
from converge.config import RunConfig
from converge.errors import (
    Cancelled,
    ConfigError,
    ConvergeError,
    GitSyncError,
    LinkConflict,
    LinkError,
    MergeTypeMismatch,
    TaskExecutionError,
)
from converge.ops.command import run_command
from converge.ops.defaults import DefaultsStore, PlistDefaultsStore, run_defaults
from converge.ops.git_sync import run_git_sync
from converge.ops.link import run_link
from converge.report import RunReport, describe
from converge.tasks.model import (
    CANCELLED,
    UPSTREAM_BOOTSTRAP_FAILURE,
    DefaultsWrite,
    Failed,
    GitSync,
    Link,
    RunCommand,
    Skipped,
    Succeeded,
    TaskDefinition,
    TaskOutcome,
    TaskSet,
)


def failure_kind(exc: BaseException) -> str:
    """Short machine-readable category for a task failure."""
    match exc:
        case GitSyncError():
            return exc.kind.value
        case LinkConflict():
            return "link-conflict"
        case LinkError():
            return "link"
        case MergeTypeMismatch():
            return "merge-type-mismatch"
        case TaskExecutionError():
            return "command"
        case Cancelled():
            return CANCELLED
        case ConfigError():
            return "config"
        case ConvergeError():
            return "error"
    return "internal"


class Scheduler:
    """Runs a :class:`TaskSet` and records every task's outcome.

    Usage::

        sched = Scheduler(RunConfig(keep_going=True), log.default())
        report = sched.run(task_set, cancel=stop_event)
        show_summary(report)
    """

    def __init__(
        self,
        config: RunConfig,
        logger: log.Log | None = None,
        defaults_store: DefaultsStore | None = None,
    ) -> None:
        self.config = config
        self.log = logger or log.default()
        self.defaults_store = defaults_store or PlistDefaultsStore()

    def live_output(self, task_set: TaskSet) -> bool:
        if self.config.console is not None:
            return self.config.console
        return len(task_set) == 1

    # ── phases ───────────────────────────────────────────────────

    def run(
        self,
        task_set: TaskSet,
        cancel: threading.Event | None = None,
        report: RunReport | None = None,
    ) -> RunReport:
        """Run every task of *task_set* and return the finalized report.

        On :class:`KeyboardInterrupt` every task without an outcome is
        recorded ``Skipped("cancelled")`` and *report* is finalized before
        the interrupt propagates, so a caller passing its own report can
        still summarise the run.
        """
        cancel = cancel or threading.Event()
        report = report if report is not None else RunReport()
        live = self.live_output(task_set)
        self.log.debug(
            f"Running {len(task_set)} task(s) with up to {self.config.concurrency} in parallel"
            f" ({'live' if live else 'captured'} output)"
        )

        try:
            self._run_phases(task_set, report, live=live, cancel=cancel)
        except KeyboardInterrupt:
            cancel.set()
            for task in task_set:
                if task.id not in report:
                    report.record(task.id, Skipped(CANCELLED))
            report.finalize()
            raise
        return report.finalize()

    def _run_phases(
        self,
        task_set: TaskSet,
        report: RunReport,
        *,
        live: bool,
        cancel: threading.Event,
    ) -> None:
        halted = False
        for task in task_set.bootstrap_tasks:
            if halted:
                report.record(task.id, Skipped(UPSTREAM_BOOTSTRAP_FAILURE))
                continue
            outcome = self._run_task(task, report, live=live, cancel=cancel)
            if isinstance(outcome, Failed) and not self.config.keep_going:
                self.log.error(f"Bootstrap task '{task.id}' failed, not running the remaining tasks")
                halted = True

        if halted:
            for task in task_set.parallel_tasks:
                report.record(task.id, Skipped(UPSTREAM_BOOTSTRAP_FAILURE))
        elif task_set.parallel_tasks:
            self._run_parallel(task_set.parallel_tasks, report, live=live, cancel=cancel)

    def _run_parallel(
        self,
        tasks: list[TaskDefinition],
        report: RunReport,
        *,
        live: bool,
        cancel: threading.Event,
    ) -> None:
        workers = min(self.config.concurrency, len(tasks))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="converge") as pool:
            futures = [
                pool.submit(self._run_task, task, report, live=live, cancel=cancel)
                for task in tasks
            ]
            try:
                for future in as_completed(futures):
                    future.result()
            except KeyboardInterrupt:
                # Set before the pool drains so queued tasks record themselves as skipped.
                cancel.set()
                raise

    # ── single task ──────────────────────────────────────────────

    def _run_task(
        self,
        task: TaskDefinition,
        report: RunReport,
        *,
        live: bool,
        cancel: threading.Event,
    ) -> TaskOutcome:
        if cancel.is_set():
            outcome: TaskOutcome = Skipped(CANCELLED)
            report.record(task.id, outcome)
            with self.log.locked():
                self._log_outcome(self.log, task, outcome)
            return outcome

        task_log = self.log if live else self.log.buffered()
        task_log.debug(f"Starting {task.id}")
        try:
            outcome = self.execute(task, task_log, live=live, cancel=cancel)
        except KeyboardInterrupt:
            cancel.set()
            outcome = Failed(CANCELLED, CANCELLED)
            report.record(task.id, outcome)
            self._finish(task, task_log, outcome)
            raise
        except ConvergeError as exc:
            outcome = Failed(str(exc), failure_kind(exc))
        except Exception as exc:
            outcome = Failed(f"{type(exc).__name__}: {exc}", failure_kind(exc))

        report.record(task.id, outcome)
        self._finish(task, task_log, outcome)
        return outcome

    def execute(
        self,
        task: TaskDefinition,
        task_log: log.Log,
        *,
        live: bool = False,
        cancel: threading.Event | None = None,
    ) -> TaskOutcome:
        op = task.operation
        match op:
            case RunCommand():
                return run_command(task, op, task_log, live=live, cancel=cancel)
            case Link():
                return run_link(op, task_log, cancel)
            case GitSync():
                return run_git_sync(op, task_log, cancel)
            case DefaultsWrite():
                return run_defaults(op, self.defaults_store, task_log, cancel)
            case _:
                assert_never(op)

    def _finish(self, task: TaskDefinition, task_log: log.Log, outcome: TaskOutcome) -> None:
        self._log_outcome(task_log, task, outcome)
        if task_log.is_buffered:
            self.log.flush_block(task.id, task_log)

    @staticmethod
    def _log_outcome(target: log.Log, task: TaskDefinition, outcome: TaskOutcome) -> None:
        text = f"{task.id}: {escape(describe(outcome))}"
        match outcome:
            case Succeeded(changed=True):
                target.success(text)
            case Succeeded():
                target.info(text)
            case Skipped():
                target.warn(text)
            case Failed():
                target.error(text)
