"""Run report: thread-safe collection of task outcomes and the final summary."""

from __future__ import annotations

import threading
from dataclasses import dataclass

from rich.markup import escape

from converge import log
from converge.tasks.model import Failed, Skipped, Succeeded, TaskOutcome


@dataclass(frozen=True)
class Counts:
    changed: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.changed + self.unchanged + self.skipped + self.failed


class RunReport:
    """Outcomes keyed by task id, recorded by many threads and read once.

    Usage::

        report = RunReport()
        report.record("brew", Succeeded(changed=True))   # from any worker
        report.finalize()
        sys.exit(report.exit_code())
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._outcomes: dict[str, TaskOutcome] = {}
        self._order: list[str] = []
        self._final = False

    def record(self, task_id: str, outcome: TaskOutcome) -> None:
        with self._lock:
            if self._final:
                raise RuntimeError(f"Report is finalized, cannot record {task_id}")
            if task_id in self._outcomes:
                raise RuntimeError(f"Outcome for {task_id} was already recorded")
            self._outcomes[task_id] = outcome
            self._order.append(task_id)

    def finalize(self) -> RunReport:
        with self._lock:
            self._final = True
        return self

    # ── queries ──────────────────────────────────────────────────

    @property
    def finalized(self) -> bool:
        return self._final

    @property
    def outcomes(self) -> dict[str, TaskOutcome]:
        with self._lock:
            return dict(self._outcomes)

    @property
    def order(self) -> list[str]:
        """Task ids in the order their outcomes were recorded."""
        with self._lock:
            return list(self._order)

    def get(self, task_id: str) -> TaskOutcome | None:
        with self._lock:
            return self._outcomes.get(task_id)

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._outcomes

    def __len__(self) -> int:
        with self._lock:
            return len(self._outcomes)

    def counts(self) -> Counts:
        changed = unchanged = skipped = failed = 0
        for outcome in self.outcomes.values():
            match outcome:
                case Succeeded(changed=True):
                    changed += 1
                case Succeeded():
                    unchanged += 1
                case Skipped():
                    skipped += 1
                case Failed():
                    failed += 1
        return Counts(changed, unchanged, skipped, failed)

    def failures(self) -> dict[str, Failed]:
        return {tid: o for tid, o in self.outcomes.items() if isinstance(o, Failed)}

    @property
    def success(self) -> bool:
        return not self.failures()

    def exit_code(self) -> int:
        return 0 if self.success else 1


def describe(outcome: TaskOutcome) -> str:
    match outcome:
        case Succeeded(changed=True):
            return "changed"
        case Succeeded():
            return "unchanged"
        case Skipped(reason=reason):
            return f"skipped ({reason})"
        case Failed(error=error):
            return f"failed: {error}"
    return "unknown"


_MARKS = {
    "changed": "[green]✓[/green]",
    "unchanged": "[dim]=[/dim]",
    "skipped": "[yellow]-[/yellow]",
    "failed": "[red]✗[/red]",
}


def outcome_mark(outcome: TaskOutcome) -> str:
    match outcome:
        case Succeeded(changed=True):
            return _MARKS["changed"]
        case Succeeded():
            return _MARKS["unchanged"]
        case Skipped():
            return _MARKS["skipped"]
    return _MARKS["failed"]


def show_summary(report: RunReport, logger: log.Log | None = None) -> None:
    """Print every task with its outcome, then each failure on its own."""
    logger = logger or log.default()
    out = logger.console
    counts = report.counts()

    out.print("")
    out.print("[bold]============================================[/bold]")
    for tid in report.order:
        outcome = report.get(tid)
        if outcome is None or isinstance(outcome, Failed):
            continue
        out.print(f"  {outcome_mark(outcome)} {tid} [dim]{escape(describe(outcome))}[/dim]")

    failures = report.failures()
    for tid in failures:
        out.print(f"  {_MARKS['failed']} {tid}")

    out.print(
        f"[bold]{counts.total}[/bold] task(s): "
        f"[green]{counts.changed} changed[/green], {counts.unchanged} unchanged, "
        f"[yellow]{counts.skipped} skipped[/yellow], [red]{counts.failed} failed[/red]"
    )
    out.print("[bold]============================================[/bold]")

    for tid, failure in failures.items():
        kind = f" ({failure.kind})" if failure.kind else ""
        logger.error(f"Task '{tid}' failed{kind}: {escape(failure.error)}")
