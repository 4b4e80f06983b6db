"""Checks run on task definitions before anything is scheduled."""

from __future__ import annotations

from collections import Counter
from pathlib import Path
from typing import Iterable

from converge.errors import ConfigError
from converge.tasks.model import (
    DefaultsWrite,
    GitSync,
    Link,
    RunCommand,
    TaskDefinition,
)


def find_duplicate_ids(tasks: Iterable[TaskDefinition]) -> list[str]:
    counts = Counter(t.id for t in tasks)
    return sorted(tid for tid, n in counts.items() if n > 1)


def _describe(task: TaskDefinition) -> str:
    return f"{task.id} ({task.source})" if task.source else task.id


def operation_problems(task: TaskDefinition) -> list[str]:
    """Return human-readable problems with the task's operation payload."""
    problems: list[str] = []
    op = task.operation
    match op:
        case RunCommand():
            if not op.run_cmd:
                problems.append("run_cmd is empty")
            if op.run_if_cmd is not None and not op.run_if_cmd:
                problems.append("run_if_cmd is empty")
        case Link():
            # Path("") collapses to Path(".").
            if Path(".") in (op.from_dir, op.to_dir):
                problems.append("link needs both from_dir and to_dir")
        case GitSync():
            if not op.repos:
                problems.append("git needs at least one repository")
            for repo in op.repos:
                if not repo.url:
                    problems.append(f"git repository at {repo.path} has no url")
                if not repo.remote:
                    problems.append(f"git repository at {repo.path} has an empty remote name")
        case DefaultsWrite():
            if not op.entries:
                problems.append("defaults needs at least one domain/key")
            for entry in op.entries:
                if not entry.effective_domain or not entry.key:
                    problems.append("defaults entries need a domain and a key")
        case _:
            problems.append(f"unsupported operation {type(op).__name__}")
    return problems


def validate_definitions(tasks: list[TaskDefinition]) -> None:
    """Raise :class:`ConfigError` listing every problem found."""
    errors: list[str] = []

    dupes = find_duplicate_ids(tasks)
    if dupes:
        errors.append(f"Duplicate task id(s): {', '.join(dupes)}")

    for task in tasks:
        if not task.id.strip():
            errors.append(f"Task with empty id ({task.source})")
        for problem in operation_problems(task):
            errors.append(f"{_describe(task)}: {problem}")

    if errors:
        raise ConfigError("\n".join(errors))
