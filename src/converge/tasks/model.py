"""Task definitions, operations, and outcomes used across loading and execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Union

UPSTREAM_BOOTSTRAP_FAILURE = "upstream bootstrap failure"
CANCELLED = "cancelled"

DEFAULT_REMOTE = "origin"
GLOBAL_DOMAIN = "NSGlobalDomain"


# ── Operations ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class RunCommand:
    run_cmd: list[str] | str
    run_if_cmd: list[str] | str | None = None


@dataclass(frozen=True)
class Link:
    from_dir: Path
    to_dir: Path


@dataclass(frozen=True)
class GitRepo:
    url: str
    path: Path
    branch: str | None = None
    remote: str = DEFAULT_REMOTE
    prune: bool = False


@dataclass(frozen=True)
class GitSync:
    repos: tuple[GitRepo, ...]


@dataclass(frozen=True)
class DefaultsEntry:
    domain: str
    key: str
    value: Any
    global_domain: bool = False

    @property
    def effective_domain(self) -> str:
        return GLOBAL_DOMAIN if self.global_domain else self.domain


@dataclass(frozen=True)
class DefaultsWrite:
    entries: tuple[DefaultsEntry, ...]


Operation = Union[RunCommand, Link, GitSync, DefaultsWrite]


# ── Outcomes ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Succeeded:
    changed: bool


@dataclass(frozen=True)
class Skipped:
    reason: str


@dataclass(frozen=True)
class Failed:
    error: str
    kind: str = ""


TaskOutcome = Union[Succeeded, Skipped, Failed]


# ── Definitions ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class TaskDefinition:
    id: str
    operation: Operation
    is_bootstrap: bool = False
    working_directory: Path | None = None
    environment_overrides: dict[str, str] = field(default_factory=dict, hash=False)
    description: str = ""
    source: Path | None = field(default=None, compare=False)


@dataclass
class TaskSet:
    """Selected tasks split into the two run phases."""

    bootstrap_tasks: list[TaskDefinition] = field(default_factory=list)
    parallel_tasks: list[TaskDefinition] = field(default_factory=list)

    def __iter__(self) -> Iterator[TaskDefinition]:
        yield from self.bootstrap_tasks
        yield from self.parallel_tasks

    def __len__(self) -> int:
        return len(self.bootstrap_tasks) + len(self.parallel_tasks)

    def ids(self) -> list[str]:
        return [t.id for t in self]

    def get(self, task_id: str) -> TaskDefinition | None:
        for t in self:
            if t.id == task_id:
                return t
        return None
