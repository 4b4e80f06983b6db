"""Resolve the effective task set from the loaded definitions and CLI filters."""

from __future__ import annotations

from typing import Iterable

from converge import log
from converge.errors import ConfigError, UnknownTaskReference
from converge.tasks.model import TaskDefinition, TaskSet
from converge.tasks.validate import find_duplicate_ids


def _normalize(ids: Iterable[str] | None) -> set[str]:
    if not ids:
        return set()
    return {i.strip() for i in ids if i and i.strip()}


def select_tasks(
    tasks: list[TaskDefinition],
    *,
    include: Iterable[str] | None = None,
    exclude: Iterable[str] | None = None,
    bootstrap: bool = False,
    bootstrap_order: list[str] | None = None,
    logger: log.Log | None = None,
) -> TaskSet:
    """Filter *tasks* and split them into the bootstrap and parallel phases.

    * A non-empty *include* restricts the candidates to those ids.
    * *exclude* always removes a task, even one also named in *include*.
    * Filter ids that match no task are ignored.
    * With *bootstrap*, bootstrap tasks are always selected and run first,
      in *bootstrap_order* when given, otherwise in definition order.
      Without it they are ordinary tasks.

    Raises :class:`UnknownTaskReference` when *bootstrap_order* names a task
    that does not exist.
    """
    logger = logger or log.default()

    dupes = find_duplicate_ids(tasks)
    if dupes:
        raise ConfigError(f"Duplicate task id(s): {', '.join(dupes)}")

    by_id = {t.id: t for t in tasks}
    for tid in bootstrap_order or []:
        if tid not in by_id:
            raise UnknownTaskReference(tid, "bootstrap_tasks")

    included = _normalize(include)
    excluded = _normalize(exclude)
    for tid in sorted((included | excluded) - by_id.keys()):
        logger.debug(f"Task filter '{tid}' matches no task, ignoring.")

    def wanted(task: TaskDefinition) -> bool:
        if task.id in excluded:
            return False
        return not included or task.id in included

    selected = TaskSet()
    if bootstrap:
        boot = [t for t in tasks if t.is_bootstrap]
        if bootstrap_order:
            rank = {tid: n for n, tid in enumerate(bootstrap_order)}
            boot.sort(key=lambda t: rank.get(t.id, len(rank)))
        selected.bootstrap_tasks = boot
        selected.parallel_tasks = [t for t in tasks if not t.is_bootstrap and wanted(t)]
    else:
        selected.parallel_tasks = [t for t in tasks if wanted(t)]

    logger.debug(
        f"Selected {len(selected.bootstrap_tasks)} bootstrap and "
        f"{len(selected.parallel_tasks)} parallel task(s)"
    )
    return selected
