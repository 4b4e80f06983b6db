"""Mirror every file under a source directory as symlinks in a destination."""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from converge import log
from converge.errors import Cancelled, LinkConflict, LinkError
from converge.tasks.model import Link, Succeeded, TaskOutcome


class LinkKind(str, Enum):
    CREATE = "create"
    NOOP = "noop"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class LinkAction:
    source: Path
    dest: Path
    kind: LinkKind
    reason: str = ""


def _canonical_dir(path: Path, what: str) -> Path:
    expanded = path.expanduser()
    if not expanded.exists():
        raise LinkError(f"{what} directory doesn't exist: {expanded}")
    if not expanded.is_dir():
        raise LinkError(f"{what} path is not a directory: {expanded}")
    return expanded.resolve()


def source_entries(from_dir: Path) -> list[Path]:
    """Every non-directory entry under *from_dir*, in a stable order.

    Symlinks to directories are returned as entries and not descended into.
    """
    entries: list[Path] = []

    def _raise(exc: OSError) -> None:
        raise LinkError(f"Cannot read {exc.filename}: {exc.strerror}") from exc

    for root, dirs, files in os.walk(from_dir, onerror=_raise):
        base = Path(root)
        dirs.sort()
        linked_dirs = [d for d in dirs if (base / d).is_symlink()]
        dirs[:] = [d for d in dirs if d not in linked_dirs]
        entries.extend(base / name for name in sorted(files + linked_dirs))
    return entries


def _blocking_ancestor(dest: Path, to_dir: Path) -> Path | None:
    """First existing non-directory between *to_dir* and *dest*."""
    for parent in reversed(dest.relative_to(to_dir).parents):
        if parent == Path("."):
            continue
        candidate = to_dir / parent
        if not candidate.exists() and not candidate.is_symlink():
            return None
        if not candidate.is_dir():
            return candidate
    return None


# ── Decisions (pure) ─────────────────────────────────────────────────

def plan_link(source: Path, dest: Path, to_dir: Path) -> LinkAction:
    blocker = _blocking_ancestor(dest, to_dir)
    if blocker is not None:
        return LinkAction(source, dest, LinkKind.CONFLICT, f"{blocker} is not a directory")

    if dest.is_symlink():
        target = Path(os.readlink(dest))
        if not target.is_absolute():
            target = Path(os.path.normpath(dest.parent / target))
        if target == source:
            return LinkAction(source, dest, LinkKind.NOOP)
        if not dest.exists():
            return LinkAction(source, dest, LinkKind.CONFLICT, f"dangling symlink to {target}")
        return LinkAction(source, dest, LinkKind.CONFLICT, f"symlink to {target}")

    if dest.is_dir():
        return LinkAction(source, dest, LinkKind.CONFLICT, "directory in the way")
    if dest.exists():
        return LinkAction(source, dest, LinkKind.CONFLICT, "file in the way")
    return LinkAction(source, dest, LinkKind.CREATE)


def plan_links(from_dir: Path, to_dir: Path) -> list[LinkAction]:
    return [
        plan_link(source, to_dir / source.relative_to(from_dir), to_dir)
        for source in source_entries(from_dir)
    ]


# ── Application ──────────────────────────────────────────────────────

def apply_link(action: LinkAction) -> bool:
    """Create the link for a ``CREATE`` action. Returns ``True`` if it did."""
    if action.kind is not LinkKind.CREATE:
        return False
    action.dest.parent.mkdir(parents=True, exist_ok=True)
    os.symlink(action.source, action.dest)
    return True


def run_link(
    op: Link,
    logger: log.Log | None = None,
    cancel: threading.Event | None = None,
) -> TaskOutcome:
    logger = logger or log.default()
    from_dir = _canonical_dir(op.from_dir, "From")
    to_dir = _canonical_dir(op.to_dir, "To")
    logger.debug(f"Linking files from {from_dir} into {to_dir}")

    actions = plan_links(from_dir, to_dir)
    conflicts = [a for a in actions if a.kind is LinkKind.CONFLICT]
    if conflicts:
        for a in conflicts:
            logger.warn(f"{a.dest}: {a.reason}")
        raise LinkConflict([a.dest for a in conflicts])

    created = 0
    for action in actions:
        if cancel is not None and cancel.is_set():
            raise Cancelled()
        if apply_link(action):
            logger.info(f"Linked {action.dest} -> {action.source}")
            created += 1

    logger.debug(f"{created} link(s) created, {len(actions) - created} already in place")
    return Succeeded(changed=created > 0)
