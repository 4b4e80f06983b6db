"""Error taxonomy and classification of git failure output."""

from __future__ import annotations

from enum import Enum
from pathlib import Path


class ConvergeError(Exception):
    """Base class for every error converge raises on purpose."""


class ConfigError(ConvergeError):
    """Invalid configuration: fatal before scheduling starts."""


class UnknownTaskReference(ConfigError):
    def __init__(self, task_id: str, where: str = "") -> None:
        self.task_id = task_id
        suffix = f" (referenced from {where})" if where else ""
        super().__init__(f"Unknown task '{task_id}'{suffix}")


class LinkError(ConvergeError):
    """The link operation could not run (missing or unreadable directories)."""


class LinkConflict(LinkError):
    def __init__(self, paths: list[Path]) -> None:
        self.paths = list(paths)
        self.path = self.paths[0] if self.paths else None
        listed = "\n  ".join(str(p) for p in self.paths)
        super().__init__(
            f"Refusing to overwrite {len(self.paths)} existing path(s):\n  {listed}"
        )


class GitErrorKind(str, Enum):
    NETWORK = "network"
    AUTH = "auth"
    NON_FAST_FORWARD = "non-fast-forward"
    MISSING_REPO = "missing-repo"
    DIRTY_WORKTREE = "dirty-worktree"
    COMMAND = "command"


class GitSyncError(ConvergeError):
    def __init__(self, kind: GitErrorKind, message: str, path: Path | None = None) -> None:
        self.kind = kind
        self.path = path
        where = f" [{path}]" if path else ""
        super().__init__(f"git {kind.value}{where}: {message}")


class MergeTypeMismatch(ConvergeError):
    def __init__(self, old_type: str, new_type: str, where: str = "") -> None:
        self.old_type = old_type
        self.new_type = new_type
        suffix = f" at {where}" if where else ""
        super().__init__(
            f"Cannot merge a {new_type} containing '...' into a stored {old_type}{suffix}"
        )


class TaskExecutionError(ConvergeError):
    def __init__(self, task_id: str, message: str, returncode: int | None = None) -> None:
        self.task_id = task_id
        self.returncode = returncode
        super().__init__(message)


class Cancelled(ConvergeError):
    def __init__(self, message: str = "cancelled") -> None:
        super().__init__(message)


# ── git stderr classification ───────────────────────────────────────

AUTH_FAILURE_PATTERNS: tuple[str, ...] = (
    "authentication failed",
    "permission denied (publickey",
    "could not read username",
    "could not read password",
    "terminal prompts disabled",
    "invalid username or password",
    "returned error: 403",
    "returned error: 401",
)

NETWORK_FAILURE_PATTERNS: tuple[str, ...] = (
    "could not resolve host",
    "could not resolve hostname",
    "connection refused",
    "connection timed out",
    "operation timed out",
    "network is unreachable",
    "unable to access",
    "failed to connect",
    "early eof",
    "the remote end hung up",
    "ssl certificate problem",
    "gnutls_handshake",
)

MISSING_REPO_PATTERNS: tuple[str, ...] = (
    "does not appear to be a git repository",
    "repository not found",
    "not a git repository",
    "does not exist",
)

NON_FAST_FORWARD_PATTERNS: tuple[str, ...] = (
    "not possible to fast-forward",
    "non-fast-forward",
    "diverging branches",
)


def _contains_any(text: str, patterns: tuple[str, ...]) -> bool:
    lower = text.lower()
    return any(pattern in lower for pattern in patterns)


def classify_git_failure(text: str) -> GitErrorKind:
    """Map git's stderr to the most specific :class:`GitErrorKind`."""
    if not text:
        return GitErrorKind.COMMAND
    if _contains_any(text, AUTH_FAILURE_PATTERNS):
        return GitErrorKind.AUTH
    if _contains_any(text, NON_FAST_FORWARD_PATTERNS):
        return GitErrorKind.NON_FAST_FORWARD
    if _contains_any(text, MISSING_REPO_PATTERNS):
        return GitErrorKind.MISSING_REPO
    if _contains_any(text, NETWORK_FAILURE_PATTERNS):
        return GitErrorKind.NETWORK
    return GitErrorKind.COMMAND
