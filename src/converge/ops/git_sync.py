"""Clone or fast-forward git repositories, optionally pruning merged branches."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from converge import git_ops, log
from converge.errors import Cancelled, GitErrorKind, GitSyncError
from converge.git_ops import BranchInfo, checked
from converge.io_utils import is_empty_dir
from converge.tasks.model import GitRepo, GitSync, Succeeded, TaskOutcome


class SyncAction(str, Enum):
    CLONE = "clone"
    UPDATE = "update"


class RefAction(str, Enum):
    CREATE = "create"
    FAST_FORWARD = "fast-forward"
    UP_TO_DATE = "up-to-date"
    AHEAD = "ahead"
    DIVERGED = "diverged"


@dataclass(frozen=True)
class RepoState:
    path: Path
    exists: bool
    is_repo: bool
    is_empty_dir: bool


# ── Decisions (pure) ─────────────────────────────────────────────────

def inspect_repo(repo: GitRepo) -> RepoState:
    path = repo.path
    exists = path.exists() or path.is_symlink()
    is_dir = path.is_dir()
    return RepoState(
        path=path,
        exists=exists,
        is_repo=is_dir and git_ops.is_work_tree(path),
        is_empty_dir=is_empty_dir(path),
    )


def plan_sync(state: RepoState) -> SyncAction:
    if not state.exists or state.is_empty_dir:
        return SyncAction.CLONE
    if state.is_repo:
        return SyncAction.UPDATE
    raise GitSyncError(
        GitErrorKind.MISSING_REPO,
        "path exists but is not a git repository",
        state.path,
    )


def plan_ref_update(
    local_sha: str | None,
    remote_sha: str,
    *,
    local_is_ancestor: bool,
    remote_is_ancestor: bool,
) -> RefAction:
    """Decide how a local branch relates to its remote tip."""
    if local_sha is None:
        return RefAction.CREATE
    if local_sha == remote_sha:
        return RefAction.UP_TO_DATE
    if local_is_ancestor:
        return RefAction.FAST_FORWARD
    if remote_is_ancestor:
        return RefAction.AHEAD
    return RefAction.DIVERGED


def plan_prune(branches: list[BranchInfo], current: str | None, remote: str) -> list[BranchInfo]:
    """Branches whose upstream on *remote* was deleted.

    The checked-out branch and branches without an upstream are never returned.
    """
    return [
        b
        for b in branches
        if b.name != current and b.upstream and b.remote == remote and b.gone
    ]


# ── Application ──────────────────────────────────────────────────────

def _poll(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise Cancelled()


def sync_repo(
    repo: GitRepo,
    logger: log.Log | None = None,
    cancel: threading.Event | None = None,
) -> bool:
    """Converge one repository. Returns ``True`` if anything changed."""
    logger = logger or log.default()
    _poll(cancel)
    action = plan_sync(inspect_repo(repo))
    logger.debug(f"git {repo.path}: {action.value}")
    if action is SyncAction.CLONE:
        return _clone(repo, logger)
    return _update(repo, logger, cancel)


def _clone(repo: GitRepo, logger: log.Log) -> bool:
    logger.info(f"Cloning {repo.url} into {repo.path}")
    checked(
        git_ops.clone(repo.url, repo.path, remote=repo.remote, branch=repo.branch),
        "git clone",
        repo.path,
    )
    return True


def _update(repo: GitRepo, logger: log.Log, cancel: threading.Event | None) -> bool:
    path = repo.path
    changed = False

    existing = git_ops.remote_url(repo.remote, cwd=path)
    if existing is None:
        logger.info(f"Adding remote {repo.remote} ({repo.url}) to {path}")
        checked(git_ops.add_remote(repo.remote, repo.url, cwd=path), "git remote add", path)
        changed = True
    elif existing != repo.url:
        logger.warn(f"Remote {repo.remote} in {path} pointed at {existing}, changing to {repo.url}")
        checked(git_ops.set_remote_url(repo.remote, repo.url, cwd=path), "git remote set-url", path)
        changed = True

    _poll(cancel)
    checked(git_ops.fetch(repo.remote, cwd=path), f"git fetch {repo.remote}", path)
    _poll(cancel)

    current = git_ops.current_branch(cwd=path)
    branch = repo.branch or current
    if branch is None:
        logger.warn(f"{path} has a detached HEAD and no branch was configured, not updating")
    else:
        changed = _update_branch(repo, branch, current, logger) or changed

    if repo.prune:
        _poll(cancel)
        changed = _prune(repo, logger) or changed

    return changed


def _update_branch(repo: GitRepo, branch: str, current: str | None, logger: log.Log) -> bool:
    path = repo.path
    remote_ref = f"refs/remotes/{repo.remote}/{branch}"
    local_ref = f"refs/heads/{branch}"

    remote_sha = git_ops.rev_parse(remote_ref, cwd=path)
    if remote_sha is None:
        if repo.branch:
            raise GitSyncError(
                GitErrorKind.COMMAND,
                f"branch '{branch}' does not exist on remote '{repo.remote}'",
                path,
            )
        logger.debug(f"{path}: {branch} has no counterpart on {repo.remote}, nothing to update")
        return False

    local_sha = git_ops.rev_parse(local_ref, cwd=path)
    action = plan_ref_update(
        local_sha,
        remote_sha,
        local_is_ancestor=local_sha is not None and git_ops.is_ancestor(local_sha, remote_sha, cwd=path),
        remote_is_ancestor=local_sha is not None and git_ops.is_ancestor(remote_sha, local_sha, cwd=path),
    )
    logger.debug(f"{path}: {branch} {action.value} ({local_sha} -> {remote_sha})")

    if action is RefAction.DIVERGED:
        raise GitSyncError(
            GitErrorKind.NON_FAST_FORWARD,
            f"local '{branch}' and '{repo.remote}/{branch}' have diverged, refusing to update",
            path,
        )
    if action is RefAction.AHEAD:
        logger.info(f"{path}: {branch} is ahead of {repo.remote}/{branch}, leaving it alone")

    moves = action in (RefAction.CREATE, RefAction.FAST_FORWARD)
    changed = False

    if branch == current:
        if moves:
            logger.info(f"Fast-forwarding {path} {branch} to {remote_sha[:12]}")
            checked(git_ops.merge_ff_only(remote_ref, cwd=path), "git merge --ff-only", path)
            changed = True
    else:
        if git_ops.has_dirty_worktree(cwd=path):
            raise GitSyncError(
                GitErrorKind.DIRTY_WORKTREE,
                f"cannot switch to '{branch}' with uncommitted changes",
                path,
            )
        if moves:
            checked(git_ops.update_ref(local_ref, remote_sha, local_sha, cwd=path), "git update-ref", path)
        result = git_ops.checkout(branch, cwd=path)
        if result.returncode != 0 and moves:
            if local_sha is None:
                git_ops.delete_ref(local_ref, remote_sha, cwd=path)
            else:
                git_ops.update_ref(local_ref, local_sha, remote_sha, cwd=path)
        checked(result, f"git checkout {branch}", path)
        logger.info(f"Checked out {branch} in {path}")
        changed = True

    wanted_upstream = f"{repo.remote}/{branch}"
    if git_ops.upstream_of(branch, cwd=path) != wanted_upstream:
        checked(git_ops.set_upstream(branch, wanted_upstream, cwd=path), "git branch --set-upstream-to", path)
        logger.debug(f"{path}: {branch} now tracks {wanted_upstream}")
        changed = True

    return changed


def _prune(repo: GitRepo, logger: log.Log) -> bool:
    path = repo.path
    current = git_ops.current_branch(cwd=path)
    doomed = plan_prune(git_ops.local_branches(cwd=path), current, repo.remote)
    for b in doomed:
        logger.warn(f"Deleting '{path}' branch '{b.name}', was at '{b.sha}'")
        checked(git_ops.delete_ref(f"refs/heads/{b.name}", b.sha, cwd=path), f"deleting {b.name}", path)
    return bool(doomed)


def run_git_sync(
    op: GitSync,
    logger: log.Log | None = None,
    cancel: threading.Event | None = None,
) -> TaskOutcome:
    changed = False
    for repo in op.repos:
        changed = sync_repo(repo, logger, cancel) or changed
    return Succeeded(changed=changed)
