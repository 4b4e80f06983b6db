"""Git operations: clone, fetch, refs, branches, and tracking configuration."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

from converge.errors import GitSyncError, classify_git_failure


def _env() -> dict[str, str]:
    # Credential helpers still run; interactive prompts would block a worker.
    return {**os.environ, "GIT_TERMINAL_PROMPT": "0"}


def _git(*args: str, cwd: Path | None = None, check: bool = False) -> subprocess.CompletedProcess[str]:
    """Run a git command, capturing its output."""
    return subprocess.run(
        ["git", *args],
        capture_output=True,
        text=True,
        cwd=cwd,
        check=check,
        env=_env(),
    )


def checked(result: subprocess.CompletedProcess[str], what: str, path: Path | None = None) -> str:
    """Return stdout of *result*, raising :class:`GitSyncError` if git failed."""
    if result.returncode == 0:
        return result.stdout
    detail = (result.stderr or result.stdout).strip() or f"exit code {result.returncode}"
    raise GitSyncError(classify_git_failure(detail), f"{what} failed: {detail}", path)


# ── Inspection ───────────────────────────────────────────────────────

def is_work_tree(path: Path) -> bool:
    if not path.is_dir():
        return False
    r = _git("rev-parse", "--is-inside-work-tree", cwd=path)
    if r.returncode != 0 or r.stdout.strip() != "true":
        return False
    top = _git("rev-parse", "--show-toplevel", cwd=path)
    return top.returncode == 0 and Path(top.stdout.strip()).resolve() == path.resolve()


def current_branch(cwd: Path | None = None) -> str | None:
    """Checked-out branch name, or ``None`` for a detached HEAD."""
    r = _git("symbolic-ref", "--short", "-q", "HEAD", cwd=cwd)
    return r.stdout.strip() if r.returncode == 0 and r.stdout.strip() else None


def rev_parse(ref: str, cwd: Path | None = None) -> str | None:
    r = _git("rev-parse", "--verify", "-q", f"{ref}^{{commit}}", cwd=cwd)
    return r.stdout.strip() if r.returncode == 0 and r.stdout.strip() else None


def is_ancestor(ancestor: str, descendant: str, cwd: Path | None = None) -> bool:
    r = _git("merge-base", "--is-ancestor", ancestor, descendant, cwd=cwd)
    return r.returncode == 0


def has_dirty_worktree(cwd: Path | None = None) -> bool:
    """True if tracked files have uncommitted changes (untracked files are ignored)."""
    r = _git("status", "--porcelain", "--untracked-files=no", cwd=cwd)
    return bool(r.stdout.strip())


def remote_url(remote: str, cwd: Path | None = None) -> str | None:
    r = _git("remote", "get-url", remote, cwd=cwd)
    return r.stdout.strip() if r.returncode == 0 else None


def upstream_of(branch: str, cwd: Path | None = None) -> str | None:
    """Short name of *branch*'s configured upstream, e.g. ``origin/main``."""
    r = _git("rev-parse", "--abbrev-ref", "--symbolic-full-name", f"{branch}@{{upstream}}", cwd=cwd)
    return r.stdout.strip() if r.returncode == 0 and r.stdout.strip() else None


@dataclass(frozen=True)
class BranchInfo:
    name: str
    sha: str
    upstream: str  # full ref, "" when not configured
    remote: str  # branch.<name>.remote, "" when not configured
    gone: bool  # upstream configured but the ref no longer exists


def local_branches(cwd: Path | None = None) -> list[BranchInfo]:
    fmt = "%(refname:short)%09%(objectname)%09%(upstream)%09%(upstream:track)"
    r = _git("for-each-ref", f"--format={fmt}", "refs/heads", cwd=cwd)
    out = checked(r, "git for-each-ref", cwd)
    branches: list[BranchInfo] = []
    for line in out.splitlines():
        if not line.strip():
            continue
        name, sha, upstream, track = (line.split("\t") + ["", "", "", ""])[:4]
        remote = ""
        if upstream:
            cfg = _git("config", "--get", f"branch.{name}.remote", cwd=cwd)
            remote = cfg.stdout.strip() if cfg.returncode == 0 else ""
        branches.append(
            BranchInfo(name=name, sha=sha, upstream=upstream, remote=remote, gone=track.strip() == "[gone]")
        )
    return branches


# ── Mutation ─────────────────────────────────────────────────────────

def clone(url: str, path: Path, *, remote: str = "origin", branch: str | None = None) -> subprocess.CompletedProcess[str]:
    args = ["clone", "--origin", remote]
    if branch:
        args += ["--branch", branch]
    path.parent.mkdir(parents=True, exist_ok=True)
    return _git(*args, "--", url, str(path))


def add_remote(remote: str, url: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    return _git("remote", "add", remote, url, cwd=cwd)


def set_remote_url(remote: str, url: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    return _git("remote", "set-url", remote, url, cwd=cwd)


def fetch(remote: str, cwd: Path | None = None, prune: bool = True) -> subprocess.CompletedProcess[str]:
    args = ["fetch", "--quiet"]
    if prune:
        args.append("--prune")
    return _git(*args, remote, cwd=cwd)


def update_ref(ref: str, new: str, old: str | None, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    """Move *ref* to *new* only if it still points at *old* (``None``: must not exist)."""
    expected = old if old is not None else ""
    return _git("update-ref", "-m", "converge: fast-forward", ref, new, expected, cwd=cwd)


def delete_ref(ref: str, old: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    return _git("update-ref", "-d", ref, old, cwd=cwd)


def checkout(branch: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    return _git("checkout", "--quiet", branch, cwd=cwd)


def merge_ff_only(ref: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    return _git("merge", "--ff-only", "--quiet", ref, cwd=cwd)


def set_upstream(branch: str, upstream: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    return _git("branch", f"--set-upstream-to={upstream}", branch, cwd=cwd)

