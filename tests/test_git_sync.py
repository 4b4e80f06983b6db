"""Tests for converge.ops.git_sync against real temporary git repos."""

from __future__ import annotations

import subprocess
import threading
from pathlib import Path

import pytest

from converge import git_ops
from converge.errors import Cancelled, GitErrorKind, GitSyncError
from converge.git_ops import BranchInfo
from converge.ops.git_sync import (
    RefAction,
    RepoState,
    SyncAction,
    plan_prune,
    plan_ref_update,
    plan_sync,
    run_git_sync,
    sync_repo,
)
from converge.tasks.model import GitRepo, GitSync, Succeeded


# ── helpers ──────────────────────────────────────────────────────────


def _git(repo: Path, *args: str) -> str:
    r = subprocess.run(["git", *args], cwd=repo, capture_output=True, text=True)
    assert r.returncode == 0, f"git {' '.join(args)} failed: {r.stderr}"
    return r.stdout.strip()


def _commit_file(repo: Path, name: str, content: str, msg: str) -> str:
    (repo / name).write_text(content)
    _git(repo, "add", name)
    _git(repo, "commit", "-q", "-m", msg)
    return _git(repo, "rev-parse", "HEAD")


def _head(repo: Path, ref: str = "HEAD") -> str:
    return _git(repo, "rev-parse", ref)


@pytest.fixture
def clone(git_repo: Path, tmp_path: Path) -> tuple[GitRepo, Path]:
    """A repo entry pointing at ``git_repo``, already cloned once."""
    repo = GitRepo(url=str(git_repo), path=tmp_path / "checkout")
    assert sync_repo(repo) is True
    _git(repo.path, "config", "commit.gpgsign", "false")
    return repo, repo.path


# ── Decisions ────────────────────────────────────────────────────────


class TestPlanSync:
    def test_missing_path_clones(self, tmp_path: Path) -> None:
        state = RepoState(tmp_path / "x", exists=False, is_repo=False, is_empty_dir=False)
        assert plan_sync(state) is SyncAction.CLONE

    def test_empty_dir_clones(self, tmp_path: Path) -> None:
        state = RepoState(tmp_path, exists=True, is_repo=False, is_empty_dir=True)
        assert plan_sync(state) is SyncAction.CLONE

    def test_repo_updates(self, tmp_path: Path) -> None:
        state = RepoState(tmp_path, exists=True, is_repo=True, is_empty_dir=False)
        assert plan_sync(state) is SyncAction.UPDATE

    def test_non_repo_is_missing_repo(self, tmp_path: Path) -> None:
        state = RepoState(tmp_path, exists=True, is_repo=False, is_empty_dir=False)
        with pytest.raises(GitSyncError) as exc_info:
            plan_sync(state)
        assert exc_info.value.kind is GitErrorKind.MISSING_REPO


class TestPlanRefUpdate:
    @pytest.mark.parametrize(
        ("local", "remote", "local_anc", "remote_anc", "expected"),
        [
            (None, "b", False, False, RefAction.CREATE),
            ("a", "a", True, True, RefAction.UP_TO_DATE),
            ("a", "b", True, False, RefAction.FAST_FORWARD),
            ("b", "a", False, True, RefAction.AHEAD),
            ("a", "b", False, False, RefAction.DIVERGED),
        ],
    )
    def test_actions(self, local, remote, local_anc, remote_anc, expected) -> None:
        action = plan_ref_update(local, remote, local_is_ancestor=local_anc, remote_is_ancestor=remote_anc)
        assert action is expected


class TestPlanPrune:
    def test_only_gone_upstreams_on_remote(self) -> None:
        branches = [
            BranchInfo("main", "1", "refs/remotes/origin/main", "origin", False),
            BranchInfo("merged", "2", "refs/remotes/origin/merged", "origin", True),
            BranchInfo("local", "3", "", "", False),
            BranchInfo("fork", "4", "refs/remotes/fork/x", "fork", True),
        ]
        assert [b.name for b in plan_prune(branches, "main", "origin")] == ["merged"]

    def test_never_prunes_current(self) -> None:
        branches = [BranchInfo("merged", "2", "refs/remotes/origin/merged", "origin", True)]
        assert plan_prune(branches, "merged", "origin") == []


# ── Clone ────────────────────────────────────────────────────────────


class TestClone:
    def test_clone_into_missing_path(self, git_repo: Path, tmp_path: Path) -> None:
        dest = tmp_path / "a" / "b" / "checkout"
        assert sync_repo(GitRepo(url=str(git_repo), path=dest)) is True
        assert (dest / "README.md").exists()
        assert git_ops.current_branch(cwd=dest) == "main"
        assert _head(dest) == _head(git_repo)

    def test_clone_into_empty_dir(self, git_repo: Path, tmp_path: Path) -> None:
        dest = tmp_path / "empty"
        dest.mkdir()
        assert sync_repo(GitRepo(url=str(git_repo), path=dest)) is True
        assert (dest / ".git").exists()

    def test_clone_with_remote_and_branch(self, git_repo: Path, tmp_path: Path) -> None:
        _git(git_repo, "checkout", "-q", "-b", "dev")
        _commit_file(git_repo, "dev.txt", "dev", "dev work")
        _git(git_repo, "checkout", "-q", "main")

        dest = tmp_path / "checkout"
        sync_repo(GitRepo(url=str(git_repo), path=dest, branch="dev", remote="up"))
        assert git_ops.current_branch(cwd=dest) == "dev"
        assert git_ops.remote_url("up", cwd=dest) == str(git_repo)

    def test_non_repo_directory_fails(self, git_repo: Path, tmp_path: Path) -> None:
        dest = tmp_path / "occupied"
        dest.mkdir()
        (dest / "file").write_text("x")
        with pytest.raises(GitSyncError) as exc_info:
            sync_repo(GitRepo(url=str(git_repo), path=dest))
        assert exc_info.value.kind is GitErrorKind.MISSING_REPO

    def test_bad_url_fails_as_missing_repo(self, tmp_path: Path) -> None:
        with pytest.raises(GitSyncError) as exc_info:
            sync_repo(GitRepo(url=str(tmp_path / "no-such-repo"), path=tmp_path / "dest"))
        assert exc_info.value.kind is GitErrorKind.MISSING_REPO


# ── Update ───────────────────────────────────────────────────────────


class TestUpdate:
    def test_up_to_date_is_unchanged(self, clone: tuple[GitRepo, Path]) -> None:
        repo, _ = clone
        assert sync_repo(repo) is False

    def test_fast_forward(self, clone: tuple[GitRepo, Path], git_repo: Path) -> None:
        repo, path = clone
        new_sha = _commit_file(git_repo, "new.txt", "new", "upstream work")
        assert sync_repo(repo) is True
        assert _head(path) == new_sha
        assert (path / "new.txt").exists()
        assert sync_repo(repo) is False

    def test_diverged_fails_without_touching_refs(self, clone: tuple[GitRepo, Path], git_repo: Path) -> None:
        repo, path = clone
        _commit_file(git_repo, "up.txt", "up", "upstream work")
        local = _commit_file(path, "local.txt", "local", "local work")

        with pytest.raises(GitSyncError) as exc_info:
            sync_repo(repo)
        assert exc_info.value.kind is GitErrorKind.NON_FAST_FORWARD
        assert _head(path) == local

    def test_ahead_is_left_alone(self, clone: tuple[GitRepo, Path]) -> None:
        repo, path = clone
        local = _commit_file(path, "local.txt", "local", "local work")
        assert sync_repo(repo) is False
        assert _head(path) == local

    def test_switches_to_explicit_branch(self, clone: tuple[GitRepo, Path], git_repo: Path) -> None:
        _, path = clone
        _git(git_repo, "checkout", "-q", "-b", "feature")
        sha = _commit_file(git_repo, "feature.txt", "f", "feature work")
        _git(git_repo, "checkout", "-q", "main")

        repo = GitRepo(url=str(git_repo), path=path, branch="feature")
        assert sync_repo(repo) is True
        assert git_ops.current_branch(cwd=path) == "feature"
        assert _head(path) == sha
        assert git_ops.upstream_of("feature", cwd=path) == "origin/feature"
        assert sync_repo(repo) is False

    def test_branch_switch_refuses_dirty_worktree(self, clone: tuple[GitRepo, Path], git_repo: Path) -> None:
        _, path = clone
        _git(git_repo, "branch", "feature")
        (path / "README.md").write_text("edited")

        with pytest.raises(GitSyncError) as exc_info:
            sync_repo(GitRepo(url=str(git_repo), path=path, branch="feature"))
        assert exc_info.value.kind is GitErrorKind.DIRTY_WORKTREE
        assert git_ops.current_branch(cwd=path) == "main"
        assert git_ops.rev_parse("refs/heads/feature", cwd=path) is None

    def test_explicit_branch_missing_on_remote(self, clone: tuple[GitRepo, Path], git_repo: Path) -> None:
        _, path = clone
        with pytest.raises(GitSyncError, match="does not exist on remote"):
            sync_repo(GitRepo(url=str(git_repo), path=path, branch="nope"))

    def test_remote_url_is_corrected(self, clone: tuple[GitRepo, Path], git_repo: Path, tmp_path: Path) -> None:
        _, path = clone
        _git(path, "remote", "set-url", "origin", str(tmp_path / "old-location"))
        assert sync_repo(GitRepo(url=str(git_repo), path=path)) is True
        assert git_ops.remote_url("origin", cwd=path) == str(git_repo)

    def test_missing_remote_is_added(self, clone: tuple[GitRepo, Path], git_repo: Path) -> None:
        _, path = clone
        repo = GitRepo(url=str(git_repo), path=path, remote="mirror")
        assert sync_repo(repo) is True
        assert git_ops.remote_url("mirror", cwd=path) == str(git_repo)
        assert git_ops.upstream_of("main", cwd=path) == "mirror/main"

    def test_detached_head_without_branch_is_unchanged(self, clone: tuple[GitRepo, Path]) -> None:
        repo, path = clone
        _git(path, "checkout", "-q", "--detach")
        assert sync_repo(repo) is False

    def test_cancel_before_start(self, clone: tuple[GitRepo, Path]) -> None:
        repo, _ = clone
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(Cancelled):
            sync_repo(repo, cancel=cancel)


# ── Prune ────────────────────────────────────────────────────────────


class TestPrune:
    def test_prunes_branches_whose_upstream_is_gone(self, git_repo: Path, tmp_path: Path) -> None:
        _git(git_repo, "branch", "merged")
        repo = GitRepo(url=str(git_repo), path=tmp_path / "checkout", prune=True)
        sync_repo(repo)
        path = repo.path
        _git(path, "branch", "--track", "merged", "origin/merged")
        _git(path, "branch", "local-only")
        _git(git_repo, "branch", "-D", "merged")

        assert sync_repo(repo) is True
        assert git_ops.rev_parse("refs/heads/merged", cwd=path) is None
        assert git_ops.rev_parse("refs/heads/local-only", cwd=path) is not None
        assert git_ops.current_branch(cwd=path) == "main"
        assert sync_repo(repo) is False

    def test_never_prunes_checked_out_branch(self, git_repo: Path, tmp_path: Path) -> None:
        _git(git_repo, "branch", "merged")
        repo = GitRepo(url=str(git_repo), path=tmp_path / "checkout", prune=True)
        sync_repo(repo)
        path = repo.path
        _git(path, "checkout", "-q", "--track", "origin/merged")
        _git(git_repo, "branch", "-D", "merged")

        sync_repo(repo)
        assert git_ops.current_branch(cwd=path) == "merged"

    def test_without_prune_gone_branches_stay(self, git_repo: Path, tmp_path: Path) -> None:
        _git(git_repo, "branch", "merged")
        repo = GitRepo(url=str(git_repo), path=tmp_path / "checkout")
        sync_repo(repo)
        _git(repo.path, "branch", "--track", "merged", "origin/merged")
        _git(git_repo, "branch", "-D", "merged")

        assert sync_repo(repo) is False
        assert git_ops.rev_parse("refs/heads/merged", cwd=repo.path) is not None


# ── Task wrapper ─────────────────────────────────────────────────────


class TestRunGitSync:
    def test_changed_is_or_of_repos(self, git_repo: Path, tmp_path: Path) -> None:
        first = GitRepo(url=str(git_repo), path=tmp_path / "one")
        sync_repo(first)
        second = GitRepo(url=str(git_repo), path=tmp_path / "two")
        assert run_git_sync(GitSync(repos=(first, second))) == Succeeded(changed=True)
        assert run_git_sync(GitSync(repos=(first, second))) == Succeeded(changed=False)
