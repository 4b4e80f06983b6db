"""Unit tests for converge.git_ops against real temporary git repos."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from converge import git_ops
from converge.errors import GitErrorKind, GitSyncError


# ── helpers ──────────────────────────────────────────────────────────


def _commit_file(repo: Path, name: str, content: str, msg: str) -> str:
    (repo / name).write_text(content)
    subprocess.run(["git", "add", name], cwd=repo, capture_output=True, check=True)
    subprocess.run(["git", "commit", "-m", msg], cwd=repo, capture_output=True, check=True)
    return git_ops.rev_parse("HEAD", cwd=repo) or ""


# ── TestInspection ───────────────────────────────────────────────────


class TestInspection:
    def test_work_tree(self, git_repo: Path) -> None:
        assert git_ops.is_work_tree(git_repo)

    def test_subdirectory_is_not_a_work_tree_root(self, git_repo: Path) -> None:
        sub = git_repo / "sub"
        sub.mkdir()
        assert not git_ops.is_work_tree(sub)

    def test_plain_dir(self, tmp_path: Path) -> None:
        plain = tmp_path / "plain"
        plain.mkdir()
        assert not git_ops.is_work_tree(plain)
        assert not git_ops.is_work_tree(tmp_path / "missing")

    def test_current_branch_and_detached(self, git_repo: Path) -> None:
        assert git_ops.current_branch(cwd=git_repo) == "main"
        sha = git_ops.rev_parse("HEAD", cwd=git_repo)
        subprocess.run(["git", "checkout", "--quiet", "--detach", sha], cwd=git_repo, check=True)
        assert git_ops.current_branch(cwd=git_repo) is None

    def test_rev_parse_missing_ref(self, git_repo: Path) -> None:
        assert git_ops.rev_parse("refs/heads/nope", cwd=git_repo) is None

    def test_is_ancestor(self, git_repo: Path) -> None:
        first = git_ops.rev_parse("HEAD", cwd=git_repo)
        second = _commit_file(git_repo, "a.txt", "a", "a")
        assert git_ops.is_ancestor(first, second, cwd=git_repo)
        assert not git_ops.is_ancestor(second, first, cwd=git_repo)

    def test_dirty_worktree_ignores_untracked(self, git_repo: Path) -> None:
        (git_repo / "untracked.txt").write_text("x")
        assert not git_ops.has_dirty_worktree(cwd=git_repo)
        (git_repo / "README.md").write_text("changed")
        assert git_ops.has_dirty_worktree(cwd=git_repo)


# ── TestBranches ─────────────────────────────────────────────────────


class TestBranches:
    def test_local_branches_report_upstream_and_gone(self, git_repo: Path, tmp_path: Path) -> None:
        subprocess.run(["git", "branch", "topic"], cwd=git_repo, check=True)
        dest = tmp_path / "clone"
        assert git_ops.clone(str(git_repo), dest).returncode == 0
        subprocess.run(["git", "branch", "--track", "topic", "origin/topic"], cwd=dest, capture_output=True, check=True)
        subprocess.run(["git", "branch", "local"], cwd=dest, check=True)

        subprocess.run(["git", "branch", "-D", "topic"], cwd=git_repo, capture_output=True, check=True)
        assert git_ops.fetch("origin", cwd=dest).returncode == 0

        by_name = {b.name: b for b in git_ops.local_branches(cwd=dest)}
        assert by_name["main"].upstream == "refs/remotes/origin/main"
        assert by_name["main"].remote == "origin"
        assert not by_name["main"].gone
        assert by_name["topic"].gone
        assert by_name["local"].upstream == ""
        assert by_name["local"].remote == ""

    def test_upstream_of(self, git_repo: Path, tmp_path: Path) -> None:
        dest = tmp_path / "clone"
        git_ops.clone(str(git_repo), dest, remote="up")
        assert git_ops.upstream_of("main", cwd=dest) == "up/main"
        assert git_ops.remote_url("up", cwd=dest) == str(git_repo)
        assert git_ops.remote_url("origin", cwd=dest) is None


# ── TestRefs ─────────────────────────────────────────────────────────


class TestRefs:
    def test_update_ref_compare_and_swap(self, git_repo: Path) -> None:
        old = git_ops.rev_parse("HEAD", cwd=git_repo)
        new = _commit_file(git_repo, "b.txt", "b", "b")

        assert git_ops.update_ref("refs/heads/side", old, None, cwd=git_repo).returncode == 0
        assert git_ops.update_ref("refs/heads/side", new, new, cwd=git_repo).returncode != 0
        assert git_ops.rev_parse("refs/heads/side", cwd=git_repo) == old
        assert git_ops.update_ref("refs/heads/side", new, old, cwd=git_repo).returncode == 0
        assert git_ops.rev_parse("refs/heads/side", cwd=git_repo) == new

    def test_update_ref_refuses_to_create_existing(self, git_repo: Path) -> None:
        head = git_ops.rev_parse("HEAD", cwd=git_repo)
        assert git_ops.update_ref("refs/heads/main", head, None, cwd=git_repo).returncode != 0

    def test_delete_ref(self, git_repo: Path) -> None:
        head = git_ops.rev_parse("HEAD", cwd=git_repo)
        git_ops.update_ref("refs/heads/gone", head, None, cwd=git_repo)
        assert git_ops.delete_ref("refs/heads/gone", head, cwd=git_repo).returncode == 0
        assert git_ops.rev_parse("refs/heads/gone", cwd=git_repo) is None


# ── TestChecked ──────────────────────────────────────────────────────


class TestChecked:
    def test_returns_stdout(self, git_repo: Path) -> None:
        r = git_ops._git("rev-parse", "--abbrev-ref", "HEAD", cwd=git_repo)
        assert git_ops.checked(r, "git rev-parse").strip() == "main"

    def test_raises_classified_error(self, tmp_path: Path) -> None:
        r = git_ops.clone(str(tmp_path / "no-such-repo"), tmp_path / "dest")
        with pytest.raises(GitSyncError) as exc_info:
            git_ops.checked(r, "git clone", tmp_path / "dest")
        assert exc_info.value.kind == GitErrorKind.MISSING_REPO
        assert "git clone failed" in str(exc_info.value)
