"""Shared fixtures for converge tests.

File handling in tests:
- Use tmp_path for any directory or file creation so tests are isolated and cleaned up.
- Preferences are redirected into tmp_path so nothing touches ~/Library.
"""

from __future__ import annotations

import io
import subprocess
from pathlib import Path

import pytest
from rich.console import Console

from converge.io_utils import write_text
from converge.log import Log
from converge.tasks.model import Operation, RunCommand, TaskDefinition


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep tests away from the user's config, preferences and git identity."""
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("CONVERGE_DEFAULTS_DIR", str(home / "Preferences"))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
    monkeypatch.delenv("CONVERGE_CONFIG", raising=False)
    monkeypatch.delenv("CONVERGE_CONCURRENCY", raising=False)
    for var in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(var, "Test")
    for var in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(var, "test@test")


def _git(repo: Path, *args: str) -> str:
    """Run git in *repo*, failing the test on error."""
    r = subprocess.run(["git", *args], cwd=repo, capture_output=True, text=True)
    assert r.returncode == 0, f"git {' '.join(args)} failed: {r.stderr}"
    return r.stdout.strip()


def _commit_file(repo: Path, name: str, content: str, msg: str) -> str:
    write_text(repo / name, content)
    _git(repo, "add", name)
    _git(repo, "commit", "-q", "-m", msg)
    return _git(repo, "rev-parse", "HEAD")


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a minimal git repo on ``main`` with one commit."""
    repo = tmp_path / "upstream"
    repo.mkdir()
    subprocess.run(["git", "init", "-q", "-b", "main"], cwd=repo, capture_output=True, check=True)
    _git(repo, "config", "commit.gpgsign", "false")
    _commit_file(repo, "README.md", "# Test", "Initial")
    return repo


def _make_task(
    id: str,
    operation: Operation | None = None,
    is_bootstrap: bool = False,
    working_directory: Path | None = None,
    env: dict[str, str] | None = None,
) -> TaskDefinition:
    return TaskDefinition(
        id=id,
        operation=operation or RunCommand(run_cmd=["true"]),
        is_bootstrap=is_bootstrap,
        working_directory=working_directory,
        environment_overrides=env or {},
    )


@pytest.fixture
def make_task():
    """Factory fixture that creates TaskDefinition instances."""
    return _make_task


class CapturedLog(Log):
    """A :class:`Log` writing plain text into memory."""

    def __init__(self, *, verbose: bool = False) -> None:
        self.stream = io.StringIO()
        console = Console(file=self.stream, force_terminal=False, color_system=None, width=200)
        super().__init__(console, console, verbose=verbose)

    @property
    def text(self) -> str:
        return self.stream.getvalue()


@pytest.fixture
def captured_log() -> CapturedLog:
    return CapturedLog(verbose=True)
