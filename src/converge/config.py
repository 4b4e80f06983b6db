"""Configuration defaults, env vars, and runtime options for converge."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from converge.errors import ConfigError


CONFIG_FILE_NAME = "converge.yaml"
DEFAULT_TASKS_PATH = "tasks"


@dataclass
class RunConfig:
    """Resolved runtime options handed from the CLI to the scheduler."""

    # Selection
    bootstrap: bool = False
    include: list[str] | None = None
    exclude: list[str] | None = None

    # Execution
    keep_going: bool = False
    concurrency: int = 0
    console: bool | None = None

    # Misc
    verbose: bool = False

    def __post_init__(self) -> None:
        if not self.concurrency:
            self.concurrency = default_concurrency()
        if self.concurrency < 1:
            raise ConfigError(f"Concurrency must be at least 1, got {self.concurrency}")


@dataclass
class ProjectConfig:
    """Contents of ``converge.yaml``."""

    path: Path | None = None
    tasks_path: str = DEFAULT_TASKS_PATH
    env: dict[str, str] = field(default_factory=dict)
    inherit_env: list[str] = field(default_factory=list)
    bootstrap_tasks: list[str] = field(default_factory=list)

    @property
    def tasks_dir(self) -> Path | None:
        if self.path is None:
            return None
        return (self.path.parent / os.path.expanduser(self.tasks_path)).resolve()

    def task_env(self) -> dict[str, str]:
        """Environment shared by every task: inherited names, then ``env``.

        This is the whole environment a command sees; process variables not
        named in ``inherit_env`` are not passed on.
        """
        env: dict[str, str] = {}
        for name in self.inherit_env:
            value = os.environ.get(name)
            if value is not None:
                env[name] = value
        base = dict(env)
        for key, value in self.env.items():
            env[key] = expand(value, base)
            base[key] = env[key]
        return env


def default_concurrency() -> int:
    raw = os.environ.get("CONVERGE_CONCURRENCY", "").strip()
    if raw:
        try:
            return int(raw)
        except ValueError:
            raise ConfigError(f"CONVERGE_CONCURRENCY must be an integer, got {raw!r}") from None
    return os.cpu_count() or 1


_VAR_RE = re.compile(r"\$(?:\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)\}|(?P<bare>[A-Za-z_][A-Za-z0-9_]*))")


def expand(value: str, env: dict[str, str]) -> str:
    """Expand ``~`` and ``$VAR``/``${VAR}`` using *env* (unknown names are left as-is)."""

    def _sub(m: re.Match[str]) -> str:
        name = m.group("braced") or m.group("bare")
        return env.get(name, m.group(0))

    return _VAR_RE.sub(_sub, os.path.expanduser(value))


def resolve_config_path(explicit: str | None = None) -> tuple[Path, bool]:
    """Locate ``converge.yaml``.

    Returns ``(path, explicit)``; *explicit* tells the caller whether a
    missing file is an error.  Order: ``--config``, ``$CONVERGE_CONFIG``,
    ``$XDG_CONFIG_HOME/converge/converge.yaml``, ``~/.config/converge/converge.yaml``.
    """
    if explicit:
        path = Path(explicit).expanduser()
        if not path.exists():
            raise ConfigError(f"Config path given with --config doesn't exist: {path}")
        return path, True

    env_path = os.environ.get("CONVERGE_CONFIG")
    if env_path:
        path = Path(env_path).expanduser()
        if not path.exists():
            raise ConfigError(f"Config path in CONVERGE_CONFIG doesn't exist: {path}")
        return path, True

    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "converge" / CONFIG_FILE_NAME, False

