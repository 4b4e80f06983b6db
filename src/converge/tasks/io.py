"""Load ``converge.yaml`` and the task files it points at."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping

import yaml

from converge import log
from converge.config import ProjectConfig, expand
from converge.errors import ConfigError
from converge.io_utils import read_text
from converge.tasks.model import (
    DEFAULT_REMOTE,
    GLOBAL_DOMAIN,
    DefaultsEntry,
    DefaultsWrite,
    GitRepo,
    GitSync,
    Link,
    Operation,
    RunCommand,
    TaskDefinition,
)
from converge.tasks.validate import validate_definitions

PROJECT_KEYS = {"tasks_path", "env", "inherit_env", "bootstrap_tasks"}
TASK_KEYS = {"name", "description", "run_lib", "run_cmd", "run_if_cmd", "data", "cwd", "env"}
RUN_LIBS = ("link", "git", "defaults")
GLOBAL_DOMAIN_ALIASES = {GLOBAL_DOMAIN, "-g", "-globalDomain"}


def _parse_yaml(path: Path) -> Any:
    try:
        return yaml.safe_load(read_text(path))
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path}: invalid YAML") from exc
    except OSError as exc:
        raise ConfigError(f"{path}: cannot read file ({exc.strerror})") from exc


def _string_list(value: Any, what: str, path: Path) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{path}: '{what}' must be a list of strings")
    return list(value)


def _string_map(value: Any, what: str, path: Path) -> dict[str, str]:
    if not isinstance(value, Mapping):
        raise ConfigError(f"{path}: '{what}' must be a mapping")
    result: dict[str, str] = {}
    for key, item in value.items():
        if not isinstance(key, str) or not key.strip():
            raise ConfigError(f"{path}: '{what}' keys must be non-empty strings")
        if isinstance(item, bool) or not isinstance(item, (str, int, float)):
            raise ConfigError(f"{path}: '{what}.{key}' must be a string")
        result[key.strip()] = str(item)
    return result


# ── project file ─────────────────────────────────────────────────────


def load_project(path: Path, *, explicit: bool = False) -> ProjectConfig:
    """Parse ``converge.yaml``; a missing default file yields an empty project."""
    if not path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {path}")
        log.debug(f"No config file at {path}, using an empty project.")
        return ProjectConfig(path=None)

    raw = _parse_yaml(path)
    if raw is None:
        log.debug(f"Config file {path} is empty, using defaults.")
        return ProjectConfig(path=path)
    if not isinstance(raw, Mapping):
        raise ConfigError(f"{path}: top-level value must be a mapping, got {type(raw).__name__}")

    unknown = sorted(set(raw) - PROJECT_KEYS)
    if unknown:
        raise ConfigError(f"{path}: unknown key(s): {', '.join(map(str, unknown))}")

    project = ProjectConfig(path=path)
    if "tasks_path" in raw:
        if not isinstance(raw["tasks_path"], str) or not raw["tasks_path"].strip():
            raise ConfigError(f"{path}: 'tasks_path' must be a non-empty string")
        project.tasks_path = raw["tasks_path"].strip()
    if raw.get("env") is not None:
        project.env = _string_map(raw["env"], "env", path)
    if raw.get("inherit_env") is not None:
        project.inherit_env = _string_list(raw["inherit_env"], "inherit_env", path)
    if raw.get("bootstrap_tasks") is not None:
        project.bootstrap_tasks = _string_list(raw["bootstrap_tasks"], "bootstrap_tasks", path)
    return project


# ── task files ───────────────────────────────────────────────────────


def task_files(tasks_dir: Path) -> list[Path]:
    if not tasks_dir.is_dir():
        raise ConfigError(f"Tasks directory doesn't exist: {tasks_dir}")
    files = [p for p in tasks_dir.iterdir() if p.is_file() and p.suffix in (".yaml", ".yml")]
    return sorted(files)


def load_tasks(project: ProjectConfig) -> list[TaskDefinition]:
    """Load and validate every task of *project*, in file-name order."""
    tasks_dir = project.tasks_dir
    if tasks_dir is None:
        return []

    env = project.task_env()
    bootstrap_ids = set(project.bootstrap_tasks)
    tasks = [load_task_file(p, env=env, bootstrap_ids=bootstrap_ids) for p in task_files(tasks_dir)]
    validate_definitions(tasks)
    log.debug(f"Loaded {len(tasks)} task(s) from {tasks_dir}")
    return tasks


def load_task_file(
    path: Path,
    *,
    env: dict[str, str] | None = None,
    bootstrap_ids: set[str] | None = None,
) -> TaskDefinition:
    raw = _parse_yaml(path)
    if not isinstance(raw, Mapping):
        raise ConfigError(f"{path}: a task file must contain a mapping")
    return build_task(raw, path, env=env or {}, bootstrap_ids=bootstrap_ids or set())


def build_task(
    raw: Mapping[str, Any],
    path: Path,
    *,
    env: dict[str, str],
    bootstrap_ids: set[str],
) -> TaskDefinition:
    unknown = sorted(set(map(str, raw)) - TASK_KEYS)
    if unknown:
        raise ConfigError(f"{path}: unknown key(s): {', '.join(unknown)}")

    name = raw.get("name", path.stem)
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"{path}: 'name' must be a non-empty string")
    name = name.strip()

    task_env = dict(env)
    if raw.get("env") is not None:
        for key, value in _string_map(raw["env"], "env", path).items():
            task_env[key] = expand(value, {**env, **task_env})
    lookup = task_env

    cwd = None
    if raw.get("cwd") is not None:
        if not isinstance(raw["cwd"], str):
            raise ConfigError(f"{path}: 'cwd' must be a string")
        cwd = Path(expand(raw["cwd"], lookup))

    description = raw.get("description") or ""
    if not isinstance(description, str):
        raise ConfigError(f"{path}: 'description' must be a string")

    operation = parse_operation(raw, path, lookup)

    return TaskDefinition(
        id=name,
        operation=operation,
        is_bootstrap=name in bootstrap_ids,
        working_directory=cwd,
        environment_overrides=task_env,
        description=description,
        source=path,
    )


def _command(value: Any, what: str, path: Path, lookup: dict[str, str]) -> list[str] | str:
    if isinstance(value, str):
        if not value.strip():
            raise ConfigError(f"{path}: '{what}' is empty")
        return expand(value, lookup)
    if isinstance(value, list) and value and all(isinstance(v, str) for v in value):
        return [expand(v, lookup) for v in value]
    raise ConfigError(f"{path}: '{what}' must be a string or a non-empty list of strings")


def parse_operation(raw: Mapping[str, Any], path: Path, lookup: dict[str, str]) -> Operation:
    run_lib = raw.get("run_lib")
    run_cmd = raw.get("run_cmd")
    run_if = raw.get("run_if_cmd")

    if run_lib is not None:
        if run_cmd is not None or run_if is not None:
            raise ConfigError(f"{path}: use either 'run_lib' or 'run_cmd'/'run_if_cmd', not both")
        if run_lib not in RUN_LIBS:
            raise ConfigError(
                f"{path}: unknown run_lib '{run_lib}'. Valid libs: {', '.join(RUN_LIBS)}."
            )
        data = raw.get("data")
        if data is None:
            raise ConfigError(f"{path}: run_lib '{run_lib}' requires a 'data' block")
        data = _expand_tree(data, lookup)
        match run_lib:
            case "link":
                return parse_link(data, path)
            case "git":
                return parse_git(data, path)
            case "defaults":
                return parse_defaults(data, path)

    if run_cmd is None:
        raise ConfigError(f"{path}: a task needs 'run_cmd' or 'run_lib'")
    if raw.get("data") is not None:
        raise ConfigError(f"{path}: 'data' is only valid with 'run_lib'")

    return RunCommand(
        run_cmd=_command(run_cmd, "run_cmd", path, lookup),
        run_if_cmd=_command(run_if, "run_if_cmd", path, lookup) if run_if is not None else None,
    )


def _expand_tree(value: Any, lookup: dict[str, str]) -> Any:
    if isinstance(value, str):
        return expand(value, lookup)
    if isinstance(value, list):
        return [_expand_tree(v, lookup) for v in value]
    if isinstance(value, dict):
        return {k: _expand_tree(v, lookup) for k, v in value.items()}
    return value


def parse_link(data: Any, path: Path) -> Link:
    if not isinstance(data, Mapping):
        raise ConfigError(f"{path}: link data must be a mapping with from_dir and to_dir")
    unknown = sorted(set(data) - {"from_dir", "to_dir"})
    if unknown:
        raise ConfigError(f"{path}: unknown link key(s): {', '.join(map(str, unknown))}")
    for key in ("from_dir", "to_dir"):
        if not isinstance(data.get(key), str) or not data[key].strip():
            raise ConfigError(f"{path}: link data needs a '{key}' string")
    return Link(from_dir=Path(data["from_dir"]), to_dir=Path(data["to_dir"]))


_GIT_KEYS = {"url", "git_url", "path", "git_path", "branch", "remote", "prune"}


def parse_git(data: Any, path: Path) -> GitSync:
    entries = data if isinstance(data, list) else [data]
    repos: list[GitRepo] = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            raise ConfigError(f"{path}: each git entry must be a mapping")
        unknown = sorted(set(entry) - _GIT_KEYS)
        if unknown:
            raise ConfigError(f"{path}: unknown git key(s): {', '.join(map(str, unknown))}")
        url = entry.get("url", entry.get("git_url"))
        repo_path = entry.get("path", entry.get("git_path"))
        if not isinstance(url, str) or not url:
            raise ConfigError(f"{path}: git entry needs a 'url'")
        if not isinstance(repo_path, str) or not repo_path:
            raise ConfigError(f"{path}: git entry needs a 'path'")
        branch = entry.get("branch")
        if branch is not None and (not isinstance(branch, str) or not branch):
            raise ConfigError(f"{path}: git 'branch' must be a non-empty string")
        remote = entry.get("remote", DEFAULT_REMOTE)
        if not isinstance(remote, str) or not remote:
            raise ConfigError(f"{path}: git 'remote' must be a non-empty string")
        prune = entry.get("prune", False)
        if not isinstance(prune, bool):
            raise ConfigError(f"{path}: git 'prune' must be true or false")
        repos.append(GitRepo(url=url, path=Path(repo_path), branch=branch, remote=remote, prune=prune))
    return GitSync(repos=tuple(repos))


def parse_defaults(data: Any, path: Path) -> DefaultsWrite:
    if not isinstance(data, Mapping):
        raise ConfigError(f"{path}: defaults data must map domains to key/value mappings")
    entries: list[DefaultsEntry] = []
    for domain, values in data.items():
        if not isinstance(domain, str) or not domain:
            raise ConfigError(f"{path}: defaults domains must be non-empty strings")
        if not isinstance(values, Mapping):
            raise ConfigError(f"{path}: defaults domain '{domain}' must map keys to values")
        is_global = domain in GLOBAL_DOMAIN_ALIASES
        for key, value in values.items():
            if not isinstance(key, str) or not key:
                raise ConfigError(f"{path}: defaults keys in '{domain}' must be non-empty strings")
            entries.append(
                DefaultsEntry(
                    domain=GLOBAL_DOMAIN if is_global else domain,
                    key=key,
                    value=value,
                    global_domain=is_global,
                )
            )
    return DefaultsWrite(entries=tuple(entries))
