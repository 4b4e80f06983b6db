"""converge command line.

Installed as the ``converge`` console_script.
"""

from __future__ import annotations

import signal
import sys
import threading
from pathlib import Path
from typing import Any, NoReturn

import click
import yaml
from rich.markup import escape

from converge import __version__, log
from converge.config import RunConfig, resolve_config_path
from converge.errors import ConvergeError
from converge.ops.defaults import PlistDefaultsStore, parse_value, read_defaults, write_default
from converge.ops.git_sync import run_git_sync
from converge.ops.link import run_link
from converge.report import RunReport, describe, show_summary
from converge.scheduler import Scheduler
from converge.selector import select_tasks
from converge.tasks.io import load_project, load_tasks
from converge.tasks.model import (
    DEFAULT_REMOTE,
    GLOBAL_DOMAIN,
    DefaultsEntry,
    GitRepo,
    GitSync,
    Link,
    Succeeded,
    TaskOutcome,
    TaskSet,
)

CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])


def _split_ids(values: tuple[str, ...]) -> list[str]:
    """Flatten ``-t a,b -t c`` into ``["a", "b", "c"]``."""
    ids: list[str] = []
    for value in values:
        ids.extend(part.strip() for part in value.split(",") if part.strip())
    return ids


def _fail(exc: ConvergeError) -> NoReturn:
    log.error(escape(str(exc)))
    sys.exit(1)


class _CancelOnSignal:
    """Turn the first SIGINT/SIGTERM into a cancellation request.

    A second signal raises :class:`KeyboardInterrupt` to stop immediately.
    """

    def __init__(self, cancel: threading.Event) -> None:
        self.cancel = cancel
        self._orig: dict[int, Any] = {}

    def __enter__(self) -> _CancelOnSignal:
        signals_to_handle = [signal.SIGINT]
        if hasattr(signal, "SIGTERM"):
            signals_to_handle.append(signal.SIGTERM)
        for sig in signals_to_handle:
            try:
                self._orig[sig] = signal.getsignal(sig)
                signal.signal(sig, self._on_signal)
            except (OSError, RuntimeError, ValueError):
                continue
        return self

    def __exit__(self, *exc_info: object) -> None:
        for sig, handler in self._orig.items():
            try:
                signal.signal(sig, handler)
            except (OSError, RuntimeError, ValueError):
                continue
        self._orig = {}

    def _on_signal(self, signum: int, _frame: object) -> None:
        if self.cancel.is_set():
            log.warn(f"Interrupt received again (signal {signum}). Forcing stop...")
            raise KeyboardInterrupt
        self.cancel.set()
        log.warn(f"Interrupt received (signal {signum}). Letting running tasks finish...")


def _print_outcome(what: str, outcome: TaskOutcome) -> None:
    if isinstance(outcome, Succeeded) and outcome.changed:
        log.success(f"{what}: {describe(outcome)}")
    else:
        log.info(f"{what}: {describe(outcome)}")


# ── Group ────────────────────────────────────────────────────────────


@click.group(invoke_without_command=True, context_settings=CONTEXT_SETTINGS)
@click.option(
    "-c",
    "--config",
    "config_path",
    default=None,
    help="Path to converge.yaml (default: $CONVERGE_CONFIG or ~/.config/converge/converge.yaml)",
)
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.version_option(__version__, prog_name="converge")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """converge: bring this machine to its declared state.

    \b
    EXAMPLES:
      converge                          # Run every task
      converge run --bootstrap          # Run bootstrap tasks first, then the rest
      converge run -t git,brew -k       # Run two tasks, keep going on failure
      converge list                     # Show what would run
      converge defaults read NSGlobalDomain AppleShowAllExtensions
    """
    log.set_verbose(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose

    if ctx.invoked_subcommand is None:
        ctx.invoke(run)


def _selection_options(fn: Any) -> Any:
    fn = click.option(
        "--exclude-tasks",
        "exclude",
        multiple=True,
        help="Comma-separated task ids to skip (wins over --tasks)",
    )(fn)
    fn = click.option(
        "-t",
        "--tasks",
        "include",
        multiple=True,
        help="Comma-separated task ids to run (default: all)",
    )(fn)
    fn = click.option(
        "-b",
        "--bootstrap",
        is_flag=True,
        help="Run the bootstrap tasks from converge.yaml first, in order",
    )(fn)
    return fn


def _select(ctx: click.Context, cfg: RunConfig) -> TaskSet:
    path, explicit = resolve_config_path(ctx.obj.get("config_path"))
    log.debug(f"Using config file {path}")
    project = load_project(path, explicit=explicit)
    tasks = load_tasks(project)
    return select_tasks(
        tasks,
        include=cfg.include,
        exclude=cfg.exclude,
        bootstrap=cfg.bootstrap,
        bootstrap_order=project.bootstrap_tasks,
    )


# ── Subcommand: run ──────────────────────────────────────────────────


@main.command()
@_selection_options
@click.option("-k", "--keep-going", is_flag=True, help="Keep running after a bootstrap task fails")
@click.option("-j", "--jobs", type=int, default=0, help="Max tasks run at once (default: CPU count)")
@click.option(
    "--console/--no-console",
    default=None,
    help="Stream task output live (default: only when a single task runs)",
)
@click.pass_context
def run(
    ctx: click.Context,
    bootstrap: bool,
    include: tuple[str, ...],
    exclude: tuple[str, ...],
    keep_going: bool,
    jobs: int,
    console: bool | None,
) -> None:
    """Run the selected tasks and report what changed."""
    try:
        cfg = RunConfig(
            bootstrap=bootstrap,
            include=_split_ids(include),
            exclude=_split_ids(exclude),
            keep_going=keep_going,
            concurrency=jobs,
            console=console,
            verbose=ctx.obj.get("verbose", False),
        )
        task_set = _select(ctx, cfg)
    except ConvergeError as exc:
        _fail(exc)

    if not len(task_set):
        log.warn("No tasks selected.")
        sys.exit(0)

    logger = log.default()
    cancel = threading.Event()
    report = RunReport()
    try:
        with _CancelOnSignal(cancel):
            Scheduler(cfg, logger).run(task_set, cancel=cancel, report=report)
    except KeyboardInterrupt:
        log.warn("Interrupted!")
        show_summary(report, logger)
        sys.exit(1)
    show_summary(report, logger)
    sys.exit(report.exit_code())


# ── Subcommand: list ─────────────────────────────────────────────────


@main.command("list")
@_selection_options
@click.pass_context
def list_tasks(
    ctx: click.Context,
    bootstrap: bool,
    include: tuple[str, ...],
    exclude: tuple[str, ...],
) -> None:
    """Print the tasks a run with the same filters would execute."""
    try:
        cfg = RunConfig(bootstrap=bootstrap, include=_split_ids(include), exclude=_split_ids(exclude), concurrency=1)
        task_set = _select(ctx, cfg)
    except ConvergeError as exc:
        _fail(exc)

    for task in task_set.bootstrap_tasks:
        log.console.print(f"{escape(task.id)} [dim](bootstrap)[/dim]")
    for task in task_set.parallel_tasks:
        suffix = f" [dim]{escape(task.description)}[/dim]" if task.description else ""
        log.console.print(f"{escape(task.id)}{suffix}")


# ── Subcommands: single operations ───────────────────────────────────


@main.command()
@click.option("--from", "from_dir", required=True, type=click.Path(path_type=Path), help="Directory to link from")
@click.option("--to", "to_dir", required=True, type=click.Path(path_type=Path), help="Directory to create links in")
def link(from_dir: Path, to_dir: Path) -> None:
    """Symlink every file under --from into the same place under --to."""
    try:
        outcome = run_link(Link(from_dir=from_dir, to_dir=to_dir), log.default())
    except ConvergeError as exc:
        _fail(exc)
    _print_outcome("link", outcome)


@main.command()
@click.option("--git-url", required=True, help="URL to clone or fetch from")
@click.option("--git-path", required=True, type=click.Path(path_type=Path), help="Local checkout path")
@click.option("--remote", default=DEFAULT_REMOTE, show_default=True, help="Remote name")
@click.option("--branch", default=None, help="Branch to update (default: the checked-out one)")
@click.option("--prune", is_flag=True, help="Delete local branches whose upstream is gone")
def git(git_url: str, git_path: Path, remote: str, branch: str | None, prune: bool) -> None:
    """Clone a repository, or fast-forward an existing checkout."""
    repo = GitRepo(url=git_url, path=git_path.expanduser(), branch=branch, remote=remote, prune=prune)
    cancel = threading.Event()
    try:
        with _CancelOnSignal(cancel):
            outcome = run_git_sync(GitSync(repos=(repo,)), log.default(), cancel)
    except ConvergeError as exc:
        _fail(exc)
    _print_outcome(f"git {repo.path}", outcome)


@main.group()
def defaults() -> None:
    """Read and write preference domains."""


def _domain_and_rest(global_domain: bool, args: tuple[str, ...]) -> tuple[str | None, list[str]]:
    if global_domain:
        return GLOBAL_DOMAIN, list(args)
    if not args:
        return None, []
    return args[0], list(args[1:])


@defaults.command("read")
@click.option("-g", "--global", "global_domain", is_flag=True, help="Use NSGlobalDomain")
@click.argument("args", nargs=-1)
def defaults_read(global_domain: bool, args: tuple[str, ...]) -> None:
    """Print a domain, or one key of it, as YAML.

    \b
    converge defaults read DOMAIN [KEY]
    converge defaults read -g [KEY]
    """
    domain, rest = _domain_and_rest(global_domain, args)
    if domain is None:
        raise click.UsageError("A domain is required (or -g for the global domain).")
    if len(rest) > 1:
        raise click.UsageError("Too many arguments: expected at most a domain and a key.")
    key = rest[0] if rest else None

    try:
        value = read_defaults(PlistDefaultsStore(), domain, key)
    except ConvergeError as exc:
        _fail(exc)
    click.echo(yaml.safe_dump(value, sort_keys=False, default_flow_style=False, allow_unicode=True), nl=False)


@defaults.command("write")
@click.option("-g", "--global", "global_domain", is_flag=True, help="Use NSGlobalDomain")
@click.argument("args", nargs=-1)
def defaults_write(global_domain: bool, args: tuple[str, ...]) -> None:
    """Set a key, merging '...' placeholders with the stored value.

    \b
    converge defaults write DOMAIN KEY VALUE
    converge defaults write -g KEY VALUE
    converge defaults write com.apple.dock persistent-apps '[Safari, ...]'
    """
    domain, rest = _domain_and_rest(global_domain, args)
    if domain is None or len(rest) != 2:
        raise click.UsageError("Expected DOMAIN KEY VALUE (or -g KEY VALUE).")
    key, text = rest

    try:
        entry = DefaultsEntry(domain=domain, key=key, value=parse_value(text), global_domain=global_domain)
        changed = write_default(PlistDefaultsStore(), entry, log.default())
    except ConvergeError as exc:
        _fail(exc)
    _print_outcome(f"defaults {domain} {key}", Succeeded(changed=changed))


if __name__ == "__main__":
    main()
