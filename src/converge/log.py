"""Logging utilities with colored output via Rich.

A :class:`Log` is a handle scoped to one run (or one task).  The module-level
helpers delegate to a process default handle and are meant for the CLI layer.
"""

from __future__ import annotations

import io
import threading

from rich.console import Console
from rich.text import Text


class Log:
    """Leveled console logger bound to a pair of Rich consoles."""

    def __init__(
        self,
        console: Console | None = None,
        err_console: Console | None = None,
        *,
        verbose: bool = False,
    ) -> None:
        self.console = console or Console(highlight=False)
        self.err_console = err_console or Console(highlight=False, stderr=True)
        self.verbose = verbose
        self._buffer: io.StringIO | None = None
        self._flush_lock = threading.Lock()

    def info(self, msg: str) -> None:
        self.console.print(f"[blue]\\[INFO][/blue] {msg}")

    def success(self, msg: str) -> None:
        self.console.print(f"[green]\\[OK][/green] {msg}")

    def warn(self, msg: str) -> None:
        self.console.print(f"[yellow]\\[WARN][/yellow] {msg}")

    def error(self, msg: str) -> None:
        self.err_console.print(f"[red]\\[ERROR][/red] {msg}")

    def debug(self, msg: str) -> None:
        if self.verbose:
            self.console.print(f"[dim]\\[DEBUG] {msg}[/dim]")

    def raw(self, text: str) -> None:
        """Write process output verbatim (no markup, no highlighting)."""
        if not text:
            return
        self.console.out(text.rstrip("\n"), highlight=False)

    # ── buffered handles ─────────────────────────────────────────

    def buffered(self) -> Log:
        """Return a handle whose output is held in memory until flushed.

        Errors go to the same buffer so a task's block stays in one piece.
        """
        buf = io.StringIO()
        mem = Console(
            file=buf,
            highlight=False,
            force_terminal=self.console.is_terminal,
            color_system=self.console.color_system,
            width=self.console.width,
        )
        child = Log(mem, mem, verbose=self.verbose)
        child._buffer = buf
        return child

    @property
    def is_buffered(self) -> bool:
        return self._buffer is not None

    def getvalue(self) -> str:
        return self._buffer.getvalue() if self._buffer is not None else ""

    def locked(self) -> threading.Lock:
        """Lock held while a block is flushed; take it to print between blocks."""
        return self._flush_lock

    def flush_block(self, label: str, child: Log) -> None:
        """Print everything *child* buffered as one labelled block."""
        captured = child.getvalue()
        if not captured.strip():
            return
        with self._flush_lock:
            self.console.rule(f"[bold]{label}[/bold]", align="left")
            self.console.print(Text.from_ansi(captured.rstrip("\n")))


_default = Log()
console = _default.console


def default() -> Log:
    return _default


def set_verbose(enabled: bool) -> None:
    _default.verbose = enabled


def info(msg: str) -> None:
    _default.info(msg)


def success(msg: str) -> None:
    _default.success(msg)


def warn(msg: str) -> None:
    _default.warn(msg)


def error(msg: str) -> None:
    _default.error(msg)


def debug(msg: str) -> None:
    _default.debug(msg)
