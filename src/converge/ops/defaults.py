"""Write preference values, merging ``...`` placeholders with what is stored.

Preferences live in one property-list file per domain, the layout macOS uses
under ``~/Library/Preferences``.  The store is abstract so tests and other
platforms can point it anywhere.
"""

from __future__ import annotations

import os
import plistlib
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

import yaml

from converge import log
from converge.errors import Cancelled, ConfigError
from converge.io_utils import atomic_write_bytes
from converge.merge import merge, same_value
from converge.tasks.model import GLOBAL_DOMAIN, DefaultsEntry, DefaultsWrite, Succeeded, TaskOutcome

GLOBAL_PREFERENCES_FILE = ".GlobalPreferences.plist"


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


class DefaultsStore(Protocol):
    def read(self, domain: str, key: str) -> Any: ...

    def read_domain(self, domain: str) -> dict[str, Any]: ...

    def write(self, domain: str, key: str, value: Any) -> None: ...


def default_prefs_dir() -> Path:
    override = os.environ.get("CONVERGE_DEFAULTS_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / "Library" / "Preferences"


class PlistDefaultsStore:
    """Property-list files named ``<domain>.plist`` inside *prefs_dir*."""

    def __init__(self, prefs_dir: Path | None = None) -> None:
        self.prefs_dir = prefs_dir or default_prefs_dir()
        self._lock = threading.Lock()

    def path_for(self, domain: str) -> Path:
        if domain == GLOBAL_DOMAIN:
            return self.prefs_dir / GLOBAL_PREFERENCES_FILE
        if not domain or "/" in domain or domain.startswith("."):
            raise ConfigError(f"Invalid defaults domain: {domain!r}")
        return self.prefs_dir / f"{domain}.plist"

    def _load(self, path: Path) -> tuple[dict[str, Any], plistlib.PlistFormat]:
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return {}, plistlib.FMT_BINARY
        fmt = plistlib.FMT_BINARY if data.startswith(b"bplist00") else plistlib.FMT_XML
        try:
            content = plistlib.loads(data)
        except (plistlib.InvalidFileException, ValueError) as exc:
            raise ConfigError(f"{path}: not a valid property list ({exc})") from exc
        if not isinstance(content, dict):
            raise ConfigError(f"{path}: top-level value must be a dictionary")
        return content, fmt

    def read_domain(self, domain: str) -> dict[str, Any]:
        with self._lock:
            content, _ = self._load(self.path_for(domain))
        return content

    def read(self, domain: str, key: str) -> Any:
        return self.read_domain(domain).get(key, MISSING)

    def write(self, domain: str, key: str, value: Any) -> None:
        path = self.path_for(domain)
        with self._lock:
            content, fmt = self._load(path)
            content[key] = value
            try:
                data = plistlib.dumps(content, fmt=fmt, sort_keys=False)
            except (TypeError, OverflowError) as exc:
                raise ConfigError(f"Cannot store {domain} {key} as a property list: {exc}") from exc
            atomic_write_bytes(path, data)


# ── Values ───────────────────────────────────────────────────────────

def parse_value(text: str) -> Any:
    """Parse a value given on the command line as YAML (``[a, ...]`` etc.)."""
    if not text.strip():
        return text
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Cannot parse defaults value {text!r}: {exc}") from exc


def check_storable(value: Any, where: str = "") -> None:
    """Property lists have no null; reject ``None`` anywhere in *value*."""
    if value is None:
        raise ConfigError(f"Defaults value{' at ' + where if where else ''} is null, which cannot be stored")
    if isinstance(value, list):
        for n, item in enumerate(value):
            check_storable(item, f"{where}[{n}]")
    elif isinstance(value, dict):
        for key, item in value.items():
            check_storable(item, f"{where}.{key}" if where else str(key))


# ── Decisions (pure) ─────────────────────────────────────────────────

class DefaultsKind(str, Enum):
    WRITE = "write"
    NOOP = "noop"


@dataclass(frozen=True)
class DefaultsAction:
    kind: DefaultsKind
    value: Any


def plan_write(current: Any, desired: Any, *, where: str = "") -> DefaultsAction:
    old = None if current is MISSING else current
    value = merge(old, desired, where=where)
    if current is not MISSING and same_value(value, current):
        return DefaultsAction(DefaultsKind.NOOP, current)
    return DefaultsAction(DefaultsKind.WRITE, value)


# ── Application ──────────────────────────────────────────────────────

def apply_write(store: DefaultsStore, domain: str, key: str, action: DefaultsAction) -> bool:
    if action.kind is DefaultsKind.NOOP:
        return False
    store.write(domain, key, action.value)
    return True


def write_default(
    store: DefaultsStore,
    entry: DefaultsEntry,
    logger: log.Log | None = None,
) -> bool:
    logger = logger or log.default()
    domain = entry.effective_domain
    check_storable(entry.value, entry.key)
    current = store.read(domain, entry.key)
    action = plan_write(current, entry.value, where=f"{domain}.{entry.key}")
    if action.kind is DefaultsKind.NOOP:
        logger.debug(f"defaults {domain} {entry.key} already set")
        return False
    logger.info(f"Changing default {domain} {entry.key}: {_short(current)} -> {_short(action.value)}")
    return apply_write(store, domain, entry.key, action)


def _short(value: Any) -> str:
    if value is MISSING:
        return "(unset)"
    text = repr(value)
    return text if len(text) <= 80 else text[:77] + "..."


def read_defaults(store: DefaultsStore, domain: str, key: str | None = None) -> Any:
    """Return a whole domain, or a single key's value."""
    if key is None:
        return store.read_domain(domain)
    value = store.read(domain, key)
    if value is MISSING:
        raise ConfigError(f"The domain/default pair of ({domain}, {key}) does not exist")
    return value


def run_defaults(
    op: DefaultsWrite,
    store: DefaultsStore | None = None,
    logger: log.Log | None = None,
    cancel: threading.Event | None = None,
) -> TaskOutcome:
    store = store or PlistDefaultsStore()
    changed = False
    for entry in op.entries:
        if cancel is not None and cancel.is_set():
            raise Cancelled()
        changed = write_default(store, entry, logger) or changed
    return Succeeded(changed=changed)
