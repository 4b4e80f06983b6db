"""Structured value merge with ``...`` placeholders.

Values are the plain trees ``yaml.safe_load`` produces: ``str``/``int``/
``float``/``bool`` scalars, ``list`` sequences and ``dict`` mappings.

A ``"..."`` element in a sequence stands for everything previously stored at
that position.  After splicing, duplicates are dropped keeping the first
occurrence, so writing ``["foo", "..."]`` moves ``foo`` to the front of an
existing list.

A ``"...": "..."`` entry in a mapping keeps every stored entry where it is.
Keys written before it override the stored value in place (new keys are
appended); keys written after it only fill in keys that are not stored yet.
"""

from __future__ import annotations

from typing import Any, Union

from converge.errors import MergeTypeMismatch

PLACEHOLDER = "..."

Scalar = Union[str, int, float, bool]
StructuredValue = Union[Scalar, list[Any], dict[str, Any]]


def kind_of(value: Any) -> str:
    if isinstance(value, list):
        return "sequence"
    if isinstance(value, dict):
        return "mapping"
    return "scalar"


def is_placeholder_entry(key: Any, value: Any) -> bool:
    return key == PLACEHOLDER and value == PLACEHOLDER


def has_placeholder(value: Any) -> bool:
    """True if *value* itself (not its children) carries a placeholder."""
    if isinstance(value, list):
        return any(item == PLACEHOLDER for item in value)
    if isinstance(value, dict):
        return any(is_placeholder_entry(k, v) for k, v in value.items())
    return False


def contains_placeholder(value: Any) -> bool:
    """True if a placeholder appears anywhere in *value*."""
    if has_placeholder(value):
        return True
    if isinstance(value, list):
        return any(contains_placeholder(item) for item in value)
    if isinstance(value, dict):
        return any(contains_placeholder(v) for v in value.values())
    return False


def same_value(a: Any, b: Any) -> bool:
    """Type-strict structural equality.

    ``True`` differs from ``1`` and ``1`` from ``1.0``; mapping key order
    matters.  Two values are the same iff they would serialise identically.
    """
    if type(a) is not type(b):
        return False
    if isinstance(a, list):
        return len(a) == len(b) and all(same_value(x, y) for x, y in zip(a, b))
    if isinstance(a, dict):
        if list(a.keys()) != list(b.keys()):
            return False
        return all(same_value(a[k], b[k]) for k in a)
    return a == b


def merge(old: Any, new: Any, *, where: str = "") -> Any:
    """Merge *new* over *old*; neither input is modified.

    Without a placeholder *new* replaces *old* outright.  ``old=None`` means
    nothing is stored yet.
    """
    if isinstance(new, list):
        return _merge_sequence(old, new, where)
    if isinstance(new, dict):
        return _merge_mapping(old, new, where)
    return new


def _merge_sequence(old: Any, new: list[Any], where: str) -> list[Any]:
    if not has_placeholder(new):
        return [_resolve_nested(item, where) for item in new]

    if old is None:
        old = []
    elif not isinstance(old, list):
        raise MergeTypeMismatch(kind_of(old), "sequence", where)

    spliced: list[Any] = []
    for item in new:
        if item == PLACEHOLDER:
            spliced.extend(old)
        else:
            spliced.append(_resolve_nested(item, where))

    result: list[Any] = []
    for item in spliced:
        if not any(same_value(item, seen) for seen in result):
            result.append(item)
    return result


def _merge_mapping(old: Any, new: dict[str, Any], where: str) -> dict[str, Any]:
    if not has_placeholder(new):
        old_map = old if isinstance(old, dict) else {}
        return {k: _merge_value(old_map, k, v, where) for k, v in new.items()}

    if old is None:
        old = {}
    elif not isinstance(old, dict):
        raise MergeTypeMismatch(kind_of(old), "mapping", where)

    result = dict(old)
    seen_placeholder = False
    for key, value in new.items():
        if is_placeholder_entry(key, value):
            seen_placeholder = True
        elif not seen_placeholder or key not in result:
            result[key] = _merge_value(old, key, value, where)
    return result


def _merge_value(old_map: dict[str, Any], key: str, value: Any, where: str) -> Any:
    path = f"{where}.{key}" if where else str(key)
    if contains_placeholder(value):
        return merge(old_map.get(key), value, where=path)
    return value


def _resolve_nested(item: Any, where: str) -> Any:
    # A sequence element has no positional counterpart in the old value, so
    # nested placeholders resolve against nothing.
    if contains_placeholder(item):
        return merge(None, item, where=where)
    return item
