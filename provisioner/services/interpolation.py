"""
Attribute interpolation.

Attributes may embed `${<declaration>.<output>}` expressions. They are resolved
in two phases: during planning against whatever the snapshot already knows
(unknown values stay symbolic), and during execution against the outputs of
prerequisites that have already succeeded.
"""

from __future__ import annotations
import re
from typing import Any, Dict, Mapping, Set

from .errors import PermanentExternalError

EXPR = re.compile(r"\$\{([A-Za-z0-9_-]+)\.([A-Za-z0-9_.-]+)\}")


class _Unknown:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    __str__ = __repr__


UNKNOWN = _Unknown()


def find_references(value: Any) -> Set[str]:
    """Declaration ids mentioned by interpolation expressions anywhere in value."""
    found: Set[str] = set()
    if isinstance(value, str):
        found.update(m.group(1) for m in EXPR.finditer(value))
    elif isinstance(value, dict):
        for v in value.values():
            found |= find_references(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            found |= find_references(v)
    return found


def _lookup(outputs: Mapping[str, Mapping[str, Any]], decl_id: str, path: str):
    current: Any = outputs.get(decl_id)
    if current is None:
        raise KeyError(decl_id)
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            raise KeyError(f"{decl_id}.{path}")
    return current


def resolve(value: Any, outputs: Mapping[str, Mapping[str, Any]], strict: bool = True) -> Any:
    """
    Substitute every expression in value.

    A string that is exactly one expression takes the referenced value as-is,
    so lists and numbers survive. Otherwise the value is spliced in as text.
    With strict=False a missing output becomes UNKNOWN instead of raising.
    """
    if isinstance(value, dict):
        return {k: resolve(v, outputs, strict) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve(v, outputs, strict) for v in value]
    if not isinstance(value, str) or "${" not in value:
        return value

    whole = EXPR.fullmatch(value)
    if whole:
        return _resolve_one(whole, outputs, strict)

    unknown = False

    def _sub(m: re.Match) -> str:
        nonlocal unknown
        v = _resolve_one(m, outputs, strict)
        if v is UNKNOWN:
            unknown = True
            return m.group(0)
        return str(v)

    text = EXPR.sub(_sub, value)
    return UNKNOWN if unknown else text


def _resolve_one(m: re.Match, outputs: Mapping[str, Mapping[str, Any]], strict: bool):
    try:
        return _lookup(outputs, m.group(1), m.group(2))
    except KeyError:
        if strict:
            raise PermanentExternalError(f"Cannot resolve {m.group(0)}: output not available")
        return UNKNOWN


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


def unknown_keys(attributes: Dict[str, Any]) -> Set[str]:
    return {k for k, v in attributes.items() if contains_unknown(v)}
