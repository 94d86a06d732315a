"""
Tolerant accessors for loosely-typed gateway JSON.

The swap gateway's payloads are not contractual: fields go missing, get
renamed, or move under a different top-level key between releases. Every
read of external data goes through these helpers so a bad field degrades
to a fallback instead of a TypeError halfway through a reconcile.
"""

import math
from typing import Any, Iterable, List, Optional


def as_string(value: Any, fallback: str = "") -> str:
    return value if isinstance(value, str) else fallback


def as_number(value: Any, fallback: float = 0) -> float:
    parsed = as_optional_number(value)
    return fallback if parsed is None else parsed


def as_optional_number(value: Any) -> Optional[float]:
    """Finite int/float, or a numeric string. bool is not a number here."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def as_boolean(value: Any, fallback: bool = False) -> bool:
    return value if isinstance(value, bool) else fallback


def parse_optional_boolean(value: Any) -> Optional[bool]:
    """Query-string style booleans: only the literals "true"/"false" count."""
    if not isinstance(value, str):
        return None
    if value == "true":
        return True
    if value == "false":
        return False
    return None


def as_optional_string(value: Any) -> Optional[str]:
    """Non-empty string form of a scalar id (tx hashes come back as str or int)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value or None
    return None


def first_present(record: Any, keys: Iterable[str]) -> Any:
    """Value of the first key present (and not None) in a dict."""
    if not isinstance(record, dict):
        return None
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None


def pick_array(payload: Any, preferred_keys: Iterable[str]) -> List[dict]:
    """Locate a list of objects either at the top level or under one of
    several candidate keys. Non-dict entries are dropped."""
    if isinstance(payload, list):
        return [v for v in payload if isinstance(v, dict)]
    if not isinstance(payload, dict):
        return []
    for key in preferred_keys:
        value = payload.get(key)
        if isinstance(value, list):
            return [v for v in value if isinstance(v, dict)]
    return []
