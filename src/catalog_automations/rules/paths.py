"""Dot-path navigation and value rendering shared by tokens and conditions."""

import json
from datetime import date, datetime
from typing import Any


class _Missing:
    """Marker for a path that did not resolve (distinct from an explicit null)."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()


def navigate_path(data: Any, path: list[str]) -> Any:
    """
    Walk ``path`` through nested mappings and sequences.

    Returns MISSING when a segment is absent, an index is out of range, or a
    scalar is indexed further. Never raises.
    """
    current = data
    for part in path:
        if current is MISSING or current is None:
            return MISSING

        if isinstance(current, dict):
            current = current.get(part, MISSING)
        elif isinstance(current, (list, tuple)):
            try:
                index = int(part)
            except ValueError:
                return MISSING
            current = current[index] if 0 <= index < len(current) else MISSING
        else:
            return MISSING

    return current


def stringify(value: Any) -> str:
    """Render a value the way it reads in a template or a text comparison."""
    if value is MISSING or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, separators=(",", ":"), default=str, ensure_ascii=False)
    return str(value)
