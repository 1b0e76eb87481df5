"""Shared utilities."""

import uuid
from typing import Any, Dict, Tuple


class _Missing:
    """Marker for a path that did not resolve"""

    def __repr__(self) -> str:
        return "<undefined>"


MISSING = _Missing()


def generate_node_id() -> str:
    return str(uuid.uuid4())


def generate_execution_id() -> str:
    return str(uuid.uuid4())


def generate_lock_key(session_id: str) -> str:
    return f"sandbox:{session_id}:execution_lock"


def resolve_path(value: Any, path: str) -> Tuple[bool, Any]:
    """Dotted-path lookup supporting dict keys, list indices and ``length``"""
    if path in ("", "$"):
        return True, value

    current = value
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return False, MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)):
            if part == "length":
                current = len(current)
            elif part.lstrip("-").isdigit() and -len(current) <= int(part) < len(current):
                current = current[int(part)]
            else:
                return False, MISSING
        elif isinstance(current, str) and part == "length":
            current = len(current)
        else:
            return False, MISSING

    return True, current


def primary_input(inputs: Dict[str, Any]) -> Any:
    """Single predecessor value as-is; several are kept keyed by predecessor id"""
    if not inputs:
        return None
    if len(inputs) == 1:
        return next(iter(inputs.values()))
    return dict(inputs)
