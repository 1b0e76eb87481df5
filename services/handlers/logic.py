"""Branching logic handlers."""

from typing import Dict, Any
from services.handlers.registry import register_handler
from shared.types import BranchResult
from shared.utils import primary_input, resolve_path


def _is_success(value: Dict[str, Any]) -> bool:
    status = value.get("status")
    if isinstance(status, int) and not isinstance(status, bool) and 200 <= status < 300:
        return True
    return value.get("success") is True


CONDITIONS = {
    "hasResponse": lambda v: bool(v.get("response")),
    "hasData": lambda v: bool(v.get("data") or v.get("body")),
    "isSuccess": _is_success,
    "true": lambda v: True,
    "false": lambda v: False,
}


def evaluate_condition(condition: str, value: Any) -> bool:
    """Named condition, or truthiness of the dotted path ``condition`` in the input"""
    if condition == "true":
        return True
    if not isinstance(value, dict):
        return False
    if condition in CONDITIONS:
        return CONDITIONS[condition](value)
    found, resolved = resolve_path(value, condition)
    return found and bool(resolved)


@register_handler("logic", "if-else", idempotent=True)
def if_else_handler(execution_id: str, node_id: str, config: Dict[str, Any], inputs: Dict[str, Any]) -> BranchResult:
    value = primary_input(inputs)
    return BranchResult(value=value, branch=evaluate_condition(config.get("condition", "hasResponse"), value))
