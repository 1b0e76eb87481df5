"""Output handlers."""

from typing import Dict, Any
from services.handlers.registry import register_handler
from shared.exceptions import HandlerError
from shared.utils import primary_input, resolve_path

UNWRAP_KEYS = ("response", "data", "body")


def unwrap(value: Any) -> Any:
    if isinstance(value, dict):
        for key in UNWRAP_KEYS:
            if value.get(key) is not None:
                return value[key]
    return value


@register_handler("output", "display", idempotent=True)
def display_handler(execution_id: str, node_id: str, config: Dict[str, Any], inputs: Dict[str, Any]) -> Any:
    value = primary_input(inputs)
    field = config.get("field")
    if field:
        found, selected = resolve_path(value, field)
        if not found:
            raise HandlerError(f"Field '{field}' not found in input", node_id=node_id)
        return selected
    return unwrap(value)
