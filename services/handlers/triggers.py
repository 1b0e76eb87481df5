"""Trigger handlers. Triggers have no inputs; they seed the run."""

from datetime import datetime, timezone
from typing import Dict, Any
from services.handlers.registry import register_handler


@register_handler("trigger", "manual", idempotent=True)
def manual_trigger(execution_id: str, node_id: str, config: Dict[str, Any], inputs: Dict[str, Any]) -> Any:
    if config.get("input_data") is not None:
        return config["input_data"]
    return {
        "triggered": True,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "message": "Workflow started",
    }


@register_handler("trigger", "webhook", idempotent=True)
def webhook_trigger(execution_id: str, node_id: str, config: Dict[str, Any], inputs: Dict[str, Any]) -> Any:
    if config.get("test_data") is not None:
        return config["test_data"]
    return {"webhook": True, "payload": {}}
