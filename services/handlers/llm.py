"""LLM action handler backed by the OpenAI chat-completions REST API."""

import logging
import os
from typing import Dict, Any
import requests
from requests.exceptions import RequestException, Timeout
from services.handlers.registry import current_cancel_token, register_handler
from shared.constants import DEFAULT_OPENAI_MODEL, DEFAULT_SYSTEM_PROMPT, OPENAI_API_URL
from shared.exceptions import ExecutionCancelledError, HandlerError, HandlerTimeoutError, TaskError


@register_handler("action", "openai")
def openai_handler(execution_id: str, node_id: str, config: Dict[str, Any], inputs: Dict[str, Any]) -> Dict[str, Any]:
    """
    Sends the (already template-resolved) prompt to the chat-completions endpoint.

    Config params:
    - prompt: user message (required)
    - model, system_prompt, max_tokens, temperature, timeout
    """
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise HandlerError("OPENAI_API_KEY is not configured", node_id=node_id)

    model = config.get("model") or DEFAULT_OPENAI_MODEL
    payload = {
        "model": model,
        "messages": [
            {"role": "system", "content": config.get("system_prompt") or DEFAULT_SYSTEM_PROMPT},
            {"role": "user", "content": config["prompt"]},
        ],
        "max_tokens": config.get("max_tokens", 500),
        "temperature": config.get("temperature", 0.7),
    }

    if current_cancel_token().is_set():
        raise ExecutionCancelledError("Execution cancelled", node_id=node_id)

    logging.info("Calling OpenAI", extra={"execution_id": execution_id, "node_id": node_id, "model": model})

    try:
        response = requests.post(
            os.getenv("OPENAI_API_URL", OPENAI_API_URL),
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            json=payload,
            timeout=config.get("timeout", 60)
        )
    except Timeout as e:
        raise HandlerTimeoutError(f"OpenAI request timed out: {e}", node_id=node_id)
    except RequestException as e:
        raise HandlerError(f"OpenAI request failed: {e}", node_id=node_id)

    if response.status_code >= 400:
        error = TaskError(
            error_type="LLM_SERVICE_ERROR",
            error_message=f"OpenAI returned {response.status_code}: {response.text[:200]}",
            http_status_code=response.status_code,
            context={"model": model}
        )
        raise HandlerError(error.error_message, node_id=node_id, task_error=error.to_dict())

    try:
        data = response.json()
        content = data["choices"][0]["message"]["content"] or ""
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise HandlerError(f"Unexpected OpenAI response: {e}", node_id=node_id)

    return {
        "response": content,
        "model": data.get("model", model),
        "tokens": (data.get("usage") or {}).get("total_tokens"),
    }
