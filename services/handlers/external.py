"""External action handlers: HTTP requests and safe code transforms."""

import json
from typing import Dict, Any
import requests
from requests.exceptions import RequestException, Timeout, ConnectionError
from services.handlers.registry import current_cancel_token, register_handler
from services.handlers.retry_handler import RetryHandler
from shared.constants import DEFAULT_HTTP_RETRIES, RETRYABLE_HTTP_STATUS_CODES
from shared.exceptions import HandlerError, HandlerTimeoutError, TaskError
from shared.utils import primary_input


def _raise_task_error(error: TaskError, node_id: str, exc_class=HandlerError):
    raise exc_class(error.error_message, node_id=node_id, task_error=error.to_dict())


def _response_body(response: requests.Response) -> Any:
    if "application/json" in response.headers.get("content-type", ""):
        try:
            return response.json()
        except ValueError:
            pass
    return response.text


@register_handler("action", "http")
def http_handler(execution_id: str, node_id: str, config: Dict[str, Any], inputs: Dict[str, Any]) -> Dict[str, Any]:
    url = config.get("url")
    if not url:
        raise HandlerError("URL required", node_id=node_id)

    method = config.get("method", "GET")
    headers = {"Content-Type": "application/json", **(config.get("headers") or {})}
    body = config.get("body")
    if body is None and method != "GET":
        body = primary_input(inputs)

    def send() -> Dict[str, Any]:
        try:
            response = requests.request(
                method,
                url,
                headers=headers,
                json=body if method != "GET" else None,
                timeout=config.get("timeout", 30)
            )
        except Timeout as e:
            _raise_task_error(
                TaskError(
                    error_type="TIMEOUT",
                    error_message=f"Request timed out: {e}",
                    is_retryable=True,
                    context={"url": url, "method": method}
                ),
                node_id,
                HandlerTimeoutError,
            )
        except ConnectionError as e:
            _raise_task_error(
                TaskError(
                    error_type="NETWORK_ERROR",
                    error_message=f"Network error: {e}",
                    is_retryable=True,
                    context={"url": url, "error_class": type(e).__name__}
                ),
                node_id,
            )
        except RequestException as e:
            _raise_task_error(
                TaskError(
                    error_type="REQUEST_ERROR",
                    error_message=f"Request failed: {e}",
                    is_retryable=False,
                    context={"url": url}
                ),
                node_id,
            )

        if response.status_code in RETRYABLE_HTTP_STATUS_CODES:
            retry_after = None
            # Retry-After can also be an HTTP date; only the seconds form is honoured
            retry_after_header = response.headers.get("Retry-After")
            if retry_after_header and retry_after_header.isdigit():
                retry_after = int(retry_after_header)

            _raise_task_error(
                TaskError(
                    error_type="HTTP_ERROR",
                    error_message=f"HTTP {response.status_code}: {response.reason}",
                    http_status_code=response.status_code,
                    is_retryable=True,
                    retry_after_seconds=retry_after,
                    context={"url": url, "method": method}
                ),
                node_id,
            )

        # Non-retryable statuses are a valid response; if-else isSuccess can branch on them
        return {
            "status": response.status_code,
            "body": _response_body(response),
            "headers": dict(response.headers),
        }

    retry_handler = RetryHandler(config.get("max_retries", DEFAULT_HTTP_RETRIES), cancel_token=current_cancel_token())
    return retry_handler.run(node_id, send)


def _uppercase(value: Any) -> Any:
    if isinstance(value, str):
        return value.upper()
    if isinstance(value, dict) and isinstance(value.get("response"), str):
        return {**value, "response": value["response"].upper()}
    return value


def _lowercase(value: Any) -> Any:
    if isinstance(value, str):
        return value.lower()
    if isinstance(value, dict) and isinstance(value.get("response"), str):
        return {**value, "response": value["response"].lower()}
    return value


def _extract_response(value: Any) -> Any:
    if isinstance(value, dict) and value.get("response"):
        return value["response"]
    return value


def _json_parse(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError as e:
        raise HandlerError(f"Input is not valid JSON: {e}")


TRANSFORMS = {
    "passthrough": lambda d: d,
    "stringify": lambda d: json.dumps(d, indent=2, default=str),
    "extract-response": _extract_response,
    "uppercase": _uppercase,
    "lowercase": _lowercase,
    "json_parse": _json_parse,
}


@register_handler("action", "code", idempotent=True)
def code_handler(execution_id: str, node_id: str, config: Dict[str, Any], inputs: Dict[str, Any]) -> Any:
    transform = config.get("transform", "passthrough")
    if transform not in TRANSFORMS:
        raise HandlerError(f"Unknown transform '{transform}'", node_id=node_id)
    return TRANSFORMS[transform](primary_input(inputs))
