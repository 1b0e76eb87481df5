"""
Unit tests for the built-in node handlers.
"""

import threading
import pytest
from unittest.mock import Mock, patch
from requests.exceptions import ConnectionError, Timeout
from services.handlers.external import code_handler, http_handler
from services.handlers.llm import openai_handler
from services.handlers.logic import evaluate_condition, if_else_handler
from services.handlers.outputs import display_handler
from services.handlers.registry import HandlerRegistry, build_default_registry, cancel_token_var
from services.handlers.triggers import manual_trigger, webhook_trigger
from shared.exceptions import (
    ExecutionCancelledError,
    HandlerError,
    HandlerTimeoutError,
    RetryExhaustedError,
    UnknownServiceError,
)
from shared.schemas import normalize_service_config
from shared.types import BranchResult


def http_config(**overrides):
    return normalize_service_config("action", "http", {"url": "https://api.example.com/items", **overrides})


def fake_response(status=200, json_body=None, text="", headers=None):
    response = Mock()
    response.status_code = status
    response.reason = "Reason"
    response.headers = {"content-type": "application/json", **(headers or {})} if json_body is not None else (headers or {})
    response.json.return_value = json_body
    response.text = text
    return response


@pytest.fixture
def cancel_token():
    """Never-set token whose wait stands in for the retry backoff"""
    token = Mock()
    token.is_set.return_value = False
    with patch("services.handlers.external.current_cancel_token", return_value=token):
        yield token


# Registry

def test_default_registry_has_builtins():
    registry = build_default_registry()

    assert registry.list_services() == [
        ("action", "code"),
        ("action", "http"),
        ("action", "openai"),
        ("logic", "if-else"),
        ("output", "display"),
        ("trigger", "manual"),
        ("trigger", "webhook"),
    ]
    assert registry.get("action", "code").idempotent
    assert not registry.get("action", "http").idempotent


def test_default_registry_copies_are_independent():
    first = build_default_registry()
    first.unregister("action", "http")

    assert build_default_registry().has("action", "http")


def test_registry_get_unknown():
    with pytest.raises(UnknownServiceError, match="action:slack"):
        HandlerRegistry().get("action", "slack")


def test_registry_decorator_and_async_detection():
    registry = HandlerRegistry()

    @registry.handler("action", "async-thing")
    async def handler(execution_id, node_id, config, inputs):
        return 1

    assert registry.get("action", "async-thing").is_async


# Triggers

def test_manual_trigger_default_payload():
    result = manual_trigger("e", "t", {"input_data": None}, {})

    assert result["triggered"] is True
    assert result["message"] == "Workflow started"
    assert "timestamp" in result


def test_manual_trigger_input_data():
    assert manual_trigger("e", "t", {"input_data": {"topic": "dags"}}, {}) == {"topic": "dags"}


def test_webhook_trigger():
    assert webhook_trigger("e", "t", {"test_data": None}, {}) == {"webhook": True, "payload": {}}
    assert webhook_trigger("e", "t", {"test_data": {"id": 1}}, {}) == {"id": 1}


# HTTP

@patch("services.handlers.external.requests.request")
def test_http_get(mock_request):
    mock_request.return_value = fake_response(200, {"ok": True})

    result = http_handler("e", "a", http_config(), {"t": {"ignored": True}})

    assert result["status"] == 200
    assert result["body"] == {"ok": True}
    assert mock_request.call_args.kwargs["json"] is None
    assert mock_request.call_args.args == ("GET", "https://api.example.com/items")


@patch("services.handlers.external.requests.request")
def test_http_post_sends_upstream_input(mock_request):
    mock_request.return_value = fake_response(201, {"id": 7})

    http_handler("e", "a", http_config(method="POST"), {"t": {"name": "Ada"}})

    assert mock_request.call_args.kwargs["json"] == {"name": "Ada"}


@patch("services.handlers.external.requests.request")
def test_http_client_error_is_a_response(mock_request):
    mock_request.return_value = fake_response(404, text="not found")

    result = http_handler("e", "a", http_config(), {})

    assert result["status"] == 404
    assert result["body"] == "not found"


@patch("services.handlers.external.requests.request")
def test_http_retries_server_errors(mock_request, cancel_token):
    mock_request.side_effect = [fake_response(503), fake_response(200, {"ok": True})]

    result = http_handler("e", "a", http_config(), {})

    assert result["body"] == {"ok": True}
    assert mock_request.call_count == 2
    cancel_token.wait.assert_called_once_with(0.5)


@patch("services.handlers.external.requests.request")
def test_http_retries_exhausted(mock_request, cancel_token):
    mock_request.return_value = fake_response(429, headers={"Retry-After": "2"})

    with pytest.raises(RetryExhaustedError, match="HTTP 429"):
        http_handler("e", "a", http_config(max_retries=1), {})

    cancel_token.wait.assert_called_once_with(2)


@patch("services.handlers.external.requests.request")
def test_http_timeout_without_retries(mock_request):
    mock_request.side_effect = Timeout("read timed out")

    with pytest.raises(HandlerTimeoutError, match="timed out"):
        http_handler("e", "a", http_config(max_retries=0), {})


@patch("services.handlers.external.requests.request")
def test_http_network_error_retried(mock_request, cancel_token):
    mock_request.side_effect = [ConnectionError("refused"), fake_response(200, {"ok": True})]

    assert http_handler("e", "a", http_config(), {})["status"] == 200


@patch("services.handlers.external.requests.request")
def test_http_cancelled_execution_sends_nothing(mock_request):
    cancelled = threading.Event()
    cancelled.set()
    token = cancel_token_var.set(cancelled)
    try:
        with pytest.raises(ExecutionCancelledError):
            http_handler("e", "a", http_config(method="POST"), {})
    finally:
        cancel_token_var.reset(token)

    mock_request.assert_not_called()


@patch("services.handlers.external.requests.request")
def test_http_cancel_during_backoff_stops_retries(mock_request):
    cancelled = threading.Event()

    def fail_then_cancel(*args, **kwargs):
        cancelled.set()
        return fake_response(503)

    mock_request.side_effect = fail_then_cancel
    token = cancel_token_var.set(cancelled)
    try:
        with pytest.raises(ExecutionCancelledError):
            http_handler("e", "a", http_config(max_retries=3), {})
    finally:
        cancel_token_var.reset(token)

    assert mock_request.call_count == 1


# Code

def test_code_transforms():
    assert code_handler("e", "c", {"transform": "passthrough"}, {"a": {"x": 1}}) == {"x": 1}
    assert code_handler("e", "c", {"transform": "uppercase"}, {"a": "hi"}) == "HI"
    assert code_handler("e", "c", {"transform": "uppercase"}, {"a": {"response": "hi"}}) == {"response": "HI"}
    assert code_handler("e", "c", {"transform": "lowercase"}, {"a": "HI"}) == "hi"
    assert code_handler("e", "c", {"transform": "extract-response"}, {"a": {"response": "r"}}) == "r"
    assert code_handler("e", "c", {"transform": "json_parse"}, {"a": '{"k": 1}'}) == {"k": 1}
    assert code_handler("e", "c", {"transform": "stringify"}, {"a": [1]}) == "[\n  1\n]"


def test_code_json_parse_invalid():
    with pytest.raises(HandlerError, match="not valid JSON"):
        code_handler("e", "c", {"transform": "json_parse"}, {"a": "{nope"})


# OpenAI

@patch.dict("os.environ", {"OPENAI_API_KEY": "sk-test"})
@patch("services.handlers.llm.requests.post")
def test_openai_call(mock_post):
    mock_post.return_value = fake_response(200, {
        "model": "gpt-4o-mini",
        "choices": [{"message": {"content": "Hello!"}}],
        "usage": {"total_tokens": 12},
    })
    config = normalize_service_config("action", "openai", {"prompt": "Say hi"})

    result = openai_handler("e", "llm", config, {})

    assert result == {"response": "Hello!", "model": "gpt-4o-mini", "tokens": 12}
    payload = mock_post.call_args.kwargs["json"]
    assert payload["messages"][1] == {"role": "user", "content": "Say hi"}
    assert mock_post.call_args.kwargs["headers"]["Authorization"] == "Bearer sk-test"


@patch.dict("os.environ", {}, clear=True)
def test_openai_missing_key():
    config = normalize_service_config("action", "openai", {"prompt": "Say hi"})

    with pytest.raises(HandlerError, match="OPENAI_API_KEY"):
        openai_handler("e", "llm", config, {})


@patch.dict("os.environ", {"OPENAI_API_KEY": "sk-test"})
@patch("services.handlers.llm.requests.post")
def test_openai_skips_call_when_cancelled(mock_post):
    cancelled = threading.Event()
    cancelled.set()
    config = normalize_service_config("action", "openai", {"prompt": "Say hi"})

    token = cancel_token_var.set(cancelled)
    try:
        with pytest.raises(ExecutionCancelledError):
            openai_handler("e", "llm", config, {})
    finally:
        cancel_token_var.reset(token)

    mock_post.assert_not_called()


@patch.dict("os.environ", {"OPENAI_API_KEY": "sk-test"})
@patch("services.handlers.llm.requests.post")
def test_openai_error_status(mock_post):
    mock_post.return_value = fake_response(401, text="invalid api key")
    config = normalize_service_config("action", "openai", {"prompt": "Say hi"})

    with pytest.raises(HandlerError, match="401"):
        openai_handler("e", "llm", config, {})


# Logic

def test_conditions():
    assert evaluate_condition("hasResponse", {"response": "text"})
    assert not evaluate_condition("hasResponse", {"response": ""})
    assert evaluate_condition("hasData", {"body": {"ok": True}})
    assert evaluate_condition("isSuccess", {"status": 204})
    assert evaluate_condition("isSuccess", {"success": True})
    assert not evaluate_condition("isSuccess", {"status": 500})
    assert evaluate_condition("true", "anything")
    assert not evaluate_condition("false", {"x": 1})
    assert evaluate_condition("body.ok", {"body": {"ok": True}})
    assert not evaluate_condition("missing", {"body": {}})
    assert not evaluate_condition("hasResponse", None)


def test_if_else_returns_branch_result():
    result = if_else_handler("e", "c", {"condition": "isSuccess"}, {"a": {"status": 200}})

    assert result == BranchResult(value={"status": 200}, branch=True)


# Display

def test_display_unwraps():
    assert display_handler("e", "o", {"field": None}, {"a": {"response": "hi", "data": 1}}) == "hi"
    assert display_handler("e", "o", {"field": None}, {"a": {"status": 200, "data": [1]}}) == [1]
    assert display_handler("e", "o", {"field": None}, {"a": {"status": 200, "body": {"ok": True}}}) == {"ok": True}
    assert display_handler("e", "o", {"field": None}, {"a": "plain"}) == "plain"


def test_display_field_selection():
    inputs = {"a": {"body": {"items": [{"name": "x"}]}}}

    assert display_handler("e", "o", {"field": "body.items.0.name"}, inputs) == "x"

    with pytest.raises(HandlerError, match="not found"):
        display_handler("e", "o", {"field": "body.nope"}, inputs)
