"""
API route tests with Redis mocked out.
"""

import threading
import time
import pytest
from unittest.mock import AsyncMock, Mock, patch
from fastapi.testclient import TestClient
from services.api.main import app
from services.handlers.registry import build_default_registry
from shared.exceptions import ExecutionInProgressError, UnknownServiceError


def pipeline_graph():
    return {"nodes": [
        {"id": "t", "type": "trigger", "service": "manual", "config": {"input_data": {"response": "hi"}},
         "connections": ["c"]},
        {"id": "c", "type": "action", "service": "code", "config": {"transform": "uppercase"}, "connections": ["o"]},
        {"id": "o", "type": "output", "service": "display"},
    ]}


@pytest.fixture
def redis_store():
    store = Mock()
    store.acquire_execution_lock.return_value = "token-1"
    store.release_execution_lock.return_value = True
    store.ping.return_value = True
    with patch("services.api.routes.sandbox.redis_store", store):
        yield store


@pytest.fixture
def client(redis_store):
    return TestClient(app)


def test_execute_runs_graph_and_releases_lock(client, redis_store):
    response = client.post("/execute", json={"session_id": "s1", "graph": pipeline_graph()})

    assert response.status_code == 200
    body = response.json()
    assert body["succeeded"] is True
    assert body["final_output"] == "HI"
    assert body["node_statuses"] == {"t": "succeeded", "c": "succeeded", "o": "succeeded"}
    redis_store.acquire_execution_lock.assert_called_once_with("s1")
    redis_store.release_execution_lock.assert_called_once_with("s1", "token-1")


def test_execute_busy_session(client, redis_store):
    redis_store.acquire_execution_lock.side_effect = ExecutionInProgressError("Session s1 already has an execution in progress")

    response = client.post("/execute", json={"session_id": "s1", "graph": pipeline_graph()})

    assert response.status_code == 409
    redis_store.release_execution_lock.assert_not_called()


def test_execute_structural_error(client, redis_store):
    graph = {"nodes": [{"id": "o", "type": "output", "service": "display"}]}

    response = client.post("/execute", json={"session_id": "s1", "graph": graph})

    assert response.status_code == 400
    assert response.json()["detail"]["error_type"] == "MissingTriggerError"
    redis_store.release_execution_lock.assert_called_once_with("s1", "token-1")


def test_execute_invalid_node_config(client, redis_store):
    graph = {"nodes": [{"id": "a", "type": "action", "service": "http", "config": {}}]}

    response = client.post("/execute", json={"session_id": "s1", "graph": graph})

    assert response.status_code == 400
    redis_store.acquire_execution_lock.assert_not_called()


def test_execute_engine_fault(client, redis_store):
    engine = Mock()
    engine.execute_async = AsyncMock(side_effect=UnknownServiceError("No handler registered for action:gone"))

    with patch("services.api.routes.sandbox.ExecutionEngine", return_value=engine):
        response = client.post("/execute", json={"session_id": "s1", "graph": pipeline_graph()})

    assert response.status_code == 500
    assert response.json()["detail"]["error_type"] == "UnknownServiceError"
    redis_store.release_execution_lock.assert_called_once()


def test_timed_out_execution_holds_lock_until_handler_returns(client, redis_store):
    handler_returned = threading.Event()
    released = []

    def slow_code(execution_id, node_id, config, inputs):
        time.sleep(0.5)
        handler_returned.set()
        return inputs

    slow_registry = build_default_registry()
    slow_registry.register("action", "code", slow_code)
    redis_store.release_execution_lock.side_effect = lambda *args: released.append(handler_returned.is_set())

    with patch("services.api.routes.sandbox.registry", slow_registry):
        response = client.post("/execute", json={"session_id": "s1", "graph": pipeline_graph(), "timeout_seconds": 0.1})

    assert response.status_code == 200
    assert response.json()["cancelled"] is True
    assert released == [True]


    redis_store.release_execution_lock.assert_called_once()


def test_verify(client):
    execution_result = {
        "execution_id": "e1",
        "succeeded": True,
        "final_output": {"ok": True},
        "log": [
            {"timestamp": "2024-01-01T00:00:00Z", "node_id": "a", "event": "start",
             "data": {"kind": "action", "service": "http"}},
            {"timestamp": "2024-01-01T00:00:00.100Z", "node_id": "a", "event": "success", "data": {"status": 200}},
        ],
    }
    challenge = {
        "outputValidation": [{"field": "ok", "comparisonKind": "matches", "expected": True}],
        "executionRequirements": [{"type": "api_called", "target": "http"}],
        "maxHints": 3,
    }

    response = client.post("/verify", json={
        "execution_result": execution_result,
        "challenge": challenge,
        "attempt": {"hints_used": 3, "max_hints": 3, "attempt_number": 1, "time_spent_seconds": 30},
    })

    assert response.status_code == 200
    body = response.json()
    assert body["passed"] is True
    assert body["struggle_score"] == 40
    assert body["certificate_tier"] == "ADVANCED"


def test_score(client):
    response = client.post("/score", json={"hints_used": 1, "max_hints": 4, "verification_passed": True})

    assert response.status_code == 200
    assert response.json() == {"score": 10, "tier": "ELITE"}


def test_score_failed_attempt(client):
    response = client.post("/score", json={"hints_used": 1, "max_hints": 4, "verification_passed": False})

    assert response.status_code == 422


def test_decide(client):
    response = client.post("/decide", json={
        "history": [50],
        "signals": {"pause_seconds": 60, "pause_location": "at_deployment"},
    })

    assert response.status_code == 200
    assert response.json()["action"] == "tutor_intervention"


def test_validate_graph(client):
    response = client.post("/graph/validate", json={"graph": pipeline_graph()})
    assert response.json() == {"valid": True, "error": None, "orphans": []}

    broken = {"nodes": [{"id": "t", "type": "trigger", "service": "manual", "connections": ["ghost"]}]}
    body = client.post("/graph/validate", json={"graph": broken}).json()
    assert body["valid"] is False
    assert body["error"]["error_type"] == "DanglingConnectionError"


def test_list_handlers(client):
    handlers = client.get("/handlers").json()

    assert {"kind": "action", "service": "http"} in handlers
    assert len(handlers) == 7


def test_health_and_correlation_id(client):
    response = client.get("/health", headers={"X-Correlation-ID": "abc-123"})

    assert response.json() == {"status": "healthy", "redis": "up"}
    assert response.headers["X-Correlation-ID"] == "abc-123"
