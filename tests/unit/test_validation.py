"""
Unit tests for graph validation.
"""

import logging
import pytest
from services.graph.model import WorkflowGraph
from services.graph.validation import (
    validate_graph,
    find_cycle_from,
    topological_order,
    validate_node_config,
)
from services.handlers.registry import HandlerRegistry
from shared.exceptions import (
    CycleDetectedError,
    DanglingConnectionError,
    EmptyGraphError,
    GraphLimitError,
    InvalidConnectionError,
    InvalidNodeConfigError,
    MissingTriggerError,
    OrphanNodeError,
    UnknownServiceError,
)
from shared.types import Node


def make_graph(*nodes):
    return WorkflowGraph.from_dict({"nodes": list(nodes)})


def node(node_id, kind, service, connections=(), config=None):
    return {"id": node_id, "type": kind, "service": service, "config": config or {}, "connections": list(connections)}


def linear_graph():
    return make_graph(
        node("t", "trigger", "manual", ["a"]),
        node("a", "action", "code", ["o"]),
        node("o", "output", "display"),
    )


def test_validate_simple_graph():
    """Checks that a basic chain validates correctly"""
    analysis = validate_graph(linear_graph())

    assert analysis.adjacency == {"t": ["a"], "a": ["o"], "o": []}
    assert analysis.in_degree == {"t": 0, "a": 1, "o": 1}
    assert analysis.order == ["t", "a", "o"]
    assert analysis.orphans == []


def test_validate_empty_graph():
    with pytest.raises(EmptyGraphError):
        validate_graph(WorkflowGraph())


def test_validate_graph_with_cycle():
    """Makes sure cycles get caught and the path is named"""
    graph = make_graph(
        node("t", "trigger", "manual", ["a"]),
        node("a", "action", "code", ["b"]),
        node("b", "action", "code", ["a"]),
    )

    with pytest.raises(CycleDetectedError, match="cycle") as exc_info:
        validate_graph(graph)

    assert exc_info.value.path == ["a", "b", "a"]


def test_validate_cycle_unreachable_from_trigger():
    graph = make_graph(
        node("t", "trigger", "manual", ["o"]),
        node("o", "output", "display"),
        node("a", "action", "code", ["b"]),
        node("b", "action", "code", ["a"]),
    )

    with pytest.raises(CycleDetectedError, match="not reachable"):
        validate_graph(graph, orphan_policy="ignore")


def test_validate_dangling_connection():
    """Catches references to nodes that don't exist"""
    graph = make_graph(node("t", "trigger", "manual", ["ghost"]))

    with pytest.raises(DanglingConnectionError, match="non-existent"):
        validate_graph(graph)


def test_validate_missing_trigger():
    graph = make_graph(node("a", "action", "code", ["o"]), node("o", "output", "display"))

    with pytest.raises(MissingTriggerError):
        validate_graph(graph)


def test_trigger_cannot_have_incoming_edges():
    graph = make_graph(
        node("t1", "trigger", "manual", ["t2"]),
        node("t2", "trigger", "manual"),
    )

    with pytest.raises(InvalidConnectionError, match="Trigger node 't2'"):
        validate_graph(graph)


def test_output_cannot_have_outgoing_edges():
    graph = make_graph(
        node("t", "trigger", "manual", ["o"]),
        node("o", "output", "display", ["a"]),
        node("a", "action", "code"),
    )

    with pytest.raises(InvalidConnectionError, match="Output node 'o'"):
        validate_graph(graph)


def test_if_else_limited_to_two_branches():
    graph = make_graph(
        node("t", "trigger", "manual", ["c"]),
        node("c", "logic", "if-else", ["o1", "o2", "o3"]),
        node("o1", "output", "display"),
        node("o2", "output", "display"),
        node("o3", "output", "display"),
    )

    with pytest.raises(InvalidConnectionError, match="at most 2"):
        validate_graph(graph)


def test_node_limit(monkeypatch):
    monkeypatch.setattr("services.graph.validation.MAX_NODES_PER_GRAPH", 2)

    with pytest.raises(GraphLimitError, match="maximum node limit"):
        validate_graph(linear_graph())


def test_orphan_policy_error():
    graph = make_graph(
        node("t", "trigger", "manual", ["o"]),
        node("o", "output", "display"),
        node("stray", "action", "code"),
    )

    with pytest.raises(OrphanNodeError) as exc_info:
        validate_graph(graph, orphan_policy="error")

    assert exc_info.value.node_ids == ["stray"]


def test_orphan_policy_warn_logs(caplog):
    graph = make_graph(
        node("t", "trigger", "manual", ["o"]),
        node("o", "output", "display"),
        node("stray", "action", "code"),
    )

    with caplog.at_level(logging.WARNING):
        analysis = validate_graph(graph, orphan_policy="warn")

    assert analysis.orphans == ["stray"]
    assert "unreachable" in caplog.text


def test_orphan_policy_ignore():
    graph = make_graph(
        node("t", "trigger", "manual", ["o"]),
        node("o", "output", "display"),
        node("stray", "action", "code"),
    )

    assert validate_graph(graph, orphan_policy="ignore").orphans == ["stray"]


def test_unknown_orphan_policy():
    with pytest.raises(ValueError, match="Unknown orphan policy"):
        validate_graph(linear_graph(), orphan_policy="explode")


def test_unregistered_service_is_engine_fault():
    registry = HandlerRegistry()
    registry.register("trigger", "manual", lambda *args: None)

    with pytest.raises(UnknownServiceError, match="action:code"):
        validate_graph(linear_graph(), registry=registry)


def test_find_cycle_from_diamond_has_no_cycle():
    adjacency = {"t": ["a", "b"], "a": ["o"], "b": ["o"], "o": []}
    assert find_cycle_from(adjacency, "t") is None


def test_topological_order_respects_listing_order_for_ties():
    adjacency = {"t": ["b", "a"], "a": ["o"], "b": ["o"], "o": []}
    assert topological_order(adjacency, ["t", "a", "b", "o"]) == ["t", "a", "b", "o"]


def test_validate_node_config_template_security():
    """Blocks dangerous template patterns"""
    bad = Node(id="a", kind="action", service="http", config={"url": "{{ input.__class__ }}"})

    with pytest.raises(InvalidNodeConfigError, match="forbidden pattern"):
        validate_node_config(bad)


def test_template_security_matches_whole_words():
    """Identifiers that merely contain a blocked word are allowed"""
    allowed = [
        "{{ important_field }}",
        "{{ input.reopen_count }}",
        "{{ input.reopen() }}",
        "{{ inputs['retrieval'].body }}",
    ]
    for template in allowed:
        validate_node_config(Node(id="a", kind="action", service="http", config={"url": template}))

    for template in ["{{ import os }}", "{{ open ('/etc/passwd') }}", "{{ globals }}"]:
        with pytest.raises(InvalidNodeConfigError, match="forbidden pattern"):
            validate_node_config(Node(id="a", kind="action", service="http", config={"url": template}))


def test_validate_node_config_template_length(monkeypatch):
    monkeypatch.setattr("services.graph.validation.MAX_TEMPLATE_LENGTH", 10)
    long_template = Node(id="a", kind="action", service="http", config={"url": "{{ input.some.long.path }}"})

    with pytest.raises(InvalidNodeConfigError, match="length limit"):
        validate_node_config(long_template)


def test_validate_node_config_size(monkeypatch):
    monkeypatch.setattr("services.graph.validation.MAX_CONFIG_SIZE_BYTES", 50)
    big = Node(id="a", kind="action", service="http", config={"url": "https://example.com/" + "x" * 100})

    with pytest.raises(InvalidNodeConfigError, match="size limit"):
        validate_node_config(big)
