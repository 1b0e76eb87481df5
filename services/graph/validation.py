"""Graph validation: structure, cycles, vocabulary and orphan detection."""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Set, Any, Optional
from collections import deque
from shared.constants import (
    MAX_CONFIG_SIZE_BYTES,
    MAX_IF_ELSE_BRANCHES,
    MAX_NODES_PER_GRAPH,
    MAX_TEMPLATE_LENGTH,
    ORPHAN_NODE_POLICY,
    ORPHAN_POLICIES,
)
from shared.exceptions import (
    CycleDetectedError,
    DanglingConnectionError,
    EmptyGraphError,
    GraphLimitError,
    InvalidConnectionError,
    InvalidNodeConfigError,
    MissingTriggerError,
    OrphanNodeError,
)
from shared.types import Node, NodeKind

TEMPLATE_PATTERN = re.compile(r'\{\{.*?\}\}')
# Dunder access anywhere; the rest only as whole words or calls
FORBIDDEN_TEMPLATE_PATTERNS = {
    "__": re.compile(r"__"),
    "import": re.compile(r"\bimport\b"),
    "eval(": re.compile(r"\beval\s*\("),
    "exec(": re.compile(r"\bexec\s*\("),
    "compile(": re.compile(r"\bcompile\s*\("),
    "open(": re.compile(r"\bopen\s*\("),
    "globals": re.compile(r"\bglobals\b"),
}


@dataclass
class GraphAnalysis:
    adjacency: Dict[str, List[str]]
    in_degree: Dict[str, int]
    order: List[str]
    orphans: List[str] = field(default_factory=list)


def validate_graph(graph, registry=None, orphan_policy: Optional[str] = None) -> GraphAnalysis:
    """Raises on the first structural problem; returns adjacency and a topological order"""
    policy = orphan_policy or ORPHAN_NODE_POLICY
    if policy not in ORPHAN_POLICIES:
        raise ValueError(f"Unknown orphan policy '{policy}'. Allowed: {', '.join(sorted(ORPHAN_POLICIES))}")

    nodes: List[Node] = graph.nodes
    if not nodes:
        raise EmptyGraphError("Graph must contain at least one node")

    if len(nodes) > MAX_NODES_PER_GRAPH:
        raise GraphLimitError(f"Graph exceeds maximum node limit: {len(nodes)} > {MAX_NODES_PER_GRAPH}")

    node_map = {node.id: node for node in nodes}
    for node in nodes:
        validate_node_config(node)

    adjacency = {node.id: [] for node in nodes}
    in_degree = {node.id: 0 for node in nodes}
    for node in nodes:
        for target_id in node.outgoing:
            if target_id not in node_map:
                raise DanglingConnectionError(node.id, target_id)
            if target_id in adjacency[node.id]:
                continue
            adjacency[node.id].append(target_id)
            in_degree[target_id] += 1

    for node in nodes:
        if node.kind == NodeKind.TRIGGER and in_degree[node.id] > 0:
            sources = [nid for nid, targets in adjacency.items() if node.id in targets]
            raise InvalidConnectionError(
                f"Trigger node '{node.id}' cannot have incoming connections (from {', '.join(sources)})",
                node_id=node.id,
            )
        if node.kind == NodeKind.OUTPUT and adjacency[node.id]:
            raise InvalidConnectionError(
                f"Output node '{node.id}' cannot have outgoing connections (to {', '.join(adjacency[node.id])})",
                node_id=node.id,
            )
        if node.service == "if-else" and len(adjacency[node.id]) > MAX_IF_ELSE_BRANCHES:
            raise InvalidConnectionError(
                f"If/else node '{node.id}' routes to at most {MAX_IF_ELSE_BRANCHES} branches, "
                f"found {len(adjacency[node.id])}",
                node_id=node.id,
            )

    trigger_ids = [node.id for node in nodes if node.kind == NodeKind.TRIGGER]
    if not trigger_ids:
        raise MissingTriggerError("Graph must contain at least one trigger node")

    for trigger_id in trigger_ids:
        path = find_cycle_from(adjacency, trigger_id)
        if path:
            raise CycleDetectedError(f"Graph contains a cycle: {' -> '.join(path)}", path=path)

    order = topological_order(adjacency, list(node_map))
    if order is None:
        raise CycleDetectedError("Graph contains a cycle not reachable from any trigger")

    if registry is not None:
        for node in nodes:
            registry.get(node.kind, node.service)

    reachable = reachable_from(adjacency, trigger_ids)
    orphans = [nid for nid in node_map if nid not in reachable]
    if orphans:
        if policy == "error":
            raise OrphanNodeError(orphans)
        if policy == "warn":
            logging.warning("Graph has nodes unreachable from any trigger", extra={"orphans": orphans})

    return GraphAnalysis(adjacency=adjacency, in_degree=in_degree, order=order, orphans=orphans)


def find_cycle_from(adjacency: Dict[str, List[str]], start: str) -> Optional[List[str]]:
    """Iterative DFS; returns the offending path if a node on the current path is revisited"""
    on_path: List[str] = [start]
    on_path_set: Set[str] = {start}
    done: Set[str] = set()
    stack = [iter(adjacency[start])]

    while stack:
        child = next(stack[-1], None)
        if child is None:
            stack.pop()
            finished = on_path.pop()
            on_path_set.discard(finished)
            done.add(finished)
            continue

        if child in on_path_set:
            return on_path[on_path.index(child):] + [child]
        if child in done:
            continue

        on_path.append(child)
        on_path_set.add(child)
        stack.append(iter(adjacency[child]))

    return None


def topological_order(adjacency: Dict[str, List[str]], node_ids: List[str]) -> Optional[List[str]]:
    """Kahn's algorithm; ties follow ``node_ids`` order. None means a cycle is present"""
    in_degree = {nid: 0 for nid in node_ids}
    for children in adjacency.values():
        for child in children:
            in_degree[child] += 1

    queue = deque([nid for nid in node_ids if in_degree[nid] == 0])
    order = []

    while queue:
        node_id = queue.popleft()
        order.append(node_id)
        for child in adjacency[node_id]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                queue.append(child)

    return order if len(order) == len(node_ids) else None


def reachable_from(adjacency: Dict[str, List[str]], roots: List[str]) -> Set[str]:
    seen = set(roots)
    queue = deque(roots)
    while queue:
        for child in adjacency[queue.popleft()]:
            if child not in seen:
                seen.add(child)
                queue.append(child)
    return seen


def validate_node_config(node: Node) -> None:
    """Checks config size and template safety"""
    config_size = len(json.dumps(node.config).encode('utf-8'))
    if config_size > MAX_CONFIG_SIZE_BYTES:
        raise InvalidNodeConfigError(
            f"Node '{node.id}' config exceeds size limit: {config_size} > {MAX_CONFIG_SIZE_BYTES} bytes",
            node_id=node.id,
        )
    validate_templates_in_config(node.id, node.config)


def validate_templates_in_config(node_id: str, config: Dict[str, Any]) -> None:
    """Check all template strings in config for security issues"""

    def check_value(value: Any, path: str = "") -> None:
        if isinstance(value, str):
            for template in TEMPLATE_PATTERN.findall(value):
                if len(template) > MAX_TEMPLATE_LENGTH:
                    raise InvalidNodeConfigError(
                        f"Node '{node_id}' has template exceeding length limit at {path}: "
                        f"{len(template)} > {MAX_TEMPLATE_LENGTH}",
                        node_id=node_id,
                    )

                template_lower = template.lower()
                for pattern, regex in FORBIDDEN_TEMPLATE_PATTERNS.items():
                    if regex.search(template_lower):
                        raise InvalidNodeConfigError(
                            f"Node '{node_id}' has template with forbidden pattern '{pattern}' at {path}",
                            node_id=node_id,
                        )

        elif isinstance(value, dict):
            for k, v in value.items():
                check_value(v, f"{path}.{k}" if path else k)

        elif isinstance(value, list):
            for i, item in enumerate(value):
                check_value(item, f"{path}[{i}]")

    check_value(config)
