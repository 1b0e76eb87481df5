"""In-memory workflow graph built by a learner during a sandbox session."""

import copy
import json
from typing import Dict, List, Any, Optional, Iterator, Union
from pydantic import ValidationError
from shared.exceptions import (
    EngineFault,
    InvalidNodeConfigError,
    NodeNotFoundError,
    StructuralError,
)
from shared.types import Node, NodeKind, Position
from shared.utils import generate_node_id


class WorkflowGraph:
    """Ordered collection of nodes; edges live in each node's ``outgoing`` list"""

    def __init__(self, nodes: Optional[List[Node]] = None):
        self._nodes: Dict[str, Node] = {}
        for node in nodes or []:
            if node.id in self._nodes:
                raise InvalidNodeConfigError(f"Duplicate node ID: {node.id}", node_id=node.id)
            self._nodes[node.id] = node

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(list(self._nodes.values()))

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, WorkflowGraph):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"WorkflowGraph(nodes={len(self._nodes)})"

    @property
    def nodes(self) -> List[Node]:
        return list(self._nodes.values())

    @property
    def node_ids(self) -> List[str]:
        return list(self._nodes.keys())

    def get(self, node_id: str) -> Node:
        if node_id not in self._nodes:
            raise NodeNotFoundError(f"Node '{node_id}' does not exist", node_id=node_id)
        return self._nodes[node_id]

    # Mutation

    def add_node(
        self,
        kind: Union[NodeKind, str],
        service: str,
        config: Optional[Dict[str, Any]] = None,
        position: Optional[Dict[str, float]] = None,
        node_id: Optional[str] = None,
    ) -> str:
        node_id = node_id or generate_node_id()
        if node_id in self._nodes:
            raise InvalidNodeConfigError(f"Duplicate node ID: {node_id}", node_id=node_id)

        try:
            node = Node(
                id=node_id,
                kind=NodeKind(kind),
                service=service,
                config=config or {},
                position=Position(**(position or {})),
            )
        except (ValueError, InvalidNodeConfigError) as e:
            raise InvalidNodeConfigError(f"Invalid node '{node_id}': {e}", node_id=node_id)

        self._nodes[node_id] = node
        return node_id

    def remove_node(self, node_id: str) -> None:
        """Removes a node and every connection pointing at it"""
        self.get(node_id)
        del self._nodes[node_id]
        for node in self._nodes.values():
            if node_id in node.outgoing:
                node.outgoing = [target for target in node.outgoing if target != node_id]

    def connect(self, from_id: str, to_id: str) -> None:
        source = self.get(from_id)
        self.get(to_id)
        if to_id not in source.outgoing:
            source.outgoing.append(to_id)

    def disconnect(self, from_id: str, to_id: str) -> None:
        source = self.get(from_id)
        self.get(to_id)
        source.outgoing = [target for target in source.outgoing if target != to_id]

    def update_config(self, node_id: str, config: Dict[str, Any], merge: bool = True) -> None:
        node = self.get(node_id)
        merged = {**node.config, **config} if merge else dict(config)
        try:
            updated = Node(
                id=node.id,
                kind=node.kind,
                service=node.service,
                config=merged,
                position=node.position,
                outgoing=node.outgoing,
            )
        except (ValidationError, InvalidNodeConfigError) as e:
            raise InvalidNodeConfigError(f"Invalid node '{node_id}': {e}", node_id=node_id)
        self._nodes[node_id] = updated

    def move_node(self, node_id: str, x: float, y: float) -> None:
        self.get(node_id).position = Position(x=x, y=y)

    # Structure queries

    def successors(self, node_id: str) -> List[str]:
        return list(self.get(node_id).outgoing)

    def predecessors(self, node_id: str) -> List[str]:
        self.get(node_id)
        return [node.id for node in self._nodes.values() if node_id in node.outgoing]

    def triggers(self) -> List[Node]:
        return [node for node in self._nodes.values() if node.kind == NodeKind.TRIGGER]

    def outputs(self) -> List[Node]:
        return [node for node in self._nodes.values() if node.kind == NodeKind.OUTPUT]

    def validate(self, registry=None, orphan_policy: Optional[str] = None) -> Optional[Union[StructuralError, EngineFault]]:
        """Returns the first structural problem, or None when the graph can run"""
        from services.graph.validation import validate_graph

        try:
            validate_graph(self, registry=registry, orphan_policy=orphan_policy)
        except (StructuralError, EngineFault) as e:
            return e
        return None

    def snapshot(self) -> "WorkflowGraph":
        """Independent deep copy; later edits don't reach the copy"""
        return WorkflowGraph([copy.deepcopy(node) for node in self._nodes.values()])

    # Serialization

    def to_dict(self) -> Dict[str, Any]:
        return {"nodes": [node.model_dump(mode="json") for node in self._nodes.values()]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowGraph":
        raw_nodes = data.get("nodes", []) if isinstance(data, dict) else data
        nodes = []
        for raw in raw_nodes:
            try:
                nodes.append(Node.model_validate(raw))
            except (ValidationError, InvalidNodeConfigError) as e:
                node_id = raw.get("id", "") if isinstance(raw, dict) else ""
                raise InvalidNodeConfigError(f"Invalid node '{node_id}': {e}", node_id=node_id)
        return cls(nodes)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, payload: str) -> "WorkflowGraph":
        return cls.from_dict(json.loads(payload))
