"""Structured exception hierarchy for the sandbox engine."""

from typing import Optional, Dict, Any, List
from pydantic import BaseModel


class TaskError(BaseModel):
    """Structured error raised inside node handlers"""
    error_type: str
    error_message: str
    http_status_code: Optional[int] = None
    retry_after_seconds: Optional[int] = None
    is_retryable: bool = False
    context: Dict[str, Any] = {}

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class WorkflowError(Exception):
    """Base exception for workflow errors"""

    def __init__(self, message: str, node_id: str = "", **context):
        self.message = message
        self.node_id = node_id
        self.context = context
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = {"error_type": type(self).__name__, "message": self.message}
        if self.node_id:
            data["node_id"] = self.node_id
        if self.context:
            data["context"] = self.context
        return data


class NodeNotFoundError(WorkflowError):
    pass


# Structural errors: detected before anything runs

class StructuralError(WorkflowError):
    pass


class EmptyGraphError(StructuralError):
    pass


class MissingTriggerError(StructuralError):
    pass


class GraphLimitError(StructuralError):
    pass


class CycleDetectedError(StructuralError):

    def __init__(self, message: str, path: Optional[List[str]] = None, **context):
        self.path = list(path or [])
        super().__init__(message, node_id=self.path[0] if self.path else "", path=self.path, **context)


class DanglingConnectionError(StructuralError):

    def __init__(self, node_id: str, target_id: str):
        self.target_id = target_id
        super().__init__(
            f"Node '{node_id}' connects to non-existent node '{target_id}'",
            node_id=node_id,
            target_id=target_id,
        )


class OrphanNodeError(StructuralError):

    def __init__(self, node_ids: List[str]):
        self.node_ids = list(node_ids)
        super().__init__(
            f"Nodes unreachable from any trigger: {', '.join(self.node_ids)}",
            node_id=self.node_ids[0] if self.node_ids else "",
            node_ids=self.node_ids,
        )


class InvalidConnectionError(StructuralError):
    pass


class InvalidNodeConfigError(StructuralError):
    pass


# Handler errors: one node failed, its dependents are pruned

class HandlerError(WorkflowError):
    pass


class TemplateResolutionError(HandlerError):
    pass


class HandlerTimeoutError(HandlerError):
    pass


class RetryExhaustedError(HandlerError):
    pass


class ExecutionCancelledError(HandlerError):
    pass


# Engine faults: configuration defects, abort the run

class EngineFault(WorkflowError):
    pass


class UnknownServiceError(EngineFault):
    pass


class ExecutionInProgressError(WorkflowError):
    pass


class UnscorableAttemptError(WorkflowError, ValueError):
    pass
