"""Node handler registry keyed by (kind, service)."""

import inspect
import threading
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Dict, Any, Callable, List, Optional, Tuple, Union
from shared.exceptions import UnknownServiceError
from shared.types import NodeKind

# handler(execution_id, node_id, config, inputs) -> output value, sync or async
NodeHandler = Callable[[str, str, Dict[str, Any], Dict[str, Any]], Any]

# Set by the engine for the duration of each handler call
cancel_token_var: ContextVar[Optional[threading.Event]] = ContextVar("cancel_token", default=None)


def current_cancel_token() -> threading.Event:
    """Cancellation token of the running execution; a never-set event outside the engine"""
    return cancel_token_var.get() or threading.Event()


@dataclass(frozen=True)
class HandlerSpec:
    kind: str
    service: str
    func: NodeHandler
    idempotent: bool = False

    @property
    def key(self) -> Tuple[str, str]:
        return self.kind, self.service

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.func)


def _kind_value(kind: Union[NodeKind, str]) -> str:
    return kind.value if isinstance(kind, NodeKind) else NodeKind(kind).value


class HandlerRegistry:
    """Maps (kind, service) to an executable handler"""

    def __init__(self):
        self._handlers: Dict[Tuple[str, str], HandlerSpec] = {}

    def register(self, kind: Union[NodeKind, str], service: str, func: NodeHandler, idempotent: bool = False) -> None:
        spec = HandlerSpec(_kind_value(kind), service, func, idempotent)
        self._handlers[spec.key] = spec

    def handler(self, kind: Union[NodeKind, str], service: str, idempotent: bool = False):
        def decorator(func: NodeHandler):
            self.register(kind, service, func, idempotent)
            return func
        return decorator

    def unregister(self, kind: Union[NodeKind, str], service: str) -> None:
        self._handlers.pop((_kind_value(kind), service), None)

    def has(self, kind: Union[NodeKind, str], service: str) -> bool:
        return (_kind_value(kind), service) in self._handlers

    def get(self, kind: Union[NodeKind, str], service: str) -> HandlerSpec:
        key = (_kind_value(kind), service)
        if key not in self._handlers:
            raise UnknownServiceError(
                f"No handler registered for {key[0]}:{key[1]}. "
                f"Registered: {', '.join(f'{k}:{s}' for k, s in sorted(self._handlers))}",
                kind=key[0],
                service=service,
            )
        return self._handlers[key]

    def list_services(self) -> List[Tuple[str, str]]:
        return sorted(self._handlers)

    def copy(self) -> "HandlerRegistry":
        clone = HandlerRegistry()
        clone._handlers = dict(self._handlers)
        return clone


_builtin_registry = HandlerRegistry()


def register_handler(kind: Union[NodeKind, str], service: str, idempotent: bool = False):
    """Registers a built-in handler at import time"""
    return _builtin_registry.handler(kind, service, idempotent)


def build_default_registry() -> HandlerRegistry:
    """Fresh registry holding every built-in handler"""
    import services.handlers.triggers  # noqa: F401
    import services.handlers.external  # noqa: F401
    import services.handlers.llm  # noqa: F401
    import services.handlers.logic  # noqa: F401
    import services.handlers.outputs  # noqa: F401

    return _builtin_registry.copy()
