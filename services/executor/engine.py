"""Execution engine: runs a validated workflow graph in dependency order."""

import asyncio
import contextvars
import functools
import heapq
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional, Set, Tuple
from services.executor.template import TemplateResolver
from services.graph.model import WorkflowGraph
from services.graph.validation import GraphAnalysis, validate_graph
from services.handlers.registry import HandlerRegistry, HandlerSpec, build_default_registry, cancel_token_var
from shared.constants import (
    EXECUTION_TIMEOUT_SECONDS,
    MAX_CONCURRENT_NODES,
    MULTI_OUTPUT_POLICIES,
)
from shared.exceptions import EngineFault
from shared.logging_config import correlation_scope
from shared.types import (
    BranchResult,
    ExecutionLogEntry,
    ExecutionResult,
    LogEvent,
    Node,
    NodeKind,
    NodeStatus,
)
from shared.utils import generate_execution_id

CANCELLED_MESSAGE = "Execution cancelled"

# How often the scheduler re-checks the cancel event and deadline while handlers run
POLL_INTERVAL_SECONDS = 0.05


@dataclass
class RunState:
    """Mutable bookkeeping for one execution; the log and statuses only change together"""
    execution_id: str
    graph: WorkflowGraph
    analysis: GraphAnalysis
    predecessors: Dict[str, List[str]]
    statuses: Dict[str, NodeStatus]
    pool: ThreadPoolExecutor
    log: List[ExecutionLogEntry] = field(default_factory=list)
    outputs: Dict[str, Any] = field(default_factory=dict)
    branches: Dict[str, bool] = field(default_factory=dict)
    succeeded_outputs: List[str] = field(default_factory=list)
    locks: Dict[Tuple[str, str], asyncio.Lock] = field(default_factory=dict)
    cancelled: bool = False
    # Seen by sync handlers in worker threads, which task cancellation cannot reach
    cancel_token: threading.Event = field(default_factory=threading.Event)

    def record(
        self,
        node_id: str,
        event: LogEvent,
        status: NodeStatus,
        message: Optional[str] = None,
        data: Any = None,
        error: Optional[str] = None,
    ) -> None:
        self.log.append(ExecutionLogEntry(
            timestamp=datetime.now(timezone.utc),
            node_id=node_id,
            event=event,
            message=message,
            data=data,
            error=error,
        ))
        self.statuses[node_id] = status

    def is_settled(self, node_id: str) -> bool:
        return self.statuses[node_id] in (NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.SKIPPED)

    def edge_is_live(self, source_id: str, target_id: str) -> bool:
        if self.statuses[source_id] != NodeStatus.SUCCEEDED:
            return False
        if source_id not in self.branches:
            return True
        # outgoing[0] is the true branch, outgoing[1] the false branch
        children = self.analysis.adjacency[source_id]
        chosen = 0 if self.branches[source_id] else 1
        return chosen < len(children) and children[chosen] == target_id

    def live_inputs(self, node_id: str) -> Dict[str, Any]:
        return {
            pred: self.outputs[pred]
            for pred in self.predecessors[node_id]
            if self.edge_is_live(pred, node_id)
        }

    def skip_reason(self, node_id: str) -> str:
        preds = self.predecessors[node_id]
        if not preds:
            return "Skipped: unreachable (no incoming connections)"

        failed = [p for p in preds if self.statuses[p] == NodeStatus.FAILED]
        if failed:
            return f"Skipped: upstream failure in {', '.join(failed)}"

        if any(p in self.branches and self.statuses[p] == NodeStatus.SUCCEEDED for p in preds):
            return "Skipped: branch not taken"

        return f"Skipped: upstream {', '.join(preds)} did not run"


class ExecutionEngine:
    """Executes workflow graphs against a handler registry"""

    def __init__(
        self,
        registry: Optional[HandlerRegistry] = None,
        max_concurrency: int = MAX_CONCURRENT_NODES,
        orphan_policy: Optional[str] = None,
        multi_output_policy: str = "map",
        timeout_seconds: Optional[float] = EXECUTION_TIMEOUT_SECONDS,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if multi_output_policy not in MULTI_OUTPUT_POLICIES:
            raise ValueError(
                f"Unknown multi-output policy '{multi_output_policy}'. "
                f"Allowed: {', '.join(sorted(MULTI_OUTPUT_POLICIES))}"
            )

        self.registry = registry if registry is not None else build_default_registry()
        self.max_concurrency = max_concurrency
        self.orphan_policy = orphan_policy
        self.multi_output_policy = multi_output_policy
        self.timeout_seconds = timeout_seconds
        self.template_resolver = TemplateResolver()
        self._pools: List[ThreadPoolExecutor] = []

    def drain(self) -> None:
        """Blocks until handler threads left running by cancelled executions have returned"""
        while self._pools:
            self._pools.pop().shutdown(wait=True)

    def _new_pool(self, execution_id: str) -> ThreadPoolExecutor:
        pool = ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix=f"node-{execution_id}")
        self._pools.append(pool)
        return pool

    def execute(self, graph: WorkflowGraph, cancel_event=None, timeout_seconds: Optional[float] = None) -> ExecutionResult:
        """Synchronous entry point; ``cancel_event`` is any object with ``is_set()``"""
        return asyncio.run(self.execute_async(graph, cancel_event=cancel_event, timeout_seconds=timeout_seconds))

    async def execute_async(
        self,
        graph: WorkflowGraph,
        cancel_event=None,
        timeout_seconds: Optional[float] = None,
    ) -> ExecutionResult:
        execution_id = generate_execution_id()

        with correlation_scope(execution_id):
            # Structural problems raise here, before anything runs
            snapshot = graph.snapshot()
            analysis = validate_graph(snapshot, registry=self.registry, orphan_policy=self.orphan_policy)
            order = analysis.order

            predecessors = {nid: [] for nid in order}
            for source_id in order:
                for target_id in analysis.adjacency[source_id]:
                    predecessors[target_id].append(source_id)

            state = RunState(
                execution_id=execution_id,
                graph=snapshot,
                analysis=analysis,
                predecessors=predecessors,
                statuses={nid: NodeStatus.PENDING for nid in order},
                pool=self._new_pool(execution_id),
            )

            started_at = datetime.now(timezone.utc)
            logging.info("Execution started", extra={
                "execution_id": execution_id,
                "node_count": len(order),
                "max_concurrency": self.max_concurrency,
            })

            timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
            try:
                await self._run(state, order, cancel_event, timeout)
            finally:
                # Abandoned handler threads finish in the background; drain() waits for them
                state.pool.shutdown(wait=False, cancel_futures=True)
                if not state.cancel_token.is_set():
                    self._pools.remove(state.pool)

            result = self._build_result(state, started_at)
            logging.info("Execution finished", extra={
                "execution_id": execution_id,
                "succeeded": result.succeeded,
                "cancelled": result.cancelled,
            })
            return result

    async def _run(self, state: RunState, order: List[str], cancel_event, timeout: Optional[float]) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout else None
        position = {nid: index for index, nid in enumerate(order)}
        remaining = dict(state.analysis.in_degree)

        ready: List[Tuple[int, str]] = []
        for nid in order:
            if remaining[nid] == 0:
                heapq.heappush(ready, (position[nid], nid))

        running: Dict[asyncio.Task, str] = {}

        def settle(node_id: str) -> None:
            for child in state.analysis.adjacency[node_id]:
                remaining[child] -= 1
                if remaining[child] == 0:
                    heapq.heappush(ready, (position[child], child))

        def should_cancel() -> bool:
            if cancel_event is not None and cancel_event.is_set():
                return True
            return deadline is not None and loop.time() >= deadline

        try:
            while ready or running:
                if should_cancel():
                    await self._cancel(state, order, running)
                    return

                while ready and len(running) < self.max_concurrency:
                    _, node_id = heapq.heappop(ready)
                    node = state.graph.get(node_id)

                    if not self._should_run(state, node):
                        state.record(node_id, LogEvent.SKIP, NodeStatus.SKIPPED, message=state.skip_reason(node_id))
                        settle(node_id)
                        continue

                    spec = self.registry.get(node.kind, node.service)
                    inputs = state.live_inputs(node_id)
                    state.record(
                        node_id,
                        LogEvent.START,
                        NodeStatus.RUNNING,
                        message=f"Running {node.handler_key}",
                        data={"kind": node.kind.value, "service": node.service},
                    )
                    task = asyncio.create_task(self._run_node(state, node, spec, inputs))
                    running[task] = node_id

                if not running:
                    continue

                wait_for = POLL_INTERVAL_SECONDS
                if deadline is not None:
                    wait_for = max(0.0, min(wait_for, deadline - loop.time()))
                done, _ = await asyncio.wait(list(running), timeout=wait_for, return_when=asyncio.FIRST_COMPLETED)

                # Settle in topological order so the log is deterministic for a given schedule
                for task in sorted(done, key=lambda t: position[running[t]]):
                    node_id = running.pop(task)
                    if should_cancel():
                        running[task] = node_id
                        continue
                    self._complete(state, state.graph.get(node_id), task)
                    settle(node_id)
        except EngineFault as e:
            logging.error("Execution aborted by engine fault", extra={
                "execution_id": state.execution_id,
                "error": e.message,
            })
            await self._abort_running(state, running)
            raise

    def _should_run(self, state: RunState, node: Node) -> bool:
        if node.kind == NodeKind.TRIGGER:
            return True
        preds = state.predecessors[node.id]
        return any(state.edge_is_live(pred, node.id) for pred in preds)

    async def _run_node(self, state: RunState, node: Node, spec: HandlerSpec, inputs: Dict[str, Any]) -> Any:
        config = node.config
        if node.kind == NodeKind.ACTION:
            config = self.template_resolver.resolve(node.id, config, inputs)

        lock = nullcontext()
        if not spec.idempotent:
            lock = state.locks.setdefault(spec.key, asyncio.Lock())

        # Only this task's context sees the token; the copy carries it into the worker thread
        cancel_token_var.set(state.cancel_token)

        async with lock:
            if spec.is_async:
                return await spec.func(state.execution_id, node.id, config, inputs)
            call = functools.partial(spec.func, state.execution_id, node.id, config, inputs)
            context = contextvars.copy_context()
            return await asyncio.get_running_loop().run_in_executor(state.pool, context.run, call)

    def _complete(self, state: RunState, node: Node, task: asyncio.Task) -> None:
        error = task.exception()
        if isinstance(error, EngineFault):
            raise error

        if error is not None:
            logging.warning("Node failed", extra={
                "execution_id": state.execution_id,
                "node_id": node.id,
                "error_type": type(error).__name__,
                "error": str(error),
            })
            state.record(
                node.id,
                LogEvent.ERROR,
                NodeStatus.FAILED,
                message=f"{node.handler_key} failed ({type(error).__name__})",
                error=str(error),
            )
            return

        value = task.result()
        message = f"{node.handler_key} completed"
        if isinstance(value, BranchResult):
            state.branches[node.id] = value.branch
            message = f"Condition evaluated to: {str(value.branch).lower()}"
            value = value.value

        state.outputs[node.id] = value
        if node.kind == NodeKind.OUTPUT:
            state.succeeded_outputs.append(node.id)
        state.record(node.id, LogEvent.SUCCESS, NodeStatus.SUCCEEDED, message=message, data=value)

    async def _cancel(self, state: RunState, order: List[str], running: Dict[asyncio.Task, str]) -> None:
        state.cancelled = True
        logging.warning("Execution cancelled", extra={
            "execution_id": state.execution_id,
            "in_flight": sorted(running.values()),
        })

        in_flight = sorted(running.values(), key=order.index)
        await self._abort_running(state, running)
        for node_id in in_flight:
            state.record(node_id, LogEvent.ERROR, NodeStatus.FAILED, message=CANCELLED_MESSAGE, error=CANCELLED_MESSAGE)

        for node_id in order:
            if not state.is_settled(node_id):
                state.record(node_id, LogEvent.SKIP, NodeStatus.SKIPPED, message=f"Skipped: {CANCELLED_MESSAGE.lower()}")

    async def _abort_running(self, state: RunState, running: Dict[asyncio.Task, str]) -> None:
        state.cancel_token.set()
        tasks: Set[asyncio.Task] = set(running)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _build_result(self, state: RunState, started_at: datetime) -> ExecutionResult:
        errored = any(entry.event == LogEvent.ERROR for entry in state.log)
        succeeded = bool(state.succeeded_outputs) and not errored and not state.cancelled

        final_output = None
        if len(state.succeeded_outputs) == 1:
            final_output = state.outputs[state.succeeded_outputs[0]]
        elif state.succeeded_outputs:
            if self.multi_output_policy == "last":
                final_output = state.outputs[state.succeeded_outputs[-1]]
            else:
                final_output = {nid: state.outputs[nid] for nid in state.succeeded_outputs}

        return ExecutionResult(
            execution_id=state.execution_id,
            succeeded=succeeded,
            cancelled=state.cancelled,
            final_output=final_output,
            outputs=dict(state.outputs),
            log=list(state.log),
            node_statuses=dict(state.statuses),
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
        )
