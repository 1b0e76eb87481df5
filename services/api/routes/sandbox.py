"""Sandbox API routes: execute, verify, score, decide."""

import asyncio
import logging
from typing import List
from fastapi import APIRouter, BackgroundTasks, HTTPException, status
from services.adaptation.policy import decide
from services.api.domain.models import (
    DecideRequest,
    ExecuteRequest,
    HandlerInfo,
    ScoreResponse,
    ValidateGraphRequest,
    ValidateGraphResponse,
    VerifyRequest,
)
from services.api.infra.redis_store import RedisStore
from services.executor.engine import ExecutionEngine
from services.graph.model import WorkflowGraph
from services.graph.validation import validate_graph
from services.handlers.registry import build_default_registry
from services.scoring.struggle import certificate_tier, score
from services.verification.verifier import verify
from shared.constants import MAX_CONCURRENT_NODES
from shared.exceptions import EngineFault, ExecutionInProgressError, StructuralError, UnscorableAttemptError
from shared.types import AdaptationDecision, AttemptTelemetry, ExecutionResult, VerificationResult


router = APIRouter()
redis_store = RedisStore()
registry = build_default_registry()


def _release_when_idle(engine: ExecutionEngine, session_id: str, token: str) -> None:
    """The session stays locked until handlers abandoned by a cancelled run have returned"""
    engine.drain()
    redis_store.release_execution_lock(session_id, token)


def _parse_graph(payload: dict) -> WorkflowGraph:
    try:
        return WorkflowGraph.from_dict(payload)
    except StructuralError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_dict())


@router.post("/execute", response_model=ExecutionResult)
async def execute_graph(request: ExecuteRequest, background_tasks: BackgroundTasks):
    graph = _parse_graph(request.graph)

    try:
        token = redis_store.acquire_execution_lock(request.session_id)
    except ExecutionInProgressError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)

    engine = ExecutionEngine(registry=registry, max_concurrency=MAX_CONCURRENT_NODES)
    try:
        result = await engine.execute_async(graph, timeout_seconds=request.timeout_seconds)
    except StructuralError as e:
        _release_when_idle(engine, request.session_id, token)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_dict())
    except EngineFault as e:
        logging.error("Engine fault during execution", extra={"session_id": request.session_id, "error": e.message})
        await asyncio.to_thread(_release_when_idle, engine, request.session_id, token)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=e.to_dict())
    except Exception:
        await asyncio.to_thread(_release_when_idle, engine, request.session_id, token)
        raise

    background_tasks.add_task(_release_when_idle, engine, request.session_id, token)
    return result


@router.post("/verify", response_model=VerificationResult)
async def verify_execution(request: VerifyRequest):
    graph = _parse_graph(request.graph) if request.graph is not None else None
    return verify(request.execution_result, request.challenge, attempt=request.attempt, graph=graph)


@router.post("/score", response_model=ScoreResponse)
async def score_attempt(attempt: AttemptTelemetry):
    try:
        struggle_score = score(attempt)
    except UnscorableAttemptError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.message)
    return ScoreResponse(score=struggle_score, tier=certificate_tier(struggle_score))


@router.post("/decide", response_model=AdaptationDecision)
async def decide_next_action(request: DecideRequest):
    return decide(request.history, request.signals)


@router.post("/graph/validate", response_model=ValidateGraphResponse)
async def validate_graph_route(request: ValidateGraphRequest):
    try:
        graph = WorkflowGraph.from_dict(request.graph)
        analysis = validate_graph(graph, registry=registry)
    except (StructuralError, EngineFault) as e:
        return ValidateGraphResponse(valid=False, error=e.to_dict())
    return ValidateGraphResponse(valid=True, orphans=analysis.orphans)


@router.get("/handlers", response_model=List[HandlerInfo])
async def list_handlers():
    return [HandlerInfo(kind=kind, service=service) for kind, service in registry.list_services()]
