"""API request/response models."""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from shared.types import AttemptTelemetry, Challenge, ExecutionResult, Signals


class ExecuteRequest(BaseModel):
    """Graph submitted for execution within a sandbox session"""
    session_id: str = Field(min_length=1)
    graph: Dict[str, Any]
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


class VerifyRequest(BaseModel):
    execution_result: ExecutionResult
    challenge: Challenge
    attempt: Optional[AttemptTelemetry] = None
    graph: Optional[Dict[str, Any]] = None


class ScoreResponse(BaseModel):
    score: int
    tier: str


class DecideRequest(BaseModel):
    history: List[float] = Field(default_factory=list)
    signals: Signals = Field(default_factory=Signals)


class ValidateGraphRequest(BaseModel):
    graph: Dict[str, Any]


class ValidateGraphResponse(BaseModel):
    valid: bool
    error: Optional[Dict[str, Any]] = None
    orphans: List[str] = Field(default_factory=list)


class HandlerInfo(BaseModel):
    kind: str
    service: str
