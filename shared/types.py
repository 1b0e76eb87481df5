"""Shared types for the graph model, executor, verifier, scorer and adaptation policy."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Any, Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from shared.constants import DEFAULT_EXPECTED_DURATION_SECONDS
from shared.schemas import normalize_service_config, parse_service_config


class NodeKind(str, Enum):
    TRIGGER = "trigger"
    ACTION = "action"
    LOGIC = "logic"
    OUTPUT = "output"


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class LogEvent(str, Enum):
    START = "start"
    SUCCESS = "success"
    ERROR = "error"
    SKIP = "skip"


class Position(BaseModel):
    x: float = 0
    y: float = 0


class Node(BaseModel):
    """A vertex of the workflow graph; config is validated against its service schema"""
    id: str = Field(min_length=1)
    kind: NodeKind = Field(validation_alias=AliasChoices("kind", "type"))
    service: str = Field(min_length=1)
    config: Dict[str, Any] = Field(default_factory=dict)
    position: Position = Field(default_factory=Position)
    outgoing: List[str] = Field(default_factory=list, validation_alias=AliasChoices("outgoing", "connections"))

    @model_validator(mode="after")
    def normalize_config(self) -> "Node":
        self.config = normalize_service_config(self.kind.value, self.service, self.config)
        return self

    @property
    def typed_config(self) -> BaseModel:
        return parse_service_config(self.kind.value, self.service, self.config)

    @property
    def handler_key(self) -> str:
        return f"{self.kind.value}:{self.service}"


class ExecutionLogEntry(BaseModel):
    timestamp: datetime
    node_id: str
    event: LogEvent
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[str] = None


class ExecutionResult(BaseModel):
    execution_id: str
    succeeded: bool
    cancelled: bool = False
    final_output: Optional[Any] = None
    outputs: Dict[str, Any] = Field(default_factory=dict)
    log: List[ExecutionLogEntry] = Field(default_factory=list)
    node_statuses: Dict[str, NodeStatus] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def entries_for(self, node_id: str) -> List[ExecutionLogEntry]:
        return [entry for entry in self.log if entry.node_id == node_id]

    def status_of(self, node_id: str) -> NodeStatus:
        return self.node_statuses.get(node_id, NodeStatus.PENDING)


# Challenge definitions (read-only input from the challenge repository)

class ComparisonKind(str, Enum):
    EXISTS = "exists"
    MATCHES = "matches"
    CONTAINS = "contains"
    TYPE_CHECK = "type_check"


class RequirementKind(str, Enum):
    API_CALLED = "api_called"
    RESPONSE_RECEIVED = "response_received"
    LATENCY_UNDER = "latency_under"
    WORKFLOW_DEPLOYED = "workflow_deployed"


class OutputValidation(BaseModel):
    field: str
    comparison: ComparisonKind = Field(
        validation_alias=AliasChoices("comparison", "comparison_kind", "comparisonKind", "type")
    )
    expected: Any = None


class ExecutionRequirement(BaseModel):
    kind: RequirementKind = Field(validation_alias=AliasChoices("kind", "type"))
    target: str = ""
    threshold: Optional[float] = Field(default=None, validation_alias=AliasChoices("threshold", "value"))

    @property
    def label(self) -> str:
        return f"{self.kind.value}:{self.target}"


class Challenge(BaseModel):
    """Pass/fail contract for one unit; immutable for the session"""
    model_config = ConfigDict(frozen=True)

    prompt: str = ""
    expected_output_schema: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("expected_output_schema", "expectedOutputSchema"),
    )
    output_validations: List[OutputValidation] = Field(
        default_factory=list,
        validation_alias=AliasChoices("output_validations", "outputValidations", "outputValidation"),
    )
    execution_requirements: List[ExecutionRequirement] = Field(
        default_factory=list,
        validation_alias=AliasChoices("execution_requirements", "executionRequirements"),
    )
    hints: List[str] = Field(default_factory=list)
    max_hints: int = Field(default=0, ge=0, validation_alias=AliasChoices("max_hints", "maxHints"))
    expected_duration_seconds: float = Field(
        default=DEFAULT_EXPECTED_DURATION_SECONDS,
        gt=0,
        validation_alias=AliasChoices("expected_duration_seconds", "duration"),
    )


class ValidationOutcome(BaseModel):
    field: str
    passed: bool
    actual: Any = None
    resolved: bool = True


class RequirementOutcome(BaseModel):
    requirement: str
    passed: bool
    detail: Optional[str] = None


class VerificationResult(BaseModel):
    passed: bool
    output_validations: List[ValidationOutcome] = Field(default_factory=list)
    execution_results: List[RequirementOutcome] = Field(default_factory=list)
    schema_errors: List[str] = Field(default_factory=list)
    execution_succeeded: bool = False
    struggle_score: Optional[int] = None
    certificate_tier: Optional[str] = None
    hints_used: int = 0
    time_to_complete: float = 0
    attempt_count: int = 1
    workflow_snapshot: Optional[str] = None


class AttemptTelemetry(BaseModel):
    hints_used: int = Field(default=0, ge=0)
    max_hints: int = Field(default=0, ge=0)
    time_spent_seconds: float = Field(default=0, ge=0)
    attempt_number: int = Field(default=1, ge=1)
    verification_passed: bool = False
    expected_duration_seconds: float = Field(default=DEFAULT_EXPECTED_DURATION_SECONDS, gt=0)


# Adaptation

class AdaptationActionType(str, Enum):
    CONTINUE = "continue"
    SIMPLIFY = "simplify"
    REINFORCE = "reinforce"
    HINT = "hint"
    TUTOR_INTERVENTION = "tutor_intervention"


# Tie-break order: earlier wins
ACTION_PRIORITY = [
    AdaptationActionType.CONTINUE,
    AdaptationActionType.SIMPLIFY,
    AdaptationActionType.REINFORCE,
    AdaptationActionType.HINT,
    AdaptationActionType.TUTOR_INTERVENTION,
]


class LearningStyle(str, Enum):
    VISUAL = "visual"
    TEXTUAL = "textual"
    HANDS_ON = "hands-on"


class PauseLocation(str, Enum):
    BEFORE_API_CONFIG = "before_api_config"
    DURING_DATA_MAPPING = "during_data_mapping"
    AT_DEPLOYMENT = "at_deployment"
    OTHER = "other"


class Engagement(BaseModel):
    """Content interaction counts used to infer a learning style"""
    visual_diagram_views: int = Field(default=0, ge=0)
    code_example_views: int = Field(default=0, ge=0)
    sandbox_interactions: int = Field(default=0, ge=0)
    documentation_reads: int = Field(default=0, ge=0)


class Signals(BaseModel):
    hints_used: int = Field(default=0, ge=0)
    max_hints: int = Field(default=0, ge=0)
    time_on_task_seconds: float = Field(default=0, ge=0)
    expected_duration_seconds: float = Field(default=DEFAULT_EXPECTED_DURATION_SECONDS, gt=0)
    last_attempt_passed: Optional[bool] = None
    consecutive_failures: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    pause_seconds: float = Field(default=0, ge=0)
    pause_location: Optional[PauseLocation] = None
    # Inferred from engagement when not given
    preferred_style: Optional[LearningStyle] = None
    engagement: Optional[Engagement] = None
    node_count: Optional[int] = Field(default=None, ge=0)
    known_struggle_area: bool = False
    unmet_prerequisites: List[str] = Field(default_factory=list)
    next_unit: Optional[str] = None


class AdaptationDecision(BaseModel):
    action: AdaptationActionType
    next_unit: Optional[str] = None
    alternative_format: Optional[LearningStyle] = None
    prerequisite_unit: Optional[str] = None
    hint_index: Optional[int] = None
    message: Optional[str] = None
    votes: Dict[str, int] = Field(default_factory=dict)
    reasoning: str = ""


@dataclass
class BranchResult:
    """Returned by logic handlers: the value to pass on and which branch is live"""
    value: Any
    branch: bool
