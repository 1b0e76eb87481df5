"""Verification: turns an ExecutionResult plus a Challenge into a pass/fail, scored result."""

import hashlib
import json
import logging
from typing import List, Any, Optional, Set
from services.scoring.struggle import certificate_tier, score
from services.verification.schema import check_schema, matches_type
from shared.types import (
    AttemptTelemetry,
    Challenge,
    ComparisonKind,
    ExecutionRequirement,
    ExecutionResult,
    LogEvent,
    OutputValidation,
    RequirementKind,
    RequirementOutcome,
    ValidationOutcome,
    VerificationResult,
)
from shared.utils import resolve_path


def check_output_validation(final_output: Any, validation: OutputValidation) -> ValidationOutcome:
    found, actual = resolve_path(final_output, validation.field)
    if not found:
        return ValidationOutcome(field=validation.field, passed=False, actual=None, resolved=False)

    comparison = validation.comparison
    expected = validation.expected

    if comparison == ComparisonKind.EXISTS:
        passed = actual is not None
    elif comparison == ComparisonKind.MATCHES:
        # True == 1 in Python; booleans only match booleans
        passed = actual == expected and isinstance(actual, bool) == isinstance(expected, bool)
    elif comparison == ComparisonKind.CONTAINS:
        if isinstance(actual, str):
            passed = str(expected) in actual
        elif isinstance(actual, list):
            passed = expected in actual
        elif isinstance(actual, dict):
            passed = isinstance(expected, str) and expected in actual
        else:
            passed = False
    else:
        passed = isinstance(expected, str) and matches_type(actual, expected)

    return ValidationOutcome(field=validation.field, passed=passed, actual=actual, resolved=True)


def _matching_nodes(result: ExecutionResult, target: str) -> List[str]:
    """Node ids whose start entry names ``target`` as node id or service, in start order"""
    matched = []
    for entry in result.log:
        if entry.event != LogEvent.START or entry.node_id in matched:
            continue
        data = entry.data if isinstance(entry.data, dict) else {}
        if not target:
            if data.get("kind") == "action":
                matched.append(entry.node_id)
        elif entry.node_id == target or data.get("service") == target:
            matched.append(entry.node_id)
    return matched


def _latencies_ms(result: ExecutionResult, node_ids: Set[str]) -> List[float]:
    started = {}
    latencies = []
    for entry in result.log:
        if entry.node_id not in node_ids:
            continue
        if entry.event == LogEvent.START:
            started[entry.node_id] = entry.timestamp
        elif entry.event in (LogEvent.SUCCESS, LogEvent.ERROR) and entry.node_id in started:
            delta = entry.timestamp - started.pop(entry.node_id)
            latencies.append(delta.total_seconds() * 1000)
    return latencies


def check_requirement(result: ExecutionResult, requirement: ExecutionRequirement) -> RequirementOutcome:
    label = requirement.label
    kind = requirement.kind

    if kind == RequirementKind.WORKFLOW_DEPLOYED:
        output_ids = set()
        for entry in result.log:
            if entry.event == LogEvent.START and isinstance(entry.data, dict) and entry.data.get("kind") == "output":
                output_ids.add(entry.node_id)
        output_succeeded = any(e.event == LogEvent.SUCCESS and e.node_id in output_ids for e in result.log)
        errored = [e.node_id for e in result.log if e.event == LogEvent.ERROR]
        if errored:
            return RequirementOutcome(requirement=label, passed=False, detail=f"errors in {', '.join(errored)}")
        if not output_succeeded:
            return RequirementOutcome(requirement=label, passed=False, detail="no output node succeeded")
        return RequirementOutcome(requirement=label, passed=True)

    matched = _matching_nodes(result, requirement.target)

    if kind == RequirementKind.API_CALLED:
        if matched:
            return RequirementOutcome(requirement=label, passed=True, detail=f"started: {', '.join(matched)}")
        return RequirementOutcome(requirement=label, passed=False, detail="never started")

    if kind == RequirementKind.RESPONSE_RECEIVED:
        for entry in result.log:
            if entry.event == LogEvent.SUCCESS and entry.node_id in matched and entry.data is not None:
                return RequirementOutcome(requirement=label, passed=True, detail=f"response from {entry.node_id}")
        return RequirementOutcome(requirement=label, passed=False, detail="no response received")

    # latency_under
    if requirement.threshold is None:
        return RequirementOutcome(requirement=label, passed=False, detail="no latency threshold given")
    latencies = _latencies_ms(result, set(matched))
    if not latencies:
        return RequirementOutcome(requirement=label, passed=False, detail="no completed call to measure")
    slowest = max(latencies)
    return RequirementOutcome(
        requirement=label,
        passed=slowest < requirement.threshold,
        detail=f"slowest {slowest:.1f}ms against {requirement.threshold:g}ms",
    )


def snapshot_hash(graph, result: ExecutionResult) -> str:
    """Content hash of the graph and the log's events; timestamps and ids are left out"""
    payload = {
        "graph": graph.to_dict(),
        "log": [
            {"node_id": e.node_id, "event": e.event.value, "data": e.data}
            for e in result.log
        ],
    }
    encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def verify(
    execution_result: ExecutionResult,
    challenge: Challenge,
    attempt: Optional[AttemptTelemetry] = None,
    graph=None,
) -> VerificationResult:
    """Checks output validations, execution requirements and the output schema"""
    validations = [
        check_output_validation(execution_result.final_output, validation)
        for validation in challenge.output_validations
    ]
    requirements = [check_requirement(execution_result, req) for req in challenge.execution_requirements]
    schema_errors = check_schema(execution_result.final_output, challenge.expected_output_schema)

    passed = (
        all(v.passed for v in validations)
        and all(r.passed for r in requirements)
        and not schema_errors
        and execution_result.succeeded
    )

    if attempt is None:
        attempt = AttemptTelemetry(
            max_hints=challenge.max_hints,
            expected_duration_seconds=challenge.expected_duration_seconds,
        )
    attempt = attempt.model_copy(update={"verification_passed": passed})

    struggle_score = None
    tier = None
    if passed:
        struggle_score = score(attempt)
        tier = certificate_tier(struggle_score)

    logging.info("Verification finished", extra={
        "execution_id": execution_result.execution_id,
        "passed": passed,
        "failed_validations": [v.field for v in validations if not v.passed],
        "failed_requirements": [r.requirement for r in requirements if not r.passed],
        "schema_errors": len(schema_errors),
    })

    return VerificationResult(
        passed=passed,
        output_validations=validations,
        execution_results=requirements,
        schema_errors=schema_errors,
        execution_succeeded=execution_result.succeeded,
        struggle_score=struggle_score,
        certificate_tier=tier,
        hints_used=attempt.hints_used,
        time_to_complete=attempt.time_spent_seconds,
        attempt_count=attempt.attempt_number,
        workflow_snapshot=snapshot_hash(graph, execution_result) if graph is not None else None,
    )
