"""Struggle score: 0 (effortless) to 100 (maximum struggle) for a passed attempt."""

import logging
from shared.constants import (
    ATTEMPT_PENALTY_MAX,
    ATTEMPT_PENALTY_UNIT,
    CERTIFICATE_TIERS,
    DEFAULT_CERTIFICATE_TIER,
    HINT_PENALTY_MAX,
    TIME_PENALTY_MAX,
    TIME_PENALTY_RATE,
)
from shared.exceptions import UnscorableAttemptError
from shared.types import AttemptTelemetry


def hint_penalty(hints_used: int, max_hints: int) -> float:
    if hints_used <= 0:
        return 0.0
    if max_hints <= 0:
        return float(HINT_PENALTY_MAX)
    return min(HINT_PENALTY_MAX, HINT_PENALTY_MAX * hints_used / max_hints)


def attempt_penalty(attempt_number: int) -> float:
    # Quadratic: each failed submission costs more than the one before
    return float(min(ATTEMPT_PENALTY_MAX, ATTEMPT_PENALTY_UNIT * (attempt_number - 1) ** 2))


def time_penalty(time_spent_seconds: float, expected_duration_seconds: float) -> float:
    ratio = time_spent_seconds / expected_duration_seconds
    if ratio <= 1:
        return 0.0
    return min(TIME_PENALTY_MAX, TIME_PENALTY_RATE * (ratio - 1))


def score(attempt: AttemptTelemetry) -> int:
    """Scores a passed attempt; failed attempts raise UnscorableAttemptError"""
    if not attempt.verification_passed:
        raise UnscorableAttemptError("Only attempts that passed verification can be scored")

    total = (
        hint_penalty(attempt.hints_used, attempt.max_hints)
        + attempt_penalty(attempt.attempt_number)
        + time_penalty(attempt.time_spent_seconds, attempt.expected_duration_seconds)
    )
    # Half-up rounding; the clamped total is never negative
    result = int(max(0.0, min(100.0, total)) + 0.5)

    logging.info("Struggle score computed", extra={
        "struggle_score": result,
        "hints_used": attempt.hints_used,
        "attempt_number": attempt.attempt_number,
        "time_spent_seconds": attempt.time_spent_seconds,
    })
    return result


def certificate_tier(struggle_score: int) -> str:
    for upper_bound, tier in CERTIFICATE_TIERS:
        if struggle_score <= upper_bound:
            return tier
    return DEFAULT_CERTIFICATE_TIER
