"""Adaptation policy: picks the next instructional action from score history and live signals."""

import logging
from statistics import mean
from typing import Dict, List, Optional
from shared.constants import (
    ADAPTATION_WINDOW,
    HIGH_STRUGGLE_THRESHOLD,
    LONG_PAUSE_SECONDS,
    LOW_STRUGGLE_THRESHOLD,
    OVERTIME_FACTOR,
    REPEATED_FAILURE_COUNT,
    SEVERE_STRUGGLE_THRESHOLD,
)
from shared.types import (
    ACTION_PRIORITY,
    AdaptationActionType,
    AdaptationDecision,
    LearningStyle,
    PauseLocation,
    Signals,
)

CAPSTONE_UNIT = "capstone"

CONTEXTUAL_HELP: Dict[PauseLocation, str] = {
    PauseLocation.BEFORE_API_CONFIG: (
        "I see you're looking at the API configuration. "
        "What information do you think the API needs to know about your request?"
    ),
    PauseLocation.DURING_DATA_MAPPING: (
        "Data mapping can be tricky. Let's think about this: what format is the data coming in, "
        "and what format does the next step expect?"
    ),
    PauseLocation.AT_DEPLOYMENT: (
        "Before we deploy, let's verify: what would success look like? How would you know this is working?"
    ),
    PauseLocation.OTHER: "I notice you've paused. What part feels unclear right now?",
}

# Checked in order; first substring match wins
ERROR_GUIDANCE = (
    ("api_key", "I see an authentication error. Where do API keys typically need to be configured?"),
    ("undefined", "Something is undefined. What data were you expecting at this point, and where should it come from?"),
    ("connection", "There's a connection issue. What needs to connect to what in your workflow?"),
    ("timeout", "The request timed out. What might cause an API call to take too long?"),
    ("invalid", "The input seems invalid. What format does this block expect?"),
)

DEFAULT_TUTOR_MESSAGE = "Let's step back. What's the first thing that happens when this runs?"
EMPTY_SANDBOX_MESSAGE = "What's the first step you want to take? Start by adding a block to the canvas."


def contextual_help(location: Optional[PauseLocation]) -> str:
    return CONTEXTUAL_HELP[location or PauseLocation.OTHER]


def error_guidance(error: str) -> str:
    lowered = error.lower()
    for pattern, response in ERROR_GUIDANCE:
        if pattern in lowered:
            return response
    return (
        f'I see an error: "{error[:50]}...". Let\'s debug this together. '
        "What was the last thing you changed before this happened?"
    )


def sandbox_guidance(node_count: Optional[int], current_error: Optional[str] = None) -> Optional[str]:
    """Real-time nudge while the learner builds; None means let them work"""
    if current_error:
        return error_guidance(current_error)
    if node_count == 0:
        return EMPTY_SANDBOX_MESSAGE
    return None


def detect_learning_style(
    visual_diagram_views: int = 0,
    code_example_views: int = 0,
    sandbox_interactions: int = 0,
    documentation_reads: int = 0,
) -> LearningStyle:
    total = visual_diagram_views + code_example_views + sandbox_interactions + documentation_reads
    if total == 0:
        return LearningStyle.HANDS_ON

    visual = visual_diagram_views / total
    textual = (code_example_views + documentation_reads) / total
    hands_on = sandbox_interactions / total

    if hands_on > visual and hands_on > textual:
        return LearningStyle.HANDS_ON
    if visual > textual:
        return LearningStyle.VISUAL
    return LearningStyle.TEXTUAL


def resolve_learning_style(signals: Signals) -> LearningStyle:
    if signals.preferred_style is not None:
        return signals.preferred_style
    if signals.engagement is not None:
        return detect_learning_style(**signals.engagement.model_dump())
    return LearningStyle.HANDS_ON


class _Ballot:
    """Vote table; ``continue`` starts with one baseline vote"""

    def __init__(self):
        self.votes = {action: 0 for action in ACTION_PRIORITY}
        self.votes[AdaptationActionType.CONTINUE] = 1
        self.reasons: List[str] = ["baseline: continue"]

    def cast(self, action: AdaptationActionType, weight: int, reason: str) -> None:
        self.votes[action] += weight
        self.reasons.append(f"{reason}: +{weight} {action.value}")

    def winner(self) -> AdaptationActionType:
        # max() keeps the first maximum, so ACTION_PRIORITY order breaks ties
        return max(ACTION_PRIORITY, key=lambda action: self.votes[action])


def decide(history: List[float], signals: Signals) -> AdaptationDecision:
    """Stateless: the same history and signals always yield the same decision"""
    window = list(history)[-ADAPTATION_WINDOW:]
    hints_left = signals.hints_used < signals.max_hints
    style = resolve_learning_style(signals)
    ballot = _Ballot()

    if window:
        average = mean(window)
        if average >= HIGH_STRUGGLE_THRESHOLD:
            ballot.cast(AdaptationActionType.SIMPLIFY, 1, f"recent struggle averages {average:.0f}")
        if average >= SEVERE_STRUGGLE_THRESHOLD:
            ballot.cast(AdaptationActionType.TUTOR_INTERVENTION, 1, f"recent struggle is severe ({average:.0f})")
        if average <= LOW_STRUGGLE_THRESHOLD:
            ballot.cast(AdaptationActionType.CONTINUE, 1, f"recent struggle is low ({average:.0f})")

    if signals.last_attempt_passed:
        ballot.cast(AdaptationActionType.CONTINUE, 1, "last attempt passed")

    if signals.max_hints and signals.hints_used >= signals.max_hints:
        if style == LearningStyle.HANDS_ON:
            ballot.cast(AdaptationActionType.TUTOR_INTERVENTION, 2, "hints exhausted, already hands-on")
        else:
            ballot.cast(AdaptationActionType.SIMPLIFY, 2, "hints exhausted")

    if signals.time_on_task_seconds > signals.expected_duration_seconds * OVERTIME_FACTOR:
        if signals.known_struggle_area and signals.unmet_prerequisites:
            ballot.cast(AdaptationActionType.REINFORCE, 2, "overtime in a known struggle area")
        elif hints_left:
            ballot.cast(AdaptationActionType.HINT, 2, "overtime with hints remaining")

    if signals.pause_seconds > LONG_PAUSE_SECONDS:
        ballot.cast(AdaptationActionType.TUTOR_INTERVENTION, 2, f"paused {signals.pause_seconds:.0f}s")

    if signals.consecutive_failures >= REPEATED_FAILURE_COUNT:
        ballot.cast(AdaptationActionType.TUTOR_INTERVENTION, 1, f"{signals.consecutive_failures} failures in a row")

    if signals.last_error and hints_left:
        ballot.cast(AdaptationActionType.HINT, 1, "last attempt errored")

    action = ballot.winner()
    decision = AdaptationDecision(
        action=action,
        votes={a.value: count for a, count in ballot.votes.items()},
        reasoning="; ".join(ballot.reasons),
    )

    if action == AdaptationActionType.CONTINUE:
        decision.next_unit = signals.next_unit or CAPSTONE_UNIT
    elif action == AdaptationActionType.SIMPLIFY:
        decision.alternative_format = LearningStyle.VISUAL if style == LearningStyle.HANDS_ON else style
    elif action == AdaptationActionType.REINFORCE:
        decision.prerequisite_unit = signals.unmet_prerequisites[0] if signals.unmet_prerequisites else None
    elif action == AdaptationActionType.HINT:
        decision.hint_index = signals.hints_used
    else:
        if signals.pause_seconds > LONG_PAUSE_SECONDS:
            decision.message = contextual_help(signals.pause_location)
        else:
            decision.message = sandbox_guidance(signals.node_count, signals.last_error) or DEFAULT_TUTOR_MESSAGE

    logging.info("Adaptation decided", extra={"action": action.value, "votes": decision.votes})
    return decision
