"""Pure stage transition function for the task lifecycle.

The machine never touches disk and never mutates records: given the current
stage, an event and the facts the guards need, it yields the next stage or
raises ``InvalidTransitionError``.  Only two edges branch (``planning`` on the
planner hint and ``review`` on the decision); everything else is a straight
pipeline, so a restarted driver can re-derive its next step from the stored
stage alone.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from ..errors import InvalidTransitionError
from ..records.schema import NextStageHint, ReviewDecision, Stage
from . import EventName


@dataclass(frozen=True, slots=True)
class TransitionInput:
    """Facts consulted by the guards of a single transition."""

    hint: Optional[NextStageHint] = None
    decision: Optional[ReviewDecision] = None
    defined_iterations: int = 0
    iterations_remaining: bool = False
    fix_round_available: bool = True


Resolver = Callable[[TransitionInput], Stage]


class _GuardFailure(Exception):
    """Internal signal that a matching edge rejected its inputs."""


def _after_plan(inputs: TransitionInput) -> Stage:
    if inputs.hint == NextStageHint.IMPLEMENT:
        return Stage.IMPLEMENTATION_ITERATION
    if inputs.hint == NextStageHint.DECOMPOSE:
        return Stage.DECOMPOSE
    raise _GuardFailure("plan_completed requires a hint of 'implement' or 'decompose'")


def _after_iterations_defined(inputs: TransitionInput) -> Stage:
    if inputs.defined_iterations < 1:
        raise _GuardFailure("iteration list must not be empty")
    return Stage.IMPLEMENTATION_ITERATION


def _after_iteration(inputs: TransitionInput) -> Stage:
    if inputs.iterations_remaining:
        return Stage.IMPLEMENTATION_ITERATION
    return Stage.REVIEW


def _after_review(inputs: TransitionInput) -> Stage:
    if inputs.decision == ReviewDecision.APPROVED:
        return Stage.DONE
    if inputs.decision == ReviewDecision.REQUIRES_FIXES:
        if not inputs.fix_round_available:
            raise _GuardFailure("no fix rounds remain")
        return Stage.REVIEW_FIX
    raise _GuardFailure("review_decided requires 'approved' or 'requires_fixes'")


TRANSITIONS: Dict[Tuple[Stage, EventName], Resolver] = {
    (Stage.TASK_CREATED, EventName.PLAN_REQUESTED): lambda _: Stage.PLANNING,
    (Stage.PLANNING, EventName.PLAN_COMPLETED): _after_plan,
    (Stage.DECOMPOSE, EventName.ITERATIONS_DEFINED): _after_iterations_defined,
    (Stage.IMPLEMENTATION_ITERATION, EventName.ITERATION_COMPLETED): _after_iteration,
    (Stage.REVIEW, EventName.REVIEW_DECIDED): _after_review,
    (Stage.REVIEW_FIX, EventName.FIXES_APPLIED): lambda _: Stage.REVIEW,
}

# Every stage each (stage, event) pair may lead to; shown by `flowstage status`.
EDGES: Dict[Tuple[Stage, EventName], Tuple[Stage, ...]] = {
    (Stage.TASK_CREATED, EventName.PLAN_REQUESTED): (Stage.PLANNING,),
    (Stage.PLANNING, EventName.PLAN_COMPLETED): (Stage.IMPLEMENTATION_ITERATION, Stage.DECOMPOSE),
    (Stage.DECOMPOSE, EventName.ITERATIONS_DEFINED): (Stage.IMPLEMENTATION_ITERATION,),
    (Stage.IMPLEMENTATION_ITERATION, EventName.ITERATION_COMPLETED): (
        Stage.IMPLEMENTATION_ITERATION,
        Stage.REVIEW,
    ),
    (Stage.REVIEW, EventName.REVIEW_DECIDED): (Stage.DONE, Stage.REVIEW_FIX),
    (Stage.REVIEW_FIX, EventName.FIXES_APPLIED): (Stage.REVIEW,),
}


def normalize_event(event: EventName | str, *, stage: Stage | None = None) -> EventName:
    """Resolve ``event`` into a concrete ``EventName`` member."""
    if isinstance(event, EventName):
        return event
    try:
        return EventName(event)
    except ValueError as error:
        valid = ", ".join(item.value for item in EventName)
        raise InvalidTransitionError(
            stage or "unknown",
            event,
            reason=f"unknown event; expected one of: {valid}",
        ) from error


def transition(
    stage: Stage,
    event: EventName | str,
    inputs: TransitionInput | None = None,
) -> Stage:
    """Return the stage reached from ``stage`` when ``event`` occurs."""
    event_name = normalize_event(event, stage=stage)
    resolver = TRANSITIONS.get((stage, event_name))
    if resolver is None:
        raise InvalidTransitionError(stage, event_name)
    try:
        return resolver(inputs or TransitionInput())
    except _GuardFailure as failure:
        raise InvalidTransitionError(stage, event_name, reason=str(failure)) from None


def ensure_edge(stage: Stage, event: EventName | str) -> EventName:
    """Raise ``InvalidTransitionError`` unless some edge leaves ``stage`` on ``event``."""
    event_name = normalize_event(event, stage=stage)
    if (stage, event_name) not in TRANSITIONS:
        raise InvalidTransitionError(stage, event_name)
    return event_name


def allowed_events(stage: Stage) -> List[EventName]:
    """Return the events that have an edge leaving ``stage``."""
    return [event for (source, event) in TRANSITIONS if source == stage]


__all__ = [
    "EDGES",
    "TRANSITIONS",
    "TransitionInput",
    "allowed_events",
    "ensure_edge",
    "normalize_event",
    "transition",
]
