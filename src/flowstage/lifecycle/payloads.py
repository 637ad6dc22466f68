"""Typed payloads accompanying each lifecycle event."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

from pydantic import ConfigDict, ValidationError
from pydantic.type_adapter import TypeAdapter

from ..errors import TaskValidationError
from ..records.schema import NextStageHint, ReviewDecision
from . import EventName

_STRICT = ConfigDict(extra="forbid")


@dataclass(slots=True)
class PlanRequestedPayload:
    """Payload for ``plan_requested``."""

    __pydantic_config__ = _STRICT

    note: str = ""


@dataclass(slots=True)
class PlanCompletedPayload:
    """Payload for ``plan_completed``; ``hint`` falls back to the stored planner hint."""

    __pydantic_config__ = _STRICT

    hint: NextStageHint | None = None
    summary: str = ""
    note: str = ""


@dataclass(slots=True)
class IterationsDefinedPayload:
    """Payload for ``iterations_defined``."""

    __pydantic_config__ = _STRICT

    iterations: list[str] = field(default_factory=list)
    note: str = ""


@dataclass(slots=True)
class IterationCompletedPayload:
    """Payload for ``iteration_completed``."""

    __pydantic_config__ = _STRICT

    summary: str = ""
    note: str = ""


@dataclass(slots=True)
class ReviewDecidedPayload:
    """Payload for ``review_decided``."""

    __pydantic_config__ = _STRICT

    decision: ReviewDecision
    note: str = ""


@dataclass(slots=True)
class FixesAppliedPayload:
    """Payload for ``fixes_applied``."""

    __pydantic_config__ = _STRICT

    summary: str = ""
    note: str = ""


PAYLOAD_MODELS: Dict[EventName, type[Any]] = {
    EventName.PLAN_REQUESTED: PlanRequestedPayload,
    EventName.PLAN_COMPLETED: PlanCompletedPayload,
    EventName.ITERATIONS_DEFINED: IterationsDefinedPayload,
    EventName.ITERATION_COMPLETED: IterationCompletedPayload,
    EventName.REVIEW_DECIDED: ReviewDecidedPayload,
    EventName.FIXES_APPLIED: FixesAppliedPayload,
}


def coerce_payload(event: EventName, payload: Any) -> Any:
    """Validate or convert ``payload`` into the request type registered for ``event``."""
    payload_type = PAYLOAD_MODELS[event]
    if isinstance(payload, payload_type):
        return payload
    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise TaskValidationError(
            f"Payload for {event.value} must be a mapping, got {type(payload).__name__}"
        )

    adapter = TypeAdapter(payload_type)
    try:
        return adapter.validate_python(dict(payload))
    except ValidationError as error:
        raise TaskValidationError(
            f"Payload for {event.value} did not validate: {error}"
        ) from error


__all__ = [
    "FixesAppliedPayload",
    "IterationCompletedPayload",
    "IterationsDefinedPayload",
    "PAYLOAD_MODELS",
    "PlanCompletedPayload",
    "PlanRequestedPayload",
    "ReviewDecidedPayload",
    "coerce_payload",
]
