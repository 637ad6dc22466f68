from __future__ import annotations

import pytest

from flowstage.errors import TaskValidationError
from flowstage.lifecycle import EventName
from flowstage.lifecycle.payloads import (
    IterationsDefinedPayload,
    PlanCompletedPayload,
    ReviewDecidedPayload,
    coerce_payload,
)
from flowstage.records.schema import NextStageHint, ReviewDecision


def test_mapping_payloads_are_coerced() -> None:
    payload = coerce_payload(EventName.PLAN_COMPLETED, {"hint": "decompose"})
    assert isinstance(payload, PlanCompletedPayload)
    assert payload.hint == NextStageHint.DECOMPOSE

    review = coerce_payload(EventName.REVIEW_DECIDED, {"decision": "requires_fixes", "note": "lint"})
    assert isinstance(review, ReviewDecidedPayload)
    assert review.decision == ReviewDecision.REQUIRES_FIXES


def test_missing_payload_uses_defaults() -> None:
    payload = coerce_payload(EventName.PLAN_COMPLETED, None)
    assert payload.hint is None
    assert payload.summary == ""


def test_instances_pass_through() -> None:
    payload = IterationsDefinedPayload(iterations=["a"])
    assert coerce_payload(EventName.ITERATIONS_DEFINED, payload) is payload


@pytest.mark.parametrize(
    ("event", "payload"),
    [
        (EventName.PLAN_COMPLETED, {"hint": "ship"}),
        (EventName.REVIEW_DECIDED, {}),
        (EventName.ITERATIONS_DEFINED, {"iterations": "not-a-list"}),
        (EventName.PLAN_REQUESTED, {"unexpected": True}),
        (EventName.FIXES_APPLIED, ["summary"]),
    ],
)
def test_malformed_payloads_raise_validation_error(event: EventName, payload: object) -> None:
    with pytest.raises(TaskValidationError):
        coerce_payload(event, payload)
