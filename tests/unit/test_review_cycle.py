from __future__ import annotations

import pytest

from flowstage.errors import CycleExhaustedError, InvalidTransitionError, TaskValidationError
from flowstage.lifecycle.review import ReviewCycleController
from flowstage.records.schema import ReviewCycleState, ReviewDecision, Stage


def test_approval_finishes_and_freezes_round() -> None:
    state = ReviewCycleState(round=1, max_rounds=3)
    result = ReviewCycleController(state).record_decision(ReviewDecision.APPROVED)

    assert result.stage == Stage.DONE
    assert result.review_cycle.round == 1
    assert result.review_cycle.last_decision == ReviewDecision.APPROVED
    assert state.last_decision == ReviewDecision.NONE


def test_requires_fixes_does_not_spend_a_round() -> None:
    state = ReviewCycleState(max_rounds=2)
    result = ReviewCycleController(state).record_decision("requires_fixes")

    assert result.stage == Stage.REVIEW_FIX
    assert result.review_cycle.round == 0
    assert result.review_cycle.last_decision == ReviewDecision.REQUIRES_FIXES


def test_fixes_applied_spends_the_round() -> None:
    state = ReviewCycleState(max_rounds=2, last_decision=ReviewDecision.REQUIRES_FIXES)
    result = ReviewCycleController(state).record_fixes_applied()

    assert result.stage == Stage.REVIEW
    assert result.review_cycle.round == 1


def test_exhausted_cycle_raises_with_counters() -> None:
    state = ReviewCycleState(round=2, max_rounds=2)
    with pytest.raises(CycleExhaustedError) as excinfo:
        ReviewCycleController(state, task_id="demo").record_decision(ReviewDecision.REQUIRES_FIXES)

    assert excinfo.value.round == 2
    assert excinfo.value.max_rounds == 2
    assert excinfo.value.task_id == "demo"


def test_unbounded_cycle_never_exhausts() -> None:
    state = ReviewCycleState(round=50, max_rounds=None)
    result = ReviewCycleController(state).record_decision(ReviewDecision.REQUIRES_FIXES)
    assert result.stage == Stage.REVIEW_FIX


def test_decision_outside_review_is_invalid() -> None:
    with pytest.raises(InvalidTransitionError):
        ReviewCycleController(ReviewCycleState()).record_decision(
            ReviewDecision.APPROVED,
            stage=Stage.REVIEW_FIX,
        )


def test_none_is_not_a_decision() -> None:
    with pytest.raises(TaskValidationError):
        ReviewCycleController(ReviewCycleState()).record_decision(ReviewDecision.NONE)


def test_max_rounds_cannot_drop_below_spent_rounds() -> None:
    controller = ReviewCycleController(ReviewCycleState(round=3, max_rounds=3))
    assert controller.with_max_rounds(5).max_rounds == 5
    assert controller.with_max_rounds(None).max_rounds is None
    with pytest.raises(ValueError):
        controller.with_max_rounds(2)
