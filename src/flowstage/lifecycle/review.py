"""Bounded review/fix oscillation on top of the stage machine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..errors import CycleExhaustedError, TaskValidationError
from ..records.schema import ReviewCycleState, ReviewDecision, Stage
from . import EventName
from .machine import TransitionInput, transition


@dataclass(frozen=True, slots=True)
class StageTransitionResult:
    """Next stage plus the review bookkeeping that goes with it."""

    stage: Stage
    review_cycle: ReviewCycleState


class ReviewCycleController:
    """Decides review outcomes without mutating the state it was given.

    A round is spent only when fixes are applied, so entering ``review_fix``
    leaves ``round`` untouched.  Running out of rounds is fail-closed: the
    task stays in ``review`` until someone intervenes.
    """

    def __init__(self, state: ReviewCycleState, *, task_id: Optional[str] = None) -> None:
        self._state = state
        self._task_id = task_id

    @property
    def state(self) -> ReviewCycleState:
        return self._state

    def record_decision(
        self,
        decision: ReviewDecision | str,
        *,
        stage: Stage = Stage.REVIEW,
    ) -> StageTransitionResult:
        decision = ReviewDecision(decision)
        if decision == ReviewDecision.NONE:
            raise TaskValidationError(
                "Review decision must be 'approved' or 'requires_fixes'",
                task_id=self._task_id,
            )
        fix_round_available = not self._state.exhausted
        if stage == Stage.REVIEW and decision == ReviewDecision.REQUIRES_FIXES and not fix_round_available:
            raise CycleExhaustedError(
                self._task_id,
                round=self._state.round,
                max_rounds=self._state.max_rounds,
            )
        next_stage = transition(
            stage,
            EventName.REVIEW_DECIDED,
            TransitionInput(decision=decision, fix_round_available=fix_round_available),
        )
        updated = self._state.model_copy(update={"last_decision": decision})
        return StageTransitionResult(stage=next_stage, review_cycle=updated)

    def record_fixes_applied(self, *, stage: Stage = Stage.REVIEW_FIX) -> StageTransitionResult:
        next_stage = transition(stage, EventName.FIXES_APPLIED)
        updated = self._state.model_copy(update={"round": self._state.round + 1})
        return StageTransitionResult(stage=next_stage, review_cycle=updated)

    def force_approve(self, *, stage: Stage = Stage.REVIEW) -> StageTransitionResult:
        """Approve regardless of the remaining rounds; only valid from ``review``."""
        return self.record_decision(ReviewDecision.APPROVED, stage=stage)

    def with_max_rounds(self, max_rounds: Optional[int]) -> ReviewCycleState:
        """Return a copy of the state with a new ceiling; it cannot drop below ``round``."""
        if max_rounds is not None and max_rounds < self._state.round:
            raise ValueError(
                f"max_rounds {max_rounds} is below the {self._state.round} round(s) already spent"
            )
        return ReviewCycleState(
            round=self._state.round,
            max_rounds=max_rounds,
            last_decision=self._state.last_decision,
        )


__all__ = ["ReviewCycleController", "StageTransitionResult"]
