"""Typed records persisted by the task record store."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class Stage(str, Enum):
    """Named states of the task lifecycle."""

    TASK_CREATED = "task_created"
    PLANNING = "planning"
    DECOMPOSE = "decompose"
    IMPLEMENTATION_ITERATION = "implementation_iteration"
    REVIEW = "review"
    REVIEW_FIX = "review_fix"
    DONE = "done"


INITIAL_STAGE = Stage.TASK_CREATED
TERMINAL_STAGES = frozenset({Stage.DONE})


class NextStageHint(str, Enum):
    """Planner suggestion for where ``planning`` should lead."""

    IMPLEMENT = "implement"
    DECOMPOSE = "decompose"


class IterationStatus(str, Enum):
    """Lifecycle states for a single implementation iteration."""

    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class ReviewDecision(str, Enum):
    """Outcome of the most recent review."""

    NONE = "none"
    APPROVED = "approved"
    REQUIRES_FIXES = "requires_fixes"


class IterationRecord(RecordModel):
    """One planned chunk of implementation work."""

    index: int = Field(ge=1)
    status: IterationStatus = IterationStatus.PLANNED
    summary: str = ""


class ReviewCycleState(RecordModel):
    """Bookkeeping for the bounded review/fix oscillation."""

    round: int = Field(default=0, ge=0)
    max_rounds: Optional[int] = Field(default=None, ge=0)
    last_decision: ReviewDecision = ReviewDecision.NONE

    @property
    def exhausted(self) -> bool:
        return self.max_rounds is not None and self.round >= self.max_rounds


class TransitionEntry(RecordModel):
    """Audit entry appended for every successful write after creation."""

    from_stage: Stage
    event: str
    to_stage: Stage
    version: int = Field(ge=1)
    at: datetime = Field(default_factory=utc_now)
    note: str = ""

    @field_validator("at")
    @classmethod
    def _utc_at(cls, value: datetime) -> datetime:
        return as_utc(value)


class TaskRecord(RecordModel):
    """Durable record of one task's current stage and history."""

    task_id: str
    branch_name: str
    stage: Stage = INITIAL_STAGE
    next_stage_hint: Optional[NextStageHint] = None
    iterations: List[IterationRecord] = Field(default_factory=list)
    review_cycle: ReviewCycleState = Field(default_factory=ReviewCycleState)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = Field(default=1, ge=1)
    history: List[TransitionEntry] = Field(default_factory=list)

    @field_validator("task_id", "branch_name")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("created_at", "updated_at")
    @classmethod
    def _utc_timestamps(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES


__all__ = [
    "INITIAL_STAGE",
    "IterationRecord",
    "IterationStatus",
    "NextStageHint",
    "RecordModel",
    "ReviewCycleState",
    "ReviewDecision",
    "Stage",
    "TERMINAL_STAGES",
    "TaskRecord",
    "TransitionEntry",
    "as_utc",
    "utc_now",
]
