"""Task record schema and file-backed persistence."""

from .schema import (
    IterationRecord,
    IterationStatus,
    NextStageHint,
    ReviewCycleState,
    ReviewDecision,
    Stage,
    TaskRecord,
    TransitionEntry,
)
from .store import TaskRecordStore

__all__ = [
    "IterationRecord",
    "IterationStatus",
    "NextStageHint",
    "ReviewCycleState",
    "ReviewDecision",
    "Stage",
    "TaskRecord",
    "TaskRecordStore",
    "TransitionEntry",
]
