"""Ordered bookkeeping for the iterations planned inside ``implementation_iteration``."""

from __future__ import annotations

from typing import List, Optional, Sequence

from ..errors import IterationStateError
from ..records.schema import IterationRecord, IterationStatus


class IterationManager:
    """Mutates an iteration list in place; callers hand it a working copy.

    At most one iteration is ``in_progress`` at any time and records are
    started strictly in insertion order.
    """

    def __init__(self, iterations: List[IterationRecord]) -> None:
        self._iterations = iterations

    @property
    def iterations(self) -> List[IterationRecord]:
        return self._iterations

    @property
    def planned_count(self) -> int:
        return sum(1 for item in self._iterations if item.status == IterationStatus.PLANNED)

    @property
    def done_count(self) -> int:
        return sum(1 for item in self._iterations if item.status == IterationStatus.DONE)

    def define_iterations(self, descriptions: Sequence[str]) -> List[IterationRecord]:
        """Append one planned record per description; refuses to redefine mid-flight."""
        if self._iterations:
            raise IterationStateError("Iterations are already defined for this task")
        cleaned = [str(item).strip() for item in descriptions]
        if not cleaned or not any(cleaned):
            raise IterationStateError("At least one non-empty iteration description is required")
        if not all(cleaned):
            raise IterationStateError("Iteration descriptions must not be blank")
        records = [
            IterationRecord(index=position, status=IterationStatus.PLANNED, summary=text)
            for position, text in enumerate(cleaned, start=1)
        ]
        self._iterations.extend(records)
        return records

    def define_single(self, summary: str = "") -> IterationRecord:
        """Create the implicit one-element list used by non-decomposed tasks."""
        if self._iterations:
            raise IterationStateError("Iterations are already defined for this task")
        record = IterationRecord(index=1, status=IterationStatus.PLANNED, summary=summary.strip())
        self._iterations.append(record)
        return record

    def current(self) -> Optional[IterationRecord]:
        for item in self._iterations:
            if item.status == IterationStatus.IN_PROGRESS:
                return item
        return None

    def has_planned(self) -> bool:
        return self.planned_count > 0

    def start_next(self) -> Optional[IterationRecord]:
        """Flip the first planned record to ``in_progress``; ``None`` when none remain."""
        active = self.current()
        if active is not None:
            raise IterationStateError(f"Iteration {active.index} is already in progress")
        for item in self._iterations:
            if item.status == IterationStatus.PLANNED:
                item.status = IterationStatus.IN_PROGRESS
                return item
        return None

    def complete_current(self, summary: str = "") -> IterationRecord:
        """Mark the active iteration done, keeping its description if ``summary`` is blank."""
        active = self.current()
        if active is None:
            raise IterationStateError("No iteration is in progress")
        active.status = IterationStatus.DONE
        text = summary.strip()
        if text:
            active.summary = text
        return active


__all__ = ["IterationManager"]
