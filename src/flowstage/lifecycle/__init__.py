"""Shared lifecycle event enumeration."""

from __future__ import annotations

from enum import Enum


class EventName(str, Enum):
    """Outcome events an external driver reports back to the orchestrator."""

    PLAN_REQUESTED = "plan_requested"
    PLAN_COMPLETED = "plan_completed"
    ITERATIONS_DEFINED = "iterations_defined"
    ITERATION_COMPLETED = "iteration_completed"
    REVIEW_DECIDED = "review_decided"
    FIXES_APPLIED = "fixes_applied"


__all__ = ["EventName"]
