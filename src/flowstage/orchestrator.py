"""Single entry point that drives task records through the lifecycle.

External drivers perform the work of a stage themselves and report the
outcome here.  Every successful call produces exactly one new record version;
every failure leaves the stored record untouched.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .errors import (
    BranchCreationError,
    ConcurrentModificationError,
    InvalidTransitionError,
    LifecycleError,
    TaskExistsError,
    TaskValidationError,
)
from .lifecycle import EventName
from .lifecycle.iterations import IterationManager
from .lifecycle.machine import TransitionInput, ensure_edge, transition
from .lifecycle.payloads import (
    FixesAppliedPayload,
    IterationCompletedPayload,
    IterationsDefinedPayload,
    PlanCompletedPayload,
    PlanRequestedPayload,
    ReviewDecidedPayload,
    coerce_payload,
)
from .lifecycle.review import ReviewCycleController
from .records.schema import (
    NextStageHint,
    ReviewCycleState,
    ReviewDecision,
    Stage,
    TaskRecord,
    TransitionEntry,
    utc_now,
)
from .records.store import TaskRecordStore
from .tools.vcs import BranchService, GitError, NullBranchService, branch_service_from_config
from .utils.slug import is_valid_task_id

DEFAULT_MAX_REVIEW_ROUNDS: Optional[int] = 5
LOGGER = logging.getLogger(__name__)
TELEMETRY_LOGGER = logging.getLogger("flowstage.telemetry")

_UNSET: Any = object()

Handler = Callable[[TaskRecord, Any], Tuple[Stage, str]]


def _serialise_event_value(value: Any) -> Any:
    """Convert telemetry payload values into JSON-friendly representations."""
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if hasattr(value, "value") and isinstance(value.value, str):
        return value.value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (list, tuple, set)):
        return [_serialise_event_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _serialise_event_value(child) for key, child in value.items()}
    return str(value)


def _history_note(outcome: str, note: str) -> str:
    """Join the handler's outcome label with the driver's free-form note."""
    extra = note.strip()
    if outcome and extra:
        return f"{outcome}: {extra}"
    return outcome or extra


def _emit_lifecycle_event(event: str, **fields: Any) -> None:
    """Log one structured telemetry line per write or rejected request."""
    payload = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    for key, value in fields.items():
        payload[key] = _serialise_event_value(value)
    TELEMETRY_LOGGER.info(json.dumps(payload, separators=(",", ":"), ensure_ascii=True))


class Orchestrator:
    """Facade over the record store, stage machine and cycle bookkeeping."""

    def __init__(
        self,
        store: TaskRecordStore,
        *,
        branch_service: Optional[BranchService] = None,
        default_max_rounds: Optional[int] = DEFAULT_MAX_REVIEW_ROUNDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.branch_service: BranchService = branch_service or NullBranchService()
        self.default_max_rounds = default_max_rounds
        self._clock = clock
        self._handlers: Dict[EventName, Handler] = {
            EventName.PLAN_REQUESTED: self._on_plan_requested,
            EventName.PLAN_COMPLETED: self._on_plan_completed,
            EventName.ITERATIONS_DEFINED: self._on_iterations_defined,
            EventName.ITERATION_COMPLETED: self._on_iteration_completed,
            EventName.REVIEW_DECIDED: self._on_review_decided,
            EventName.FIXES_APPLIED: self._on_fixes_applied,
        }

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        config_path: Optional[Path] = None,
        branch_service: Optional[BranchService] = None,
    ) -> "Orchestrator":
        base_dir = config_path.resolve().parent if config_path else Path.cwd()
        store = TaskRecordStore.from_config(config, base_dir=base_dir)

        if branch_service is None:
            project_cfg = config.get("project") or {}
            repo_root = Path(project_cfg.get("repo_root") or ".")
            if not repo_root.is_absolute():
                repo_root = (base_dir / repo_root).resolve()
            branch_service = branch_service_from_config(config, repo_root=repo_root)

        lifecycle_cfg = config.get("lifecycle") or {}
        if "max_review_rounds" in lifecycle_cfg:
            max_rounds = lifecycle_cfg.get("max_review_rounds")
        else:
            max_rounds = DEFAULT_MAX_REVIEW_ROUNDS
        if max_rounds is not None and (not isinstance(max_rounds, int) or max_rounds < 0):
            raise TaskValidationError(
                f"lifecycle.max_review_rounds must be a non-negative integer or null, got {max_rounds!r}"
            )
        return cls(store, branch_service=branch_service, default_max_rounds=max_rounds)

    # Queries ---------------------------------------------------------------------------
    def get(self, task_id: str) -> TaskRecord:
        return self.store.load(task_id)

    def list(self) -> List[TaskRecord]:
        return self.store.list_records()

    # Creation --------------------------------------------------------------------------
    def create(
        self,
        task_id: str,
        branch_name: str,
        *,
        max_rounds: Optional[int] = _UNSET,
    ) -> TaskRecord:
        """Create the version-1 record for ``task_id`` after ensuring its branch exists."""
        if not is_valid_task_id(task_id):
            raise TaskValidationError(
                f"Task id '{task_id}' must be a slug of letters, digits, '.', '_' or '-'",
                task_id=task_id,
            )
        if not branch_name or not branch_name.strip():
            raise TaskValidationError("Branch name must not be blank", task_id=task_id)
        ceiling = self.default_max_rounds if max_rounds is _UNSET else max_rounds
        if ceiling is not None and ceiling < 0:
            raise TaskValidationError("max_rounds must not be negative", task_id=task_id)
        if self.store.exists(task_id):
            raise TaskExistsError(task_id)

        try:
            self.branch_service.create_branch(branch_name.strip())
        except GitError as error:
            _emit_lifecycle_event("create_rejected", task_id=task_id, error="BranchCreationError")
            raise BranchCreationError(
                f"Unable to create branch '{branch_name}': {error}",
                task_id=task_id,
            ) from error

        now = self._clock()
        record = TaskRecord(
            task_id=task_id,
            branch_name=branch_name.strip(),
            review_cycle=ReviewCycleState(max_rounds=ceiling),
            created_at=now,
            updated_at=now,
            version=1,
        )
        self.store.create(record)
        LOGGER.info("Created task %s on branch %s", task_id, record.branch_name)
        _emit_lifecycle_event(
            "created",
            task_id=task_id,
            branch=record.branch_name,
            stage=record.stage,
            version=record.version,
        )
        return record

    # Transitions -----------------------------------------------------------------------
    def advance(
        self,
        task_id: str,
        event: EventName | str,
        payload: Any = None,
        *,
        expected_version: int,
    ) -> TaskRecord:
        """Apply ``event`` to the stored record and persist the result atomically."""
        event_label = getattr(event, "value", event)
        try:
            record = self.store.load(task_id)
            self._check_version(record, expected_version)
            event_name = ensure_edge(record.stage, event)
            request = coerce_payload(event_name, payload)
            working = record.model_copy(deep=True)
            next_stage, note = self._handlers[event_name](working, request)
            updated = self._commit(record, working, next_stage, event_name.value, note)
        except LifecycleError as error:
            self._reject(task_id, event_label, error)
            raise

        LOGGER.info(
            "Task %s: %s --%s--> %s (version %d)",
            task_id,
            record.stage.value,
            event_label,
            updated.stage.value,
            updated.version,
        )
        return updated

    def suggest_next_stage(
        self,
        task_id: str,
        hint: NextStageHint | str,
        *,
        expected_version: int,
    ) -> TaskRecord:
        """Store the planner's hint; only valid while the task is in ``planning``."""
        try:
            record = self.store.load(task_id)
            self._check_version(record, expected_version)
            if record.stage != Stage.PLANNING:
                raise InvalidTransitionError(record.stage, "next_stage_suggested")
            try:
                resolved = NextStageHint(getattr(hint, "value", hint))
            except ValueError as error:
                raise TaskValidationError(
                    f"Hint must be 'implement' or 'decompose', got {hint!r}"
                ) from error
            working = record.model_copy(deep=True)
            working.next_stage_hint = resolved
            updated = self._commit(record, working, record.stage, "next_stage_suggested", resolved.value)
        except LifecycleError as error:
            self._reject(task_id, "next_stage_suggested", error)
            raise
        return updated

    def set_max_rounds(
        self,
        task_id: str,
        max_rounds: Optional[int],
        *,
        expected_version: int,
    ) -> TaskRecord:
        """Change the fix-round ceiling; used to release a task parked by an exhausted cycle."""
        try:
            record = self.store.load(task_id)
            self._check_version(record, expected_version)
            if record.is_terminal:
                raise InvalidTransitionError(record.stage, "max_rounds_changed")
            controller = ReviewCycleController(record.review_cycle, task_id=task_id)
            try:
                review_cycle = controller.with_max_rounds(max_rounds)
            except ValueError as error:
                raise TaskValidationError(str(error)) from error
            working = record.model_copy(deep=True)
            working.review_cycle = review_cycle
            note = "unbounded" if max_rounds is None else str(max_rounds)
            updated = self._commit(record, working, record.stage, "max_rounds_changed", note)
        except LifecycleError as error:
            self._reject(task_id, "max_rounds_changed", error)
            raise
        return updated

    def force_approve(
        self,
        task_id: str,
        *,
        expected_version: int,
        note: str = "",
    ) -> TaskRecord:
        """Approve a task in ``review`` regardless of how many rounds remain."""
        try:
            record = self.store.load(task_id)
            self._check_version(record, expected_version)
            if record.stage != Stage.REVIEW:
                raise InvalidTransitionError(record.stage, "force_approved")
            controller = ReviewCycleController(record.review_cycle, task_id=task_id)
            result = controller.force_approve(stage=record.stage)
            working = record.model_copy(deep=True)
            working.review_cycle = result.review_cycle
            updated = self._commit(record, working, result.stage, "force_approved", note.strip())
        except LifecycleError as error:
            self._reject(task_id, "force_approved", error)
            raise
        LOGGER.warning("Task %s force-approved at review round %d", task_id, record.review_cycle.round)
        return updated

    # Event handlers --------------------------------------------------------------------
    def _on_plan_requested(self, working: TaskRecord, request: PlanRequestedPayload) -> Tuple[Stage, str]:
        return transition(working.stage, EventName.PLAN_REQUESTED), request.note.strip()

    def _on_plan_completed(self, working: TaskRecord, request: PlanCompletedPayload) -> Tuple[Stage, str]:
        hint = request.hint or working.next_stage_hint
        if hint is None:
            raise TaskValidationError(
                "plan_completed needs a hint ('implement' or 'decompose') in the payload or on the record"
            )
        next_stage = transition(working.stage, EventName.PLAN_COMPLETED, TransitionInput(hint=hint))
        working.next_stage_hint = None
        if next_stage == Stage.IMPLEMENTATION_ITERATION:
            manager = IterationManager(working.iterations)
            manager.define_single(request.summary)
            manager.start_next()
        return next_stage, _history_note(hint.value, request.note)

    def _on_iterations_defined(
        self,
        working: TaskRecord,
        request: IterationsDefinedPayload,
    ) -> Tuple[Stage, str]:
        manager = IterationManager(working.iterations)
        records = manager.define_iterations(request.iterations)
        next_stage = transition(
            working.stage,
            EventName.ITERATIONS_DEFINED,
            TransitionInput(defined_iterations=len(records)),
        )
        manager.start_next()
        return next_stage, _history_note(f"{len(records)} iteration(s)", request.note)

    def _on_iteration_completed(
        self,
        working: TaskRecord,
        request: IterationCompletedPayload,
    ) -> Tuple[Stage, str]:
        manager = IterationManager(working.iterations)
        finished = manager.complete_current(request.summary)
        next_stage = transition(
            working.stage,
            EventName.ITERATION_COMPLETED,
            TransitionInput(iterations_remaining=manager.has_planned()),
        )
        if next_stage == Stage.IMPLEMENTATION_ITERATION:
            manager.start_next()
        return next_stage, _history_note(f"iteration {finished.index} done", request.note)

    def _on_review_decided(self, working: TaskRecord, request: ReviewDecidedPayload) -> Tuple[Stage, str]:
        if request.decision == ReviewDecision.NONE:
            raise TaskValidationError("Review decision must be 'approved' or 'requires_fixes'")
        controller = ReviewCycleController(working.review_cycle, task_id=working.task_id)
        result = controller.record_decision(request.decision, stage=working.stage)
        working.review_cycle = result.review_cycle
        return result.stage, _history_note(request.decision.value, request.note)

    def _on_fixes_applied(self, working: TaskRecord, request: FixesAppliedPayload) -> Tuple[Stage, str]:
        controller = ReviewCycleController(working.review_cycle, task_id=working.task_id)
        result = controller.record_fixes_applied(stage=working.stage)
        working.review_cycle = result.review_cycle
        return result.stage, _history_note(request.summary.strip(), request.note)

    # Internals -------------------------------------------------------------------------
    @staticmethod
    def _check_version(record: TaskRecord, expected_version: int) -> None:
        if record.version != expected_version:
            raise ConcurrentModificationError(
                record.task_id,
                expected=expected_version,
                actual=record.version,
            )

    def _commit(
        self,
        previous: TaskRecord,
        working: TaskRecord,
        next_stage: Stage,
        event_label: str,
        note: str,
    ) -> TaskRecord:
        now = self._clock()
        version = previous.version + 1
        entry = TransitionEntry(
            from_stage=previous.stage,
            event=event_label,
            to_stage=next_stage,
            version=version,
            at=now,
            note=note,
        )
        data = working.model_dump()
        data.update(
            {
                "stage": next_stage,
                "version": version,
                "updated_at": now,
                "history": [*data["history"], entry.model_dump()],
            }
        )
        try:
            updated = TaskRecord.model_validate(data)
        except ValueError as error:
            raise TaskValidationError(
                f"Transition produced an invalid record: {error}",
                task_id=previous.task_id,
            ) from error
        self.store.save(updated, expected_version=previous.version)
        _emit_lifecycle_event(
            "transition",
            task_id=updated.task_id,
            trigger=event_label,
            from_stage=previous.stage,
            to_stage=updated.stage,
            version=updated.version,
        )
        return updated

    @staticmethod
    def _reject(task_id: str, event_label: Any, error: LifecycleError) -> None:
        if error.task_id is None:
            error.task_id = task_id
        LOGGER.debug("Rejected %s for task %s: %s", event_label, task_id, error)
        _emit_lifecycle_event(
            "rejected",
            task_id=task_id,
            trigger=event_label,
            error=type(error).__name__,
            message=str(error),
        )


__all__ = ["DEFAULT_MAX_REVIEW_ROUNDS", "Orchestrator"]
