from __future__ import annotations

import fcntl
from datetime import datetime, timezone
from pathlib import Path

import pytest
import yaml

from flowstage.errors import (
    ConcurrentModificationError,
    StoreIOError,
    TaskExistsError,
    TaskNotFoundError,
    TaskValidationError,
)
from flowstage.records.schema import (
    IterationRecord,
    IterationStatus,
    NextStageHint,
    ReviewCycleState,
    ReviewDecision,
    Stage,
    TaskRecord,
    TransitionEntry,
)
from flowstage.records.store import TaskRecordStore, record_from_document, record_to_document


def _populated_record() -> TaskRecord:
    created = datetime(2026, 3, 1, 9, 30, 15, 123456, tzinfo=timezone.utc)
    return TaskRecord(
        task_id="add-login",
        branch_name="feature/add-login",
        stage=Stage.IMPLEMENTATION_ITERATION,
        next_stage_hint=NextStageHint.DECOMPOSE,
        iterations=[
            IterationRecord(index=1, status=IterationStatus.DONE, summary="wire form"),
            IterationRecord(index=2, status=IterationStatus.IN_PROGRESS, summary="tests: 2026-01-01T00:00:00"),
        ],
        review_cycle=ReviewCycleState(round=1, max_rounds=None, last_decision=ReviewDecision.REQUIRES_FIXES),
        created_at=created,
        updated_at=created,
        version=1,
        history=[
            TransitionEntry(
                from_stage=Stage.TASK_CREATED,
                event="plan_requested",
                to_stage=Stage.PLANNING,
                version=2,
                at=created,
                note="kickoff",
            )
        ],
    )


def test_persist_then_reload_is_lossless(store: TaskRecordStore) -> None:
    record = _populated_record()
    store.create(record)

    loaded = store.load(record.task_id)
    assert loaded == record
    assert store.list_task_ids() == ["add-login"]


def test_document_layout_matches_stage_file(store: TaskRecordStore) -> None:
    record = _populated_record()
    store.create(record)

    document = yaml.safe_load(store.record_path(record.task_id).read_text(encoding="utf-8"))
    assert document["stage"] == "implementation_iteration"
    assert document["next_stage"] == "decompose"
    assert document["branch"] == "feature/add-login"
    assert document["review"] == {"round": 1, "max_rounds": None, "last_decision": "requires_fixes"}
    assert document["iterations"]["planned"] == 2
    assert document["iterations"]["done"] == 1
    assert document["version"] == 1


def test_document_helpers_round_trip_without_disk() -> None:
    record = _populated_record()
    assert record_from_document(record_to_document(record)) == record


def test_mismatched_counters_are_rejected() -> None:
    document = record_to_document(_populated_record())
    document["iterations"]["done"] = 2
    with pytest.raises(ValueError):
        record_from_document(document)


def test_create_refuses_duplicates(store: TaskRecordStore) -> None:
    record = _populated_record()
    store.create(record)
    with pytest.raises(TaskExistsError):
        store.create(record)


def test_missing_record_raises_not_found(store: TaskRecordStore) -> None:
    with pytest.raises(TaskNotFoundError):
        store.load("nope")
    assert store.list_task_ids() == []


def test_invalid_task_ids_never_touch_disk(store: TaskRecordStore) -> None:
    with pytest.raises(TaskValidationError):
        store.load("../outside")


def test_save_requires_matching_version(store: TaskRecordStore) -> None:
    record = _populated_record()
    store.create(record)

    next_record = record.model_copy(update={"version": 2, "stage": Stage.REVIEW})
    store.save(next_record, expected_version=1)

    stale = record.model_copy(update={"version": 2, "stage": Stage.DONE})
    with pytest.raises(ConcurrentModificationError) as excinfo:
        store.save(stale, expected_version=1)
    assert excinfo.value.actual == 2
    assert store.load(record.task_id).stage == Stage.REVIEW


def test_save_rejects_version_gaps(store: TaskRecordStore) -> None:
    record = _populated_record()
    store.create(record)
    with pytest.raises(TaskValidationError):
        store.save(record.model_copy(update={"version": 5}), expected_version=1)


def test_save_rejects_branch_changes(store: TaskRecordStore) -> None:
    record = _populated_record()
    store.create(record)
    renamed = record.model_copy(update={"version": 2, "branch_name": "feature/other"})
    with pytest.raises(TaskValidationError):
        store.save(renamed, expected_version=1)


def test_failed_write_leaves_previous_record(store: TaskRecordStore, monkeypatch: pytest.MonkeyPatch) -> None:
    record = _populated_record()
    store.create(record)
    before = store.record_path(record.task_id).read_bytes()

    def _boom(src: str, dst: str) -> None:
        raise OSError("disk full")

    monkeypatch.setattr("flowstage.records.store.os.replace", _boom)
    with pytest.raises(StoreIOError):
        store.save(record.model_copy(update={"version": 2, "stage": Stage.REVIEW}), expected_version=1)
    monkeypatch.undo()

    assert store.record_path(record.task_id).read_bytes() == before
    leftovers = [path.name for path in store.task_dir(record.task_id).iterdir() if path.suffix == ".tmp"]
    assert leftovers == []
    assert store.load(record.task_id) == record


def test_competing_writer_gets_conflict_instead_of_waiting(store: TaskRecordStore) -> None:
    record = _populated_record()
    store.create(record)

    lock_path = store.task_dir(record.task_id) / ".lock"
    with lock_path.open("a+") as holder:
        fcntl.flock(holder.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        with pytest.raises(ConcurrentModificationError) as excinfo:
            store.save(record.model_copy(update={"version": 2}), expected_version=1)
        assert excinfo.value.actual is None
        fcntl.flock(holder.fileno(), fcntl.LOCK_UN)

    assert store.load(record.task_id).version == 1


def test_corrupt_documents_surface_as_store_errors(store: TaskRecordStore) -> None:
    record = _populated_record()
    store.create(record)
    path = store.record_path(record.task_id)

    path.write_text("stage: [unterminated\n", encoding="utf-8")
    with pytest.raises(StoreIOError):
        store.load(record.task_id)

    path.write_text("stage: shipping\ntask_id: add-login\n", encoding="utf-8")
    with pytest.raises(StoreIOError):
        store.load(record.task_id)


def test_from_config_resolves_relative_to_config_dir(tmp_path: Path) -> None:
    config = {"paths": {"data": "state"}}
    store = TaskRecordStore.from_config(config, base_dir=tmp_path)
    assert store.root == (tmp_path / "state" / "tasks").resolve()

    explicit = TaskRecordStore.from_config({"paths": {"tasks": "records"}}, base_dir=tmp_path)
    assert explicit.root == (tmp_path / "records").resolve()
