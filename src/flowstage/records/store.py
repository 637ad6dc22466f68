"""Durable, file-backed storage for task records.

Each task owns a directory under the store root that holds a single
``stage.yaml`` document.  Writes land through a temporary file that is fsynced
and renamed over the previous document, so readers only ever observe a whole
record.  A non-blocking per-task lock turns racing writers into
``ConcurrentModificationError`` instead of making anyone wait.
"""

from __future__ import annotations

import fcntl
import logging
import os
import tempfile
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

import yaml
from pydantic import ValidationError

from ..errors import (
    ConcurrentModificationError,
    StoreIOError,
    TaskExistsError,
    TaskNotFoundError,
    TaskValidationError,
)
from ..utils.slug import is_valid_task_id
from .schema import IterationStatus, TaskRecord, as_utc

DEFAULT_TASKS_DIR = Path("data/tasks")
RECORD_FILENAME = "stage.yaml"
LOCK_FILENAME = ".lock"
LOGGER = logging.getLogger(__name__)


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a UTC ISO 8601 string."""
    return as_utc(timestamp).isoformat()


def _from_iso(value: Any) -> Any:
    """Parse an ISO 8601 timestamp produced by `_as_iso`."""
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return value


def record_to_document(record: TaskRecord) -> Dict[str, Any]:
    """Convert ``record`` into the ``stage.yaml`` layout."""
    items = [
        {"index": item.index, "status": item.status.value, "summary": item.summary}
        for item in record.iterations
    ]
    done = sum(1 for item in record.iterations if item.status == IterationStatus.DONE)
    return {
        "task_id": record.task_id,
        "branch": record.branch_name,
        "stage": record.stage.value,
        "next_stage": record.next_stage_hint.value if record.next_stage_hint else None,
        "version": record.version,
        "created_at": _as_iso(record.created_at),
        "updated_at": _as_iso(record.updated_at),
        "review": {
            "round": record.review_cycle.round,
            "max_rounds": record.review_cycle.max_rounds,
            "last_decision": record.review_cycle.last_decision.value,
        },
        "iterations": {
            "planned": len(items),
            "done": done,
            "items": items,
        },
        "history": [
            {
                "from": entry.from_stage.value,
                "event": entry.event,
                "to": entry.to_stage.value,
                "version": entry.version,
                "at": _as_iso(entry.at),
                "note": entry.note,
            }
            for entry in record.history
        ],
    }


def record_from_document(document: Mapping[str, Any]) -> TaskRecord:
    """Rebuild a ``TaskRecord`` from a parsed ``stage.yaml`` mapping.

    Raises ``ValueError`` (or pydantic's ``ValidationError``) when the document
    is malformed or its derived iteration counters disagree with its items.
    """
    review = document.get("review") or {}
    iterations = document.get("iterations") or {}
    if not isinstance(review, Mapping) or not isinstance(iterations, Mapping):
        raise ValueError("'review' and 'iterations' must be mappings")

    items = list(iterations.get("items") or [])
    record = TaskRecord.model_validate(
        {
            "task_id": document.get("task_id"),
            "branch_name": document.get("branch"),
            "stage": document.get("stage"),
            "next_stage_hint": document.get("next_stage"),
            "version": document.get("version"),
            "created_at": _from_iso(document.get("created_at")),
            "updated_at": _from_iso(document.get("updated_at")),
            "review_cycle": {
                "round": review.get("round", 0),
                "max_rounds": review.get("max_rounds"),
                "last_decision": review.get("last_decision", "none"),
            },
            "iterations": items,
            "history": [
                {
                    "from_stage": entry.get("from"),
                    "event": entry.get("event"),
                    "to_stage": entry.get("to"),
                    "version": entry.get("version"),
                    "at": _from_iso(entry.get("at")),
                    "note": entry.get("note") or "",
                }
                for entry in (document.get("history") or [])
            ],
        }
    )

    planned = iterations.get("planned")
    if planned is not None and planned != len(record.iterations):
        raise ValueError(
            f"iterations.planned is {planned} but {len(record.iterations)} item(s) are recorded"
        )
    done = iterations.get("done")
    done_actual = sum(1 for item in record.iterations if item.status == IterationStatus.DONE)
    if done is not None and done != done_actual:
        raise ValueError(f"iterations.done is {done} but {done_actual} item(s) are done")
    return record


class TaskRecordStore:
    """Directory-per-task persistence for ``TaskRecord`` documents."""

    def __init__(self, root: Path | str = DEFAULT_TASKS_DIR) -> None:
        self.root = Path(root).resolve()

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        base_dir: Optional[Path] = None,
    ) -> "TaskRecordStore":
        paths = config.get("paths") or {}
        tasks_value = paths.get("tasks")
        if tasks_value:
            candidate = Path(tasks_value)
        else:
            data_value = paths.get("data") or "data"
            candidate = Path(data_value) / "tasks"
        if not candidate.is_absolute() and base_dir is not None:
            candidate = base_dir / candidate
        return cls(candidate)

    # Paths -----------------------------------------------------------------------------
    def task_dir(self, task_id: str) -> Path:
        if not is_valid_task_id(task_id):
            raise TaskValidationError(
                f"Task id '{task_id}' is not a valid directory name",
                task_id=task_id,
            )
        return self.root / task_id

    def record_path(self, task_id: str) -> Path:
        return self.task_dir(task_id) / RECORD_FILENAME

    def exists(self, task_id: str) -> bool:
        return self.record_path(task_id).is_file()

    # Reads -----------------------------------------------------------------------------
    def load(self, task_id: str) -> TaskRecord:
        path = self.record_path(task_id)
        if not path.is_file():
            raise TaskNotFoundError(task_id)
        return self._read(path, task_id)

    def list_task_ids(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.root.iterdir()
            if entry.is_dir() and (entry / RECORD_FILENAME).is_file()
        )

    def list_records(self) -> List[TaskRecord]:
        return [self.load(task_id) for task_id in self.list_task_ids()]

    # Writes ----------------------------------------------------------------------------
    def create(self, record: TaskRecord) -> TaskRecord:
        """Persist the first version of ``record``; fail if the task already exists."""
        task_dir = self.task_dir(record.task_id)
        try:
            task_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise StoreIOError(
                f"Unable to create task directory {task_dir}: {error}",
                task_id=record.task_id,
            ) from error

        with self._locked(record.task_id, expected_version=0):
            path = task_dir / RECORD_FILENAME
            if path.exists():
                raise TaskExistsError(record.task_id)
            self._write(path, record)
        LOGGER.debug("Created task record %s at version %d", record.task_id, record.version)
        return record

    def save(self, record: TaskRecord, *, expected_version: int) -> TaskRecord:
        """Replace the stored record if its version still equals ``expected_version``."""
        if record.version != expected_version + 1:
            raise TaskValidationError(
                f"Record version {record.version} does not follow expected version {expected_version}",
                task_id=record.task_id,
            )
        path = self.record_path(record.task_id)
        if not path.is_file():
            raise TaskNotFoundError(record.task_id)
        with self._locked(record.task_id, expected_version=expected_version):
            current = self._read(path, record.task_id)
            if current.version != expected_version:
                raise ConcurrentModificationError(
                    record.task_id,
                    expected=expected_version,
                    actual=current.version,
                )
            if current.task_id != record.task_id or current.branch_name != record.branch_name:
                raise TaskValidationError(
                    "Task id and branch name are immutable",
                    task_id=record.task_id,
                )
            self._write(path, record)
        LOGGER.debug("Saved task record %s at version %d", record.task_id, record.version)
        return record

    # Internals -------------------------------------------------------------------------
    @contextmanager
    def _locked(self, task_id: str, *, expected_version: int) -> Iterator[None]:
        lock_path = self.task_dir(task_id) / LOCK_FILENAME
        try:
            handle = lock_path.open("a+")
        except OSError as error:
            raise StoreIOError(f"Unable to open lock file {lock_path}: {error}", task_id=task_id) from error
        try:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as error:
                raise ConcurrentModificationError(
                    task_id,
                    expected=expected_version,
                    actual=None,
                ) from error
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    def _read(self, path: Path, task_id: str) -> TaskRecord:
        try:
            with path.open("r", encoding="utf-8") as handle:
                document = yaml.safe_load(handle) or {}
        except OSError as error:
            raise StoreIOError(f"Unable to read {path}: {error}", task_id=task_id) from error
        except yaml.YAMLError as error:
            raise StoreIOError(f"Corrupt task record {path}: {error}", task_id=task_id) from error

        if not isinstance(document, Mapping):
            raise StoreIOError(f"Task record {path} must be a mapping", task_id=task_id)
        try:
            record = record_from_document(document)
        except (ValidationError, ValueError, TypeError, AttributeError) as error:
            raise StoreIOError(f"Invalid task record {path}: {error}", task_id=task_id) from error
        if record.task_id != task_id:
            raise StoreIOError(
                f"Task record {path} belongs to '{record.task_id}', not '{task_id}'",
                task_id=task_id,
            )
        return record

    def _write(self, path: Path, record: TaskRecord) -> None:
        text = yaml.safe_dump(record_to_document(record), sort_keys=False)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".stage-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except OSError as error:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise StoreIOError(f"Unable to write {path}: {error}", task_id=record.task_id) from error
        self._sync_directory(path.parent)

    @staticmethod
    def _sync_directory(directory: Path) -> None:
        try:
            fd = os.open(directory, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(fd)
        except OSError:
            LOGGER.debug("Directory fsync unsupported for %s", directory)
        finally:
            os.close(fd)


__all__ = [
    "DEFAULT_TASKS_DIR",
    "RECORD_FILENAME",
    "TaskRecordStore",
    "record_from_document",
    "record_to_document",
]
