from __future__ import annotations

import sys
import textwrap
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from flowstage.orchestrator import Orchestrator  # noqa: E402
from flowstage.records.store import TaskRecordStore  # noqa: E402
from flowstage.tools.vcs import GitError, NullBranchService  # noqa: E402


@dataclass(slots=True)
class TickingClock:
    """Deterministic clock that advances one second per call."""

    current: datetime = field(default_factory=lambda: datetime(2026, 1, 1, tzinfo=timezone.utc))

    def __call__(self) -> datetime:
        self.current = self.current + timedelta(seconds=1)
        return self.current


class FailingBranchService:
    """Branch collaborator that always refuses."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    def create_branch(self, name: str) -> None:
        self.calls.append(name)
        raise GitError(f"cannot create {name}")


@pytest.fixture()
def store(tmp_path: Path) -> TaskRecordStore:
    return TaskRecordStore(tmp_path / "tasks")


@pytest.fixture()
def branches() -> NullBranchService:
    return NullBranchService()


@pytest.fixture()
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture()
def failing_branches() -> FailingBranchService:
    return FailingBranchService()


@pytest.fixture()
def orchestrator(store: TaskRecordStore, branches: NullBranchService, clock: TickingClock) -> Orchestrator:
    return Orchestrator(store, branch_service=branches, clock=clock)


@pytest.fixture()
def config_file(tmp_path: Path) -> Path:
    """Write a config that keeps task records under ``tmp_path`` and skips git."""

    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        textwrap.dedent(
            """
            project:
              name: fixture
              repo_root: .
            lifecycle:
              max_review_rounds: 2
            git:
              create_branches: false
            paths:
              data: data
              tasks: data/tasks
              config: config.yaml
            logging:
              level: WARNING
            """
        ).lstrip(),
        encoding="utf-8",
    )
    return config_path
