from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from flowstage.errors import BranchCreationError
from flowstage.orchestrator import Orchestrator
from flowstage.records.store import TaskRecordStore
from flowstage.tools.vcs import (
    GitBranchService,
    GitError,
    GitRepository,
    NullBranchService,
    branch_service_from_config,
)

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git executable not available")


def test_create_branch_is_idempotent(tmp_path: Path) -> None:
    repo = GitRepository.initialise(tmp_path / "repo")
    start = repo.git("symbolic-ref", "--short", "HEAD").stdout.strip()

    assert repo.create_branch("feature/add-login") is True
    assert repo.branch_exists("feature/add-login")
    assert repo.create_branch("feature/add-login") is False
    assert repo.git("symbolic-ref", "--short", "HEAD").stdout.strip() == start


def test_invalid_branch_names_raise(tmp_path: Path) -> None:
    repo = GitRepository.initialise(tmp_path / "repo")
    with pytest.raises(GitError):
        repo.create_branch("bad..name")


def test_discover_walks_up_from_subdirectories(tmp_path: Path) -> None:
    repo = GitRepository.initialise(tmp_path / "repo")
    nested = repo.root / "a" / "b"
    nested.mkdir(parents=True)

    assert GitRepository.discover(nested).root == repo.root
    with pytest.raises(GitError):
        GitRepository(tmp_path)


def test_orchestrator_creates_branch_once(tmp_path: Path) -> None:
    repo = GitRepository.initialise(tmp_path / "repo")
    store = TaskRecordStore(tmp_path / "tasks")
    orchestrator = Orchestrator(store, branch_service=GitBranchService(repo))

    record = orchestrator.create("add-login", "feature/add-login")
    assert record.version == 1
    assert repo.branch_exists("feature/add-login")

    with pytest.raises(BranchCreationError):
        orchestrator.create("broken", "bad..name")
    assert not store.exists("broken")


def test_branch_service_from_config(tmp_path: Path) -> None:
    disabled = branch_service_from_config({"git": {"create_branches": False}}, repo_root=tmp_path)
    assert isinstance(disabled, NullBranchService)

    repo = GitRepository.initialise(tmp_path / "repo")
    service = branch_service_from_config({"git": {"base_ref": "HEAD"}}, repo_root=repo.root)
    assert isinstance(service, GitBranchService)
    service.create_branch("fix/crash")
    assert repo.branch_exists("fix/crash")
