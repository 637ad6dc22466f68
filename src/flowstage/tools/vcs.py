"""Minimal git helpers backing the branch-creation collaborator.

The orchestrator only needs to know that a branch with a given name exists
once a task is created; everything else about version control belongs to the
external driver.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol, Sequence

LOGGER = logging.getLogger(__name__)


class GitError(RuntimeError):
    """A git invocation failed or no usable work tree was found."""


class BranchService(Protocol):
    """Collaborator invoked exactly once when a task is created."""

    def create_branch(self, name: str) -> None:
        """Ensure ``name`` exists, raising ``GitError`` when it cannot."""


def _run(args: Sequence[str], *, cwd: Path, check: bool = True) -> subprocess.CompletedProcess[str]:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            encoding="utf-8",
            errors="replace",
            check=False,
        )
    except OSError as error:
        raise GitError(f"Unable to execute git: {error}") from error
    if check and result.returncode:
        detail = (result.stderr or result.stdout).strip() or f"exit status {result.returncode}"
        raise GitError(f"`git {' '.join(args)}` failed: {detail}")
    return result


class GitRepository:
    """Repository handle used only for branch bookkeeping."""

    def __init__(self, root: Path | str) -> None:
        path = Path(root).resolve()
        if not (path / ".git").exists():
            raise GitError(f"{path} is not a git work tree")
        self.root = path

    @classmethod
    def discover(cls, start: Path | str | None = None) -> "GitRepository":
        """Walk up from ``start`` (default: cwd) to the first directory holding ``.git``."""

        origin = Path(start or Path.cwd()).resolve()
        root = next((p for p in (origin, *origin.parents) if (p / ".git").exists()), None)
        if root is None:
            raise GitError(f"No git repository found at or above {origin}")
        return cls(root)

    @classmethod
    def initialise(cls, root: Path | str) -> "GitRepository":
        """Create a work tree at ``root`` whose HEAD points at an empty commit."""
        target = Path(root).resolve()
        target.mkdir(parents=True, exist_ok=True)
        _run(["init", "--quiet"], cwd=target)
        identity = {"user.name": "flowstage", "user.email": "flowstage@localhost"}
        for key, value in identity.items():
            if not _run(["config", "--get", key], cwd=target, check=False).stdout.strip():
                _run(["config", key, value], cwd=target)
        _run(["commit", "--quiet", "--allow-empty", "-m", "flowstage: initial commit"], cwd=target)
        return cls(target)

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Run ``git args...`` inside the work tree."""
        return _run(list(args), cwd=self.root, check=check)

    # Branches --------------------------------------------------------------------------
    def branch_exists(self, name: str) -> bool:
        result = self.git("show-ref", "--verify", "--quiet", f"refs/heads/{name}", check=False)
        return result.returncode == 0

    def create_branch(self, name: str, *, base_ref: str | None = None) -> bool:
        """Create ``name`` without checking it out.

        Returns ``False`` when the branch already existed.
        """

        probe = self.git("check-ref-format", "--branch", name, check=False)
        if probe.returncode != 0:
            raise GitError(f"Invalid branch name: {name!r}")
        if self.branch_exists(name):
            return False
        args = ["branch", name]
        if base_ref:
            args.append(base_ref)
        self.git(*args)
        return True


class GitBranchService:
    """``BranchService`` that creates local branches in a git repository."""

    def __init__(self, repo: GitRepository, *, base_ref: str | None = None) -> None:
        self.repo = repo
        self.base_ref = base_ref or None

    def create_branch(self, name: str) -> None:
        created = self.repo.create_branch(name, base_ref=self.base_ref)
        if created:
            LOGGER.info("Created branch %s in %s", name, self.repo.root)
        else:
            LOGGER.info("Branch %s already exists in %s", name, self.repo.root)


class NullBranchService:
    """``BranchService`` used when branch creation is disabled; records requests only."""

    def __init__(self) -> None:
        self.requested: list[str] = []

    def create_branch(self, name: str) -> None:
        self.requested.append(name)
        LOGGER.debug("Branch creation disabled; skipping %s", name)


def branch_service_from_config(
    config: Mapping[str, Any],
    *,
    repo_root: Optional[Path] = None,
) -> BranchService:
    """Build the branch collaborator described by the ``git`` config section."""
    git_cfg = config.get("git") or {}
    if not git_cfg.get("create_branches", True):
        return NullBranchService()
    repo = GitRepository.discover(repo_root)
    base_ref = git_cfg.get("base_ref")
    return GitBranchService(repo, base_ref=str(base_ref).strip() if base_ref else None)


__all__ = [
    "BranchService",
    "GitBranchService",
    "GitError",
    "GitRepository",
    "NullBranchService",
    "branch_service_from_config",
]
