"""Collaborator integrations used by the orchestrator."""

from .vcs import (
    BranchService,
    GitBranchService,
    GitError,
    GitRepository,
    NullBranchService,
    branch_service_from_config,
)

__all__ = [
    "BranchService",
    "GitBranchService",
    "GitError",
    "GitRepository",
    "NullBranchService",
    "branch_service_from_config",
]
