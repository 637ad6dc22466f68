"""Helpers for turning branch and task names into directory-safe task ids."""

from __future__ import annotations

import hashlib
import re
from typing import Pattern

MAX_TASK_ID_LENGTH = 80

_TASK_ID_PATTERN: Pattern[str] = re.compile(r"^[a-z0-9][a-z0-9_.-]*$", re.IGNORECASE)
_UNSAFE_CHARS: Pattern[str] = re.compile(r"[^a-z0-9_.-]+")
_HYPHEN_RUNS: Pattern[str] = re.compile(r"-{2,}")

# Prefixes that describe the kind of branch rather than the task itself.
_BRANCH_PREFIXES = ("feature/", "feat/", "fix/", "bugfix/", "hotfix/", "chore/", "task/")


def is_valid_task_id(value: str | None) -> bool:
    """Return ``True`` when ``value`` can be used verbatim as a task directory name."""
    if not value or len(value) > MAX_TASK_ID_LENGTH:
        return False
    if value in {".", ".."}:
        return False
    return bool(_TASK_ID_PATTERN.match(value))


def slugify(value: str | None, *, fallback: str = "task", max_length: int = MAX_TASK_ID_LENGTH) -> str:
    """Lower-case ``value`` and collapse anything unsafe into single hyphens."""
    slug = _normalize((value or "").strip().lower())
    if not slug:
        slug = _normalize(fallback.lower()) or "task"
    if len(slug) > max_length:
        slug = _shorten(slug, max_length=max_length)
    return slug


def derive_task_id(branch_name: str) -> str:
    """Derive a stable task id from a branch name.

    ``feature/Add Login`` becomes ``add-login``; very long names keep a hashed
    suffix so distinct branches still map to distinct ids.
    """
    name = branch_name.strip()
    lowered = name.lower()
    for prefix in _BRANCH_PREFIXES:
        if lowered.startswith(prefix) and len(name) > len(prefix):
            name = name[len(prefix):]
            break
    return slugify(name.replace("/", "-"))


def _shorten(slug: str, *, max_length: int) -> str:
    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix = slug[: max(max_length - len(digest) - 1, 1)].rstrip("-._")
    return f"{prefix or slug[0]}-{digest}"


def _normalize(value: str) -> str:
    slug = _UNSAFE_CHARS.sub("-", value)
    slug = _HYPHEN_RUNS.sub("-", slug)
    return slug.strip("-._")


__all__ = ["MAX_TASK_ID_LENGTH", "derive_task_id", "is_valid_task_id", "slugify"]
