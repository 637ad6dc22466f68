from __future__ import annotations

from flowstage.utils.slug import MAX_TASK_ID_LENGTH, derive_task_id, is_valid_task_id, slugify


def test_derive_task_id_strips_branch_kind() -> None:
    assert derive_task_id("feature/Add Login") == "add-login"
    assert derive_task_id("fix/issue-42/null-pointer") == "issue-42-null-pointer"
    assert derive_task_id("main") == "main"


def test_derived_ids_are_always_valid() -> None:
    for branch in ("feature/_wip", "fix/__init__", "feature/._hidden_", "chore/-x-"):
        derived = derive_task_id(branch)
        assert is_valid_task_id(derived), derived
    assert derive_task_id("feature/_wip") == "wip"
    assert slugify("___") == "task"


def test_long_names_keep_distinct_hashed_suffixes() -> None:
    first = derive_task_id("feature/" + "a" * 200)
    second = derive_task_id("feature/" + "a" * 199 + "b")

    assert len(first) <= MAX_TASK_ID_LENGTH
    assert first != second
    assert is_valid_task_id(first)


def test_slugify_falls_back_for_empty_values() -> None:
    assert slugify("   ") == "task"
    assert slugify("///", fallback="Untitled") == "untitled"


def test_task_id_validation() -> None:
    assert is_valid_task_id("add-login")
    assert is_valid_task_id("TASK_01.v2")
    assert not is_valid_task_id("")
    assert not is_valid_task_id("..")
    assert not is_valid_task_id("../escape")
    assert not is_valid_task_id("has space")
    assert not is_valid_task_id("-leading")
