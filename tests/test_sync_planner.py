"""Tests for SyncPlanner.

Covers:
- First sync of a fresh file (creation only)
- Idempotence: an unchanged snapshot plans nothing
- Completion conflicts decided by the resolver
- Field differences pushed to remote
- Remote deletions: keep-completed flag vs local deletion
- Local deletions become remote deletions; absence beats update
- Remote-only tasks become local creations, in tree order
- Fallback matching; in-sync matches are left for the executor to register
- Stable id assignment for new and duplicated ids
"""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from gtask_sync.sync.mapping import TaskMapping
from gtask_sync.sync.models import RemoteTask, SyncAction, TaskRecord
from gtask_sync.sync.parser import parse_tasks
from gtask_sync.sync.planner import (
    SyncPlanner,
    _stable_id,
    fields_differ,
    normalize_notes,
)
from gtask_sync.sync.resolver import RemoteWinsResolver

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
FILE = "/notes/l.md"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _id_factory(prefix: str = "new"):
    counter = itertools.count(1)
    return lambda: f"{prefix}{next(counter):05d}"


def _planner(**kwargs) -> SyncPlanner:
    kwargs.setdefault("id_factory", _id_factory())
    return SyncPlanner(**kwargs)


def _records(text: str) -> list[TaskRecord]:
    return parse_tasks(text.splitlines(), FILE)


def _remote(
    task_id: str,
    title: str,
    status: str = "needsAction",
    parent: str | None = None,
    position: str = "0001",
    updated: datetime = T0,
    notes: str | None = None,
    due: datetime | None = None,
) -> RemoteTask:
    return RemoteTask(
        id=task_id, title=title, status=status, parent=parent,
        position=position, updated=updated, notes=notes, due=due,
    )


def _mapping(*pairs: tuple[str, str], list_name: str = "L") -> TaskMapping:
    mapping = TaskMapping()
    for stable_id, remote_id in pairs:
        mapping.register(stable_id, remote_id, list_name, FILE, None, T0)
    return mapping


def _actions(plan) -> list[SyncAction]:
    return [op.action for op in plan.operations]


# ---------------------------------------------------------------------------
# First sync and idempotence
# ---------------------------------------------------------------------------


class TestFirstSync:
    """A fresh file against an empty remote list."""

    def test_parent_and_child_create_remote_only(self):
        records = _records("# L\n- [ ] A\n  - [ ] B\n")
        plan = _planner().plan("L", records, [], TaskMapping())

        counts = plan.counts()
        assert counts["create_remote"] == 2
        assert counts["create_local"] == 0
        assert counts["delete_remote"] == 0
        assert counts["delete_local"] == 0
        assert plan.new_ids == [0, 1]
        assert [r.stable_id for r in records] == ["new00001", "new00002"]

    def test_empty_everything_is_empty_plan(self):
        plan = _planner().plan("L", [], [], TaskMapping())
        assert plan.is_empty


class TestIdempotence:
    """Re-planning an unchanged snapshot yields no operations."""

    def test_synced_list_plans_nothing(self):
        records = _records(
            "# L\n"
            "- [ ] A | 2025-03-01\n"
            "  <!-- gtask:aaaaaaaa -->\n"
            "  Some notes\n"
            "  - [x] B\n"
            "    <!-- gtask:bbbbbbbb -->\n"
        )
        remote = [
            _remote(
                "r1", "A", notes="Some notes",
                due=datetime(2025, 3, 1, tzinfo=timezone.utc),
            ),
            _remote("r2", "B", status="completed", parent="r1"),
        ]
        mapping = _mapping(("aaaaaaaa", "r1"), ("bbbbbbbb", "r2"))

        plan = _planner().plan("L", records, remote, mapping)

        assert plan.is_empty
        assert plan.new_ids == []


# ---------------------------------------------------------------------------
# Both sides present
# ---------------------------------------------------------------------------


class TestConflicts:
    """Completion-state disagreements."""

    TEXT = "- [ ] A\n  <!-- gtask:aaaaaaaa -->\n"

    def test_strictly_newer_remote_updates_local(self):
        remote = [_remote("r1", "A", status="completed", updated=T0 + timedelta(seconds=1))]
        plan = _planner().plan(
            "L", _records(self.TEXT), remote, _mapping(("aaaaaaaa", "r1"))
        )
        assert _actions(plan) == [SyncAction.UPDATE_LOCAL]
        assert plan.operations[0].remote_id == "r1"
        assert plan.operations[0].remote.completed

    def test_equal_timestamp_updates_remote(self):
        remote = [_remote("r1", "A", status="completed", updated=T0)]
        plan = _planner().plan(
            "L", _records(self.TEXT), remote, _mapping(("aaaaaaaa", "r1"))
        )
        assert _actions(plan) == [SyncAction.UPDATE_REMOTE]

    def test_configured_resolver_is_used(self):
        remote = [_remote("r1", "A", status="completed", updated=T0)]
        plan = _planner(resolver=RemoteWinsResolver()).plan(
            "L", _records(self.TEXT), remote, _mapping(("aaaaaaaa", "r1"))
        )
        assert _actions(plan) == [SyncAction.UPDATE_LOCAL]

    def test_title_match_without_entry_pushes_local(self):
        """No stored timestamp means the local state wins."""
        remote = [_remote("r1", "A", status="completed", updated=T0 + timedelta(days=9))]
        plan = _planner().plan("L", _records("- [ ] A"), remote, TaskMapping())
        assert _actions(plan) == [SyncAction.UPDATE_REMOTE]
        assert plan.operations[0].remote_id == "r1"


class TestFieldDifferences:
    """Title, description and due changes are pushed."""

    def test_renamed_locally(self):
        records = _records("- [ ] A renamed\n  <!-- gtask:aaaaaaaa -->\n")
        plan = _planner().plan(
            "L", records, [_remote("r1", "A")], _mapping(("aaaaaaaa", "r1"))
        )
        assert _actions(plan) == [SyncAction.UPDATE_REMOTE]

    def test_description_changed(self):
        records = _records("- [ ] A\n  <!-- gtask:aaaaaaaa -->\n  new note\n")
        plan = _planner().plan(
            "L", records, [_remote("r1", "A", notes="old note")],
            _mapping(("aaaaaaaa", "r1")),
        )
        assert _actions(plan) == [SyncAction.UPDATE_REMOTE]

    def test_due_compared_by_day(self):
        """The service keeps dates only; a local time is not a change."""
        record = TaskRecord(
            title="A", due=datetime(2025, 3, 1, 14, 30, tzinfo=timezone.utc)
        )
        remote = _remote("r1", "A", due=datetime(2025, 3, 1, tzinfo=timezone.utc))
        assert not fields_differ(record, remote)

    def test_due_removed_locally(self):
        record = TaskRecord(title="A")
        remote = _remote("r1", "A", due=datetime(2025, 3, 1, tzinfo=timezone.utc))
        assert fields_differ(record, remote)

    def test_remote_title_outer_whitespace_ignored(self):
        assert not fields_differ(TaskRecord(title="Padded"), _remote("r1", "  Padded "))

    def test_piped_title_written_back_is_unchanged(self):
        records = _records("- [ ] Pay rent \\| 2025-01-01\n  <!-- gtask:aaaaaaaa -->\n")
        plan = _planner().plan(
            "L", records, [_remote("r1", "Pay rent | 2025-01-01")],
            _mapping(("aaaaaaaa", "r1")),
        )
        assert plan.is_empty

    def test_normalize_notes(self):
        assert normalize_notes("  a \n\n b ") == "a\nb"
        assert normalize_notes("\n \n") is None
        assert normalize_notes(None) is None


# ---------------------------------------------------------------------------
# Deletions
# ---------------------------------------------------------------------------


class TestRemoteGone:
    """The mapping knows the task but the snapshot no longer has it."""

    def test_open_task_deleted_locally(self):
        records = _records("- [ ] A\n  <!-- gtask:aaaaaaaa -->\n")
        plan = _planner().plan("L", records, [], _mapping(("aaaaaaaa", "r1")))
        assert _actions(plan) == [SyncAction.DELETE_LOCAL]
        assert plan.operations[0].remote_id == "r1"

    def test_completed_task_kept_and_flagged(self):
        records = _records("- [x] A\n  <!-- gtask:aaaaaaaa -->\n")
        mapping = _mapping(("aaaaaaaa", "r1"))
        plan = _planner().plan("L", records, [], mapping)
        assert plan.is_empty
        assert mapping.is_deleted_remote("aaaaaaaa")

    def test_completed_task_deleted_without_keep_policy(self):
        records = _records("- [x] A\n  <!-- gtask:aaaaaaaa -->\n")
        plan = _planner(keep_completed=False).plan(
            "L", records, [], _mapping(("aaaaaaaa", "r1"))
        )
        assert _actions(plan) == [SyncAction.DELETE_LOCAL]

    def test_flagged_entry_plans_nothing(self):
        records = _records("- [ ] A\n  <!-- gtask:aaaaaaaa -->\n")
        mapping = _mapping(("aaaaaaaa", "r1"))
        mapping.mark_deleted_remote("aaaaaaaa")
        plan = _planner().plan("L", records, [], mapping)
        assert plan.is_empty


class TestLocalGone:
    """The mapping knows the task but the Markdown no longer has it."""

    def test_remote_deleted(self):
        plan = _planner().plan(
            "L", [], [_remote("r9", "Gone")], _mapping(("gone0001", "r9"))
        )
        assert _actions(plan) == [SyncAction.DELETE_REMOTE]
        op = plan.operations[0]
        assert op.stable_id == "gone0001"
        assert op.remote_id == "r9"

    def test_absence_beats_remote_update(self):
        """A remote edit to a locally deleted task is not pulled back."""
        remote = [_remote("r9", "Edited", updated=T0 + timedelta(days=1))]
        plan = _planner().plan("L", [], remote, _mapping(("gone0001", "r9")))
        assert _actions(plan) == [SyncAction.DELETE_REMOTE]

    def test_both_sides_gone_left_to_cleanup(self):
        plan = _planner().plan("L", [], [], _mapping(("gone0001", "r9")))
        assert plan.is_empty

    def test_flagged_entry_not_deleted_remotely(self):
        mapping = _mapping(("gone0001", "r9"))
        mapping.mark_deleted_remote("gone0001")
        plan = _planner().plan("L", [], [_remote("r9", "Back")], mapping)
        assert plan.is_empty

    def test_other_lists_untouched(self):
        mapping = _mapping(("other001", "r9"), list_name="Other")
        plan = _planner().plan("L", [], [], mapping)
        assert plan.is_empty
        assert "other001" in mapping


# ---------------------------------------------------------------------------
# Remote-only tasks and matching
# ---------------------------------------------------------------------------


class TestCreateLocal:
    """Remote tasks nobody refers to are written locally."""

    def test_tree_order(self):
        remote = [
            _remote("c", "Child", parent="p", position="0001"),
            _remote("q", "Second", position="0002"),
            _remote("p", "Parent", position="0001"),
        ]
        plan = _planner().plan("L", [], remote, TaskMapping())
        assert _actions(plan) == [SyncAction.CREATE_LOCAL] * 3
        assert [op.remote_id for op in plan.operations] == ["p", "c", "q"]

    def test_unmatched_pair_creates_both_ways(self):
        plan = _planner().plan(
            "L", _records("- [ ] Local only"), [_remote("r1", "Remote only")],
            TaskMapping(),
        )
        assert sorted(op.action.value for op in plan.operations) == [
            "create_local", "create_remote",
        ]


class TestFallbackMatching:
    """Records without a mapping entry."""

    def test_title_match_in_sync_is_left_for_the_executor(self):
        """Matches needing no operation are listed, not registered yet."""
        records = _records("- [ ] P\n  - [ ] C\n")
        remote = [_remote("r1", "P"), _remote("r2", "C", parent="r1")]
        mapping = TaskMapping()

        plan = _planner().plan("L", records, remote, mapping)

        assert plan.is_empty
        assert [(index, r.id) for index, r in plan.matched] == [(0, "r1"), (1, "r2")]
        assert plan.new_ids == [0, 1]
        assert len(mapping) == 0

    def test_mapped_task_in_sync_is_not_listed_as_match(self):
        records = _records("- [ ] A\n  <!-- gtask:aaaaaaaa -->\n")
        mapping = _mapping(("aaaaaaaa", "r1"))

        plan = _planner().plan("L", records, [_remote("r1", "A")], mapping)

        assert plan.is_empty
        assert plan.matched == []

    def test_position_match_pushes_rename(self):
        plan = _planner().plan(
            "L", _records("- [ ] Buy milk"), [_remote("r1", "Buy milks")],
            TaskMapping(),
        )
        assert _actions(plan) == [SyncAction.UPDATE_REMOTE]
        assert plan.operations[0].remote_id == "r1"

    def test_position_match_disabled(self):
        plan = _planner().plan(
            "L", _records("- [ ] Buy milk"), [_remote("r1", "Buy milks")],
            TaskMapping(), allow_position_match=False,
        )
        assert sorted(op.action.value for op in plan.operations) == [
            "create_local", "create_remote",
        ]

    def test_task_moved_from_other_list(self):
        """An entry of another list does not count for this one."""
        records = _records("- [ ] A\n  <!-- gtask:aaaaaaaa -->\n")
        mapping = _mapping(("aaaaaaaa", "r1"), list_name="Old")
        planner = _planner()

        new_plan = planner.plan("New", records, [], mapping)
        old_plan = planner.plan("Old", [], [_remote("r1", "A")], mapping)

        assert _actions(new_plan) == [SyncAction.CREATE_REMOTE]
        assert _actions(old_plan) == [SyncAction.DELETE_REMOTE]


class TestStableIdAssignment:
    def test_duplicate_id_gets_fresh_one(self):
        records = _records(
            "- [ ] A\n  <!-- gtask:dupdupdu -->\n"
            "- [ ] A copy\n  <!-- gtask:dupdupdu -->\n"
        )
        plan = _planner().plan("L", records, [], TaskMapping())
        assert plan.new_ids == [1]
        assert records[0].stable_id == "dupdupdu"
        assert records[1].stable_id == "new00001"

    def test_generated_id_avoids_mapping_keys(self):
        mapping = _mapping(("new00001", "r1"), list_name="Other")
        records = _records("- [ ] A")
        _planner().plan("L", records, [], mapping)
        assert records[0].stable_id == "new00002"

    def test_record_without_id_is_rejected(self):
        with pytest.raises(ValueError, match="has no stable id"):
            _stable_id(TaskRecord(title="Orphan"))
