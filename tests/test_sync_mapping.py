"""Tests for the identity mapping and its persistence.

Covers:
- Stable id generation
- register/get/remove and the deleted-from-remote flag
- Orphan cleanup, scoped to one list
- MappingStore load/save round-trip and atomic replace
- Forgiving loads: missing, empty, corrupt and mis-shaped files
- Legacy position-keyed mappings are backed up and reset
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from pathlib import Path

from gtask_sync.sync.mapping import (
    MappingStore,
    TaskMapping,
    generate_stable_id,
    is_legacy_key,
)

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def _mapping_with(*entries: tuple[str, str, str]) -> TaskMapping:
    mapping = TaskMapping()
    for stable_id, remote_id, list_name in entries:
        mapping.register(stable_id, remote_id, list_name, f"/{list_name}.md", None, T0)
    return mapping


# ---------------------------------------------------------------------------
# Stable ids
# ---------------------------------------------------------------------------


class TestGenerateStableId:
    """Tests for generate_stable_id()."""

    def test_url_safe_and_long_enough(self):
        stable_id = generate_stable_id()
        assert re.fullmatch(r"[A-Za-z0-9]{8,}", stable_id)

    def test_ids_differ(self):
        ids = {generate_stable_id() for _ in range(200)}
        assert len(ids) == 200

    def test_legacy_key_detection(self):
        assert is_legacy_key("Groceries|/notes/g.md:[0]")
        assert is_legacy_key("Work|/w.md:[1].[0].[2]")
        assert not is_legacy_key("3xY9aQ2b")


# ---------------------------------------------------------------------------
# TaskMapping
# ---------------------------------------------------------------------------


class TestTaskMapping:
    """Tests for entry bookkeeping."""

    def test_register_and_get(self):
        mapping = TaskMapping()
        mapping.register("sid00001", "r1", "L", "/l.md", "parent01", T0)
        entry = mapping.get("sid00001")
        assert entry["google_id"] == "r1"
        assert entry["list_name"] == "L"
        assert entry["file_path"] == "/l.md"
        assert entry["parent_uuid"] == "parent01"
        assert entry["google_updated"] == "2025-01-01T12:00:00.000Z"
        assert entry["deleted_from_google"] is False
        assert entry["last_synced"].endswith("Z")
        assert "sid00001" in mapping
        assert len(mapping) == 1

    def test_register_defaults_updated_to_now(self):
        mapping = TaskMapping()
        before = datetime.now(timezone.utc).replace(microsecond=0)
        mapping.register("sid00001", "r1", "L", None)
        assert mapping.get_remote_updated("sid00001") >= before

    def test_get_missing(self):
        mapping = TaskMapping()
        assert mapping.get("nope") is None
        assert mapping.get_remote_id("nope") is None
        assert mapping.get_remote_updated("nope") is None

    def test_get_remote_updated_round_trip(self):
        mapping = _mapping_with(("a", "r1", "L"))
        assert mapping.get_remote_updated("a") == T0

    def test_find_by_remote_id(self):
        mapping = _mapping_with(("a", "r1", "L"), ("b", "r2", "L"))
        assert mapping.find_stable_id_by_remote_id("r2") == "b"
        assert mapping.find_stable_id_by_remote_id("r9") is None

    def test_remove_is_idempotent(self):
        mapping = _mapping_with(("a", "r1", "L"))
        mapping.remove("a")
        mapping.remove("a")
        assert "a" not in mapping

    def test_mark_deleted_and_reregister_clears_flag(self):
        mapping = _mapping_with(("a", "r1", "L"))
        mapping.mark_deleted_remote("a")
        assert mapping.is_deleted_remote("a")
        mapping.register("a", "r5", "L", "/L.md")
        assert not mapping.is_deleted_remote("a")

    def test_set_remote_updated(self):
        mapping = _mapping_with(("a", "r1", "L"))
        later = datetime(2025, 2, 1, tzinfo=timezone.utc)
        mapping.set_remote_updated("a", later)
        assert mapping.get_remote_updated("a") == later
        mapping.set_remote_updated("missing", later)  # no-op
        assert "missing" not in mapping

    def test_list_ids(self):
        mapping = TaskMapping()
        assert mapping.get_list_id("L") is None
        mapping.set_list_id("L", "list1")
        assert mapping.get_list_id("L") == "list1"

    def test_entries_for_list(self):
        mapping = _mapping_with(("a", "r1", "L"), ("b", "r2", "M"))
        assert set(mapping.entries_for_list("L")) == {"a"}


class TestCleanup:
    """Tests for TaskMapping.cleanup()."""

    def test_removes_orphans_of_one_list_only(self):
        mapping = _mapping_with(
            ("a", "r1", "L"), ("b", "r2", "L"), ("c", "r3", "L"),
            ("x", "r4", "M"),
        )
        removed = mapping.cleanup("L", {"a"})
        assert removed == 2
        assert set(mapping.tasks) == {"a", "x"}

    def test_flagged_entries_survive(self):
        mapping = _mapping_with(("a", "r1", "L"), ("b", "r2", "L"))
        mapping.mark_deleted_remote("b")
        assert mapping.cleanup("L", set()) == 1
        assert "b" in mapping

    def test_nothing_to_remove(self):
        mapping = _mapping_with(("a", "r1", "L"))
        assert mapping.cleanup("L", {"a"}) == 0


# ---------------------------------------------------------------------------
# MappingStore
# ---------------------------------------------------------------------------


class TestMappingStoreLoad:
    """Tests for MappingStore.load()."""

    def test_missing_file_gives_empty_mapping(self, tmp_path: Path):
        mapping = MappingStore(tmp_path / "none.json").load()
        assert mapping.data == {"lists": {}, "tasks": {}}

    def test_empty_file_gives_empty_mapping(self, tmp_path: Path, caplog):
        path = tmp_path / "m.json"
        path.write_text("  \n")
        with caplog.at_level("WARNING"):
            mapping = MappingStore(path).load()
        assert len(mapping) == 0
        assert "empty" in caplog.text

    def test_corrupt_file_gives_empty_mapping(self, tmp_path: Path, caplog):
        path = tmp_path / "m.json"
        path.write_text("{not json")
        with caplog.at_level("WARNING"):
            mapping = MappingStore(path).load()
        assert len(mapping) == 0
        assert "corrupt" in caplog.text

    def test_wrong_structure_gives_empty_mapping(self, tmp_path: Path):
        path = tmp_path / "m.json"
        path.write_text(json.dumps({"lists": [], "tasks": {}}))
        assert MappingStore(path).load().data == {"lists": {}, "tasks": {}}

    def test_missing_sections_are_added(self, tmp_path: Path):
        path = tmp_path / "m.json"
        path.write_text(json.dumps({"lists": {"L": "list1"}}))
        mapping = MappingStore(path).load()
        assert mapping.get_list_id("L") == "list1"
        assert mapping.tasks == {}

    def test_legacy_mapping_backed_up_and_reset(self, tmp_path: Path, caplog):
        path = tmp_path / "mappings.json"
        legacy = {
            "lists": {"Groceries": "list1"},
            "tasks": {"Groceries|/g.md:[0]": {"google_id": "r1"}},
        }
        path.write_text(json.dumps(legacy))

        with caplog.at_level("WARNING"):
            mapping = MappingStore(path).load()

        backup = tmp_path / "mappings.json.bak"
        assert backup.exists()
        assert json.loads(backup.read_text()) == legacy
        assert mapping.tasks == {}
        assert mapping.get_list_id("Groceries") == "list1"
        assert "backed up" in caplog.text


class TestMappingStoreSave:
    """Tests for MappingStore.save()."""

    def test_round_trip(self, tmp_path: Path):
        store = MappingStore(tmp_path / "state" / "mappings.json")
        mapping = _mapping_with(("a", "r1", "L"))
        mapping.set_list_id("L", "list1")
        mapping.mark_deleted_remote("a")
        store.save(mapping)

        loaded = store.load()
        assert loaded.data == mapping.data
        assert loaded.is_deleted_remote("a")

    def test_creates_parent_directory(self, tmp_path: Path):
        path = tmp_path / "deep" / "er" / "m.json"
        MappingStore(path).save(TaskMapping())
        assert path.is_file()

    def test_no_temp_files_left(self, tmp_path: Path):
        store = MappingStore(tmp_path / "m.json")
        store.save(_mapping_with(("a", "r1", "L")))
        store.save(_mapping_with(("b", "r2", "L")))
        assert [p.name for p in tmp_path.iterdir()] == ["m.json"]
        assert set(store.load().tasks) == {"b"}
