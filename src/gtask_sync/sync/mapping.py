"""Identity mapping between Markdown tasks and remote tasks.

The mapping is persisted as a single JSON file::

    {
      "lists": {"Groceries": "<remote list id>"},
      "tasks": {
        "3xY9aQ2b": {
          "google_id": "...",
          "list_name": "Groceries",
          "file_path": "/notes/groceries.md",
          "parent_uuid": null,
          "google_updated": "2025-01-15T10:00:00.000Z",
          "deleted_from_google": false,
          "last_synced": "2025-01-15T10:00:01.000Z"
        }
      }
    }

Key design choices:

* **Dict-based state** -- ``TaskMapping`` wraps a plain ``dict`` that the
  planner and executor mutate during a run; ``MappingStore`` persists it
  once at the end.
* **Atomic writes** -- ``MappingStore.save()`` writes to a temp file then
  calls ``os.replace()`` so a crash never leaves a half-written mapping.
* **Forgiving loads** -- a missing, empty or corrupt file yields an empty
  mapping and a warning; the next run re-matches by title.
"""

from __future__ import annotations

import json
import logging
import os
import random
import re
import shutil
import string
import tempfile
import time
from datetime import datetime
from pathlib import Path

from .timestamps import format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

_BASE62 = string.digits + string.ascii_letters
_MIN_ID_LENGTH = 8

# Old mappings keyed tasks by "List|/path/file.md:[0].[1]".
_LEGACY_KEY_RE = re.compile(r"^.+\|.+:\[\d+\](\.\[\d+\])*$")


def generate_stable_id() -> str:
    """Return a new short, URL-safe identifier.

    Base62 encoding of the current time in microseconds followed by six
    random decimal digits, padded to at least eight characters.
    """
    micros = time.time_ns() // 1000
    value = micros * 1_000_000 + random.randrange(1_000_000)
    chars: list[str] = []
    while value:
        value, rem = divmod(value, 62)
        chars.append(_BASE62[rem])
    encoded = "".join(reversed(chars))
    while len(encoded) < _MIN_ID_LENGTH:
        encoded += random.choice(_BASE62)
    return encoded


def is_legacy_key(key: str) -> bool:
    """Return ``True`` for an old position-based task key."""
    return bool(_LEGACY_KEY_RE.match(key))


def empty_mapping_data() -> dict:
    return {"lists": {}, "tasks": {}}


class TaskMapping:
    """In-memory identity mapping for one sync run.

    Args:
        data: Persisted mapping dict; a fresh empty mapping when omitted.
    """

    def __init__(self, data: dict | None = None) -> None:
        self._data = data if data is not None else empty_mapping_data()
        self._data.setdefault("lists", {})
        self._data.setdefault("tasks", {})

    @property
    def data(self) -> dict:
        """The underlying dict, as persisted."""
        return self._data

    @property
    def tasks(self) -> dict[str, dict]:
        return self._data["tasks"]

    @property
    def lists(self) -> dict[str, str]:
        return self._data["lists"]

    def __len__(self) -> int:
        return len(self.tasks)

    def __contains__(self, stable_id: object) -> bool:
        return stable_id in self.tasks

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------

    def get_list_id(self, list_name: str) -> str | None:
        return self.lists.get(list_name)

    def set_list_id(self, list_name: str, list_id: str) -> None:
        self.lists[list_name] = list_id

    # ------------------------------------------------------------------
    # Task entries
    # ------------------------------------------------------------------

    def register(
        self,
        stable_id: str,
        remote_id: str,
        list_name: str,
        file_path: str | None,
        parent_stable_id: str | None = None,
        remote_updated: datetime | None = None,
    ) -> None:
        """Create or overwrite the entry for *stable_id*.

        ``last_synced`` is set to now, and so is ``google_updated`` when
        *remote_updated* is not given.  Registering clears the
        deleted-from-remote flag.
        """
        now = utcnow()
        self.tasks[stable_id] = {
            "google_id": remote_id,
            "list_name": list_name,
            "file_path": file_path,
            "parent_uuid": parent_stable_id,
            "google_updated": format_timestamp(remote_updated or now),
            "deleted_from_google": False,
            "last_synced": format_timestamp(now),
        }

    def get(self, stable_id: str) -> dict | None:
        """Return the entry for *stable_id*, or ``None`` if absent."""
        return self.tasks.get(stable_id)

    def get_remote_id(self, stable_id: str) -> str | None:
        entry = self.get(stable_id)
        return entry.get("google_id") if entry else None

    def get_remote_updated(self, stable_id: str) -> datetime | None:
        """Stored remote-updated timestamp as a datetime, if any."""
        entry = self.get(stable_id)
        if entry is None:
            return None
        return parse_timestamp(entry.get("google_updated"))

    def find_stable_id_by_remote_id(self, remote_id: str) -> str | None:
        """Reverse lookup; linear scan over all entries."""
        for stable_id, entry in self.tasks.items():
            if entry.get("google_id") == remote_id:
                return stable_id
        return None

    def set_remote_updated(
        self, stable_id: str, remote_updated: datetime | None = None
    ) -> None:
        """Refresh ``google_updated`` and ``last_synced`` for an entry.

        No-op if the entry does not exist.
        """
        entry = self.get(stable_id)
        if entry is None:
            return
        now = utcnow()
        entry["google_updated"] = format_timestamp(remote_updated or now)
        entry["last_synced"] = format_timestamp(now)

    def remove(self, stable_id: str) -> None:
        """Drop the entry for *stable_id*.  No-op if not present."""
        self.tasks.pop(stable_id, None)

    def mark_deleted_remote(self, stable_id: str) -> None:
        """Flag an entry whose remote task is gone but is kept locally."""
        entry = self.get(stable_id)
        if entry is not None:
            entry["deleted_from_google"] = True

    def is_deleted_remote(self, stable_id: str) -> bool:
        entry = self.get(stable_id)
        return bool(entry and entry.get("deleted_from_google", False))

    def entries_for_list(self, list_name: str) -> dict[str, dict]:
        """All entries belonging to *list_name*, keyed by stable id."""
        return {
            stable_id: entry
            for stable_id, entry in self.tasks.items()
            if entry.get("list_name") == list_name
        }

    def cleanup(self, list_name: str, current_stable_ids: set[str]) -> int:
        """Remove orphaned entries of *list_name*.

        An entry is orphaned when its stable id is not in
        *current_stable_ids* and it is not flagged deleted-from-remote.

        Returns:
            Number of entries removed.
        """
        orphaned = [
            stable_id
            for stable_id, entry in self.entries_for_list(list_name).items()
            if stable_id not in current_stable_ids
            and not entry.get("deleted_from_google", False)
        ]
        for stable_id in orphaned:
            self.remove(stable_id)
        if orphaned:
            logger.debug(
                "Removed %d orphaned mapping entries from %s",
                len(orphaned), list_name,
            )
        return len(orphaned)


class MappingStore:
    """Load and save the mapping file.

    Args:
        path: Location of the JSON mapping file.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> TaskMapping:
        """Load the mapping from disk.

        Returns:
            The loaded mapping.  A missing file gives an empty mapping; an
            empty, unreadable or corrupt file gives an empty mapping and a
            logged warning.  A legacy position-keyed mapping is backed up and
            its task entries are reset.
        """
        if not self._path.exists():
            return TaskMapping()

        try:
            text = self._path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning("Cannot read mapping file %s: %s", self._path, e)
            return TaskMapping()

        if not text.strip():
            logger.warning("Mapping file %s is empty", self._path)
            return TaskMapping()

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning("Mapping file %s is corrupt: %s", self._path, e)
            return TaskMapping()

        if (
            not isinstance(data, dict)
            or not isinstance(data.get("lists", {}), dict)
            or not isinstance(data.get("tasks", {}), dict)
        ):
            logger.warning(
                "Mapping file %s has an unexpected structure", self._path
            )
            return TaskMapping()

        if self._is_legacy(data):
            data = self._migrate_legacy(data)
        return TaskMapping(data)

    def save(self, mapping: TaskMapping) -> None:
        """Persist *mapping* atomically.

        Writes to a temporary file in the same directory then replaces the
        target.  Creates the parent directory if needed.
        """
        directory = self._path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(directory), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(mapping.data, fh, indent=2)
            os.replace(tmp_path, self._path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    # ------------------------------------------------------------------
    # Legacy migration
    # ------------------------------------------------------------------

    @staticmethod
    def _is_legacy(data: dict) -> bool:
        return any(is_legacy_key(key) for key in data.get("tasks", {}))

    def _migrate_legacy(self, data: dict) -> dict:
        """Back up the old file and reset its task entries.

        List ids survive; tasks are re-matched by title on the next run.
        """
        backup = self._path.with_name(self._path.name + ".bak")
        shutil.copy2(self._path, backup)
        logger.warning(
            "Position-keyed mapping detected; backed up to %s and reset %d "
            "task entries",
            backup, len(data.get("tasks", {})),
        )
        return {"lists": dict(data.get("lists", {})), "tasks": {}}
