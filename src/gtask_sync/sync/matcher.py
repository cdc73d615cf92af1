"""Identity matching strategies.

A Markdown task is tied to its remote counterpart in one of three ways,
tried in order of how much identity information is available:

- ``StableIdMatcher``: The task carries a stable id with a mapping entry;
  the entry's remote id is looked up in the snapshot.  This is the normal
  case after the first sync.
- ``TitleMatcher``: No entry exists (first sync, lost mapping); the first
  unclaimed remote task with the same normalised title and a compatible
  parent (both top-level or both subtasks) is taken.
- ``PositionMatcher``: No entry exists; the remote task sitting at the same
  tree position is taken when its title is similar enough.

A remote task is claimed by at most one Markdown task per run.  The
fallback order is configurable through ``create_matchers()``.
"""

from __future__ import annotations

import difflib
import logging
from typing import Protocol

from .mapping import TaskMapping
from .models import RemoteTask, TaskRecord

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.8


def normalize_title(title: str) -> str:
    """Lower-case *title* and collapse runs of whitespace."""
    return " ".join(title.split()).casefold()


def title_similarity(a: str, b: str) -> float:
    """Ratio in ``[0, 1]`` of how alike two titles are."""
    return difflib.SequenceMatcher(
        None, normalize_title(a), normalize_title(b)
    ).ratio()


def remote_position_paths(remote_tasks: list[RemoteTask]) -> dict[str, str]:
    """Compute a ``[i].[j]`` path for every remote task.

    Siblings are ordered by the service's ``position`` string.  Tasks whose
    parent is not in the snapshot are treated as top-level.

    Returns:
        Mapping of remote id to position path.
    """
    known = {task.id for task in remote_tasks}
    children: dict[str | None, list[RemoteTask]] = {}
    for task in remote_tasks:
        parent = task.parent if task.parent in known else None
        children.setdefault(parent, []).append(task)
    for siblings in children.values():
        siblings.sort(key=lambda t: (t.position or "", t.id))

    paths: dict[str, str] = {}

    def walk(parent_id: str | None, prefix: str) -> None:
        for index, task in enumerate(children.get(parent_id, [])):
            if task.id in paths:
                continue
            path = f"{prefix}.[{index}]" if prefix else f"[{index}]"
            paths[task.id] = path
            walk(task.id, path)

    walk(None, "")
    return paths


def order_remote_tasks(remote_tasks: list[RemoteTask]) -> list[RemoteTask]:
    """Return *remote_tasks* in tree order (parents before children)."""
    paths = remote_position_paths(remote_tasks)

    def sort_key(task: RemoteTask) -> list[int]:
        path = paths.get(task.id, "")
        return [int(part.strip("[]")) for part in path.split(".") if part]

    return sorted(remote_tasks, key=sort_key)


class MatchContext:
    """State shared by the matchers while one list is planned.

    Args:
        records: All Markdown records of the list.
        remote_tasks: The remote snapshot of the list.
        mapping: The shared identity mapping.
        list_name: Name of the list being planned.
    """

    def __init__(
        self,
        records: list[TaskRecord],
        remote_tasks: list[RemoteTask],
        mapping: TaskMapping,
        list_name: str,
    ) -> None:
        self.records = records
        self.mapping = mapping
        self.list_name = list_name
        self.remote_by_id = {task.id: task for task in remote_tasks}
        self.ordered_remote = order_remote_tasks(remote_tasks)
        self.claimed: set[str] = set()
        # Remote ids owned by some mapping entry of this list are never
        # handed to a fallback matcher.
        self.mapped_remote_ids = {
            entry.get("google_id")
            for entry in mapping.entries_for_list(list_name).values()
        }
        self._paths: dict[str, str] | None = None

    @property
    def remote_paths(self) -> dict[str, str]:
        if self._paths is None:
            self._paths = remote_position_paths(self.ordered_remote)
        return self._paths

    def candidates(self) -> list[RemoteTask]:
        """Unclaimed remote tasks not owned by a mapping entry."""
        return [
            task
            for task in self.ordered_remote
            if task.id not in self.claimed
            and task.id not in self.mapped_remote_ids
        ]

    def claim(self, remote: RemoteTask) -> None:
        self.claimed.add(remote.id)


class Matcher(Protocol):
    """Protocol for identity matchers."""

    name: str

    def match(
        self, record: TaskRecord, context: MatchContext
    ) -> RemoteTask | None:
        """Return the remote task *record* corresponds to, if any."""
        ...  # pragma: no cover


# ---------------------------------------------------------------------------
# Matchers
# ---------------------------------------------------------------------------


class StableIdMatcher:
    """Match through the mapping entry of the record's stable id."""

    name = "stable-id"

    def match(
        self, record: TaskRecord, context: MatchContext
    ) -> RemoteTask | None:
        if not record.stable_id:
            return None
        entry = context.mapping.get(record.stable_id)
        if entry is None or entry.get("list_name") != context.list_name:
            return None
        return context.remote_by_id.get(entry.get("google_id"))


class TitleMatcher:
    """Match an unmapped record by normalised title."""

    name = "title"

    def match(
        self, record: TaskRecord, context: MatchContext
    ) -> RemoteTask | None:
        wanted = normalize_title(record.title)
        is_subtask = record.parent_index is not None
        for remote in context.candidates():
            if (remote.parent is not None) != is_subtask:
                continue
            if normalize_title(remote.title) == wanted:
                return remote
        return None


class PositionMatcher:
    """Match an unmapped record by tree position and a similar title."""

    name = "position"

    def __init__(self, threshold: float = SIMILARITY_THRESHOLD) -> None:
        self._threshold = threshold

    def match(
        self, record: TaskRecord, context: MatchContext
    ) -> RemoteTask | None:
        if not record.position_path:
            return None
        for remote in context.candidates():
            if context.remote_paths.get(remote.id) != record.position_path:
                continue
            if title_similarity(record.title, remote.title) >= self._threshold:
                return remote
        return None


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_FALLBACK_MAP: dict[str, type] = {
    "title": TitleMatcher,
    "position": PositionMatcher,
}

VALID_MATCH_STRATEGIES = tuple(sorted(_FALLBACK_MAP))


def create_matchers(strategies: list[str] | tuple[str, ...]) -> list[Matcher]:
    """Build the fallback matcher chain.

    Args:
        strategies: Ordered names, each ``"title"`` or ``"position"``.

    Returns:
        Matcher instances in the given order.

    Raises:
        ValueError: If a name is not recognised.
    """
    matchers: list[Matcher] = []
    for name in strategies:
        cls = _FALLBACK_MAP.get(name)
        if cls is None:
            raise ValueError(
                f"Unknown match strategy: '{name}'. Valid strategies: {list(VALID_MATCH_STRATEGIES)}"
            )
        matchers.append(cls())
    return matchers
