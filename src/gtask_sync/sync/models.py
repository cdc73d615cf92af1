"""Pydantic models for the two-way task sync engine.

Defines the core data contracts used across all sync modules:

- ``TaskRecord``: One task parsed from a Markdown file.
- ``RemoteTask``: One task as returned by the Google Tasks API.
- ``SyncAction``: Enum of possible sync operations.
- ``SyncOperation``: A single planned operation.
- ``SyncPlan``: All operations planned for one list.
- ``SyncResult``: Outcome of executing one operation.
- ``SyncReport``: Aggregate results for a full sync run.

``TaskRecord`` and ``SyncPlan`` are mutable because the parser and planner
fill them in over several passes; everything else is frozen.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .timestamps import parse_timestamp

STATUS_COMPLETED = "completed"
STATUS_NEEDS_ACTION = "needsAction"


class TaskRecord(BaseModel):
    """A task parsed from Markdown.

    Attributes:
        title: Task title without checkbox or due-date suffix.
        completed: Whether the checkbox is ticked.
        description: Joined description lines, if any.
        due: Due timestamp (UTC), if a valid suffix was present.
        indent_level: ``floor(leading spaces / 2)``.
        line_number: Zero-based index of the task line in its file.
        parent_index: Index of the parent record in the same list.
        position_path: Sibling-index chain such as ``[0].[1]``.
        stable_id: Embedded identifier, ``None`` until first sync.
        file_path: File the task was parsed from.
    """

    title: str
    completed: bool = False
    description: str | None = None
    due: datetime | None = None
    indent_level: int = 0
    line_number: int = 0
    parent_index: int | None = None
    position_path: str = ""
    stable_id: str | None = None
    file_path: str | None = None

    @property
    def depth(self) -> int:
        """Nesting depth derived from the position path."""
        return self.position_path.count(".")


class RemoteTask(BaseModel):
    """A task from the remote service snapshot."""

    id: str
    title: str = ""
    status: str = STATUS_NEEDS_ACTION
    notes: str | None = None
    due: datetime | None = None
    parent: str | None = None
    updated: datetime | None = None
    position: str | None = None

    model_config = {"frozen": True}

    @property
    def completed(self) -> bool:
        return self.status == STATUS_COMPLETED

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> RemoteTask:
        """Build a ``RemoteTask`` from a Tasks API resource dict."""
        return cls(
            id=data["id"],
            title=data.get("title") or "",
            status=data.get("status") or STATUS_NEEDS_ACTION,
            notes=data.get("notes") or None,
            due=parse_timestamp(data.get("due")),
            parent=data.get("parent") or None,
            updated=parse_timestamp(data.get("updated")),
            position=data.get("position"),
        )


class SyncAction(str, Enum):
    """Possible sync operations for a task."""

    UPDATE_REMOTE = "update_remote"
    UPDATE_LOCAL = "update_local"
    DELETE_REMOTE = "delete_remote"
    DELETE_LOCAL = "delete_local"
    CREATE_REMOTE = "create_remote"
    CREATE_LOCAL = "create_local"


class SyncOperation(BaseModel):
    """One planned operation.

    Attributes:
        action: What to do.
        list_name: List the task belongs to.
        stable_id: Local identity of the task (``None`` for CREATE_LOCAL).
        record_index: Index into the list's records, for local-side tasks.
        remote: Remote snapshot of the task, when it exists remotely.
        remote_id: Remote id to act on (DELETE_REMOTE keeps only this).
        title: Human-readable label for reports.
    """

    action: SyncAction
    list_name: str
    stable_id: str | None = None
    record_index: int | None = None
    remote: RemoteTask | None = None
    remote_id: str | None = None
    title: str = ""

    model_config = {"frozen": True}


class SyncPlan(BaseModel):
    """All operations planned for one list.

    Attributes:
        list_name: Name of the list.
        records: Parsed local records (stable ids filled in).
        operations: Planned operations in planning order.
        new_ids: Record indices whose stable id was generated this run and
            still has to be embedded in the Markdown file.
        matched: Fallback matches already in agreement, as (record index,
            remote task) pairs.  They need no operation, only a mapping
            entry once the record's stable id is in its file.
    """

    list_name: str
    records: list[TaskRecord] = Field(default_factory=list)
    operations: list[SyncOperation] = Field(default_factory=list)
    new_ids: list[int] = Field(default_factory=list)
    matched: list[tuple[int, RemoteTask]] = Field(default_factory=list)

    def add(self, operation: SyncOperation) -> None:
        self.operations.append(operation)

    def by_action(self, action: SyncAction) -> list[SyncOperation]:
        """Operations with the given action, in planning order."""
        return [op for op in self.operations if op.action == action]

    def counts(self) -> dict[str, int]:
        """Number of planned operations per action value."""
        counts = {action.value: 0 for action in SyncAction}
        for op in self.operations:
            counts[op.action.value] += 1
        return counts

    @property
    def is_empty(self) -> bool:
        return not self.operations


class SyncResult(BaseModel):
    """Result of executing one operation.

    Attributes:
        list_name: List the task belongs to.
        action: Sync action that was attempted.
        title: Task title, for reporting.
        stable_id: Local identity, when known.
        success: Whether the operation succeeded.
        error: Error message if the operation failed.
    """

    list_name: str
    action: SyncAction
    title: str = ""
    stable_id: str | None = None
    success: bool
    error: str | None = None

    model_config = {"frozen": True}


class SyncReport(BaseModel):
    """Aggregate report for a full sync run.

    Attributes:
        dry_run: Whether this was a dry-run (no changes applied).
        lists: Names of the lists that were processed.
        planned: Planned operation counts per action value.
        results: Individual operation results (empty for a dry run).
        errors_extra: Failures not tied to one operation (e.g. a list that
            could not be fetched).
        started_at: ISO 8601 timestamp when sync started.
        completed_at: ISO 8601 timestamp when sync completed.
    """

    dry_run: bool = False
    lists: list[str] = []
    planned: dict[str, int] = {}
    results: list[SyncResult] = []
    errors_extra: list[str] = []
    started_at: str
    completed_at: str | None = None

    model_config = {"frozen": True}

    def _with_action(self, action: SyncAction) -> list[SyncResult]:
        return [r for r in self.results if r.action == action]

    @property
    def created_local(self) -> list[SyncResult]:
        """Results where action is CREATE_LOCAL."""
        return self._with_action(SyncAction.CREATE_LOCAL)

    @property
    def created_remote(self) -> list[SyncResult]:
        """Results where action is CREATE_REMOTE."""
        return self._with_action(SyncAction.CREATE_REMOTE)

    @property
    def updated_local(self) -> list[SyncResult]:
        """Results where action is UPDATE_LOCAL."""
        return self._with_action(SyncAction.UPDATE_LOCAL)

    @property
    def updated_remote(self) -> list[SyncResult]:
        """Results where action is UPDATE_REMOTE."""
        return self._with_action(SyncAction.UPDATE_REMOTE)

    @property
    def deleted_local(self) -> list[SyncResult]:
        """Results where action is DELETE_LOCAL."""
        return self._with_action(SyncAction.DELETE_LOCAL)

    @property
    def deleted_remote(self) -> list[SyncResult]:
        """Results where action is DELETE_REMOTE."""
        return self._with_action(SyncAction.DELETE_REMOTE)

    @property
    def errors(self) -> list[SyncResult]:
        """Results where success is False."""
        return [r for r in self.results if not r.success]

    @property
    def success(self) -> bool:
        return not self.errors and not self.errors_extra

    @property
    def error_message(self) -> str:
        """All failure messages joined into one string."""
        messages = list(self.errors_extra)
        messages.extend(r.error or "unknown error" for r in self.errors)
        return "; ".join(messages)

    def executed(self) -> dict[str, int]:
        """Successful operation counts per action value."""
        counts = {action.value: 0 for action in SyncAction}
        for r in self.results:
            if r.success:
                counts[r.action.value] += 1
        return counts

    def summary(self) -> str:
        """Format a human-readable summary of the sync run.

        Returns:
            Multi-line summary string with planned/executed counts.
        """
        executed = self.executed()
        header = "Sync report" + (" (dry run)" if self.dry_run else "")
        lines = [header]
        for action in SyncAction:
            planned = self.planned.get(action.value, 0)
            lines.append(
                f"  {action.value:<14} planned {planned:>3}, "
                f"executed {executed[action.value]:>3}"
            )
        lines.append(f"  Errors:        {len(self.errors) + len(self.errors_extra)}")
        return "\n".join(lines)
