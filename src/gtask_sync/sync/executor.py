"""Sync executor: apply a ``SyncPlan`` to the remote service and Markdown.

Phases run in a fixed order; each one waits for all of its operations to
settle before the next starts:

0. Embed newly generated stable ids into the Markdown files, so that every
   later local rewrite can find its task by id.  Fallback matches that
   needed no operation are registered in the mapping here.  A record whose
   id could not be written gets no mapping entry and none of its
   operations run this time.
1. ``UPDATE_REMOTE`` -- concurrent PATCH calls.
2. ``UPDATE_LOCAL`` -- one read-modify-write per file flipping checkboxes.
3. ``DELETE_REMOTE`` (concurrent) and ``DELETE_LOCAL`` (one
   read-modify-write per file removing whole task blocks).
4. ``CREATE_REMOTE`` pass 1 -- top-level tasks, concurrently.
5. ``CREATE_REMOTE`` pass 2 -- subtasks, parented under the remote id of
   their top-level ancestor.  A subtask whose ancestor has no remote id
   fails; it is never created top-level.
6. ``CREATE_LOCAL`` -- the Text Writer merges all remote-only tasks into
   the list's file in one rewrite.

Every operation failure becomes a ``SyncResult(success=False)``; nothing
aborts its siblings.  Mapping entries are updated as operations succeed and
orphans are cleaned up at the end.  The mapping is not saved here.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

from pydantic import BaseModel

from ..core.async_utils import gather_settled, run_sync_limited
from .mapping import TaskMapping, generate_stable_id
from .models import (
    STATUS_COMPLETED,
    STATUS_NEEDS_ACTION,
    SyncAction,
    SyncOperation,
    SyncPlan,
    SyncResult,
    TaskRecord,
)
from .parser import (
    STABLE_ID_TEMPLATE,
    extract_list_name,
    extract_stable_id,
    find_record,
    parse_task_line,
    parse_tasks,
    task_block_end,
)
from .timestamps import format_timestamp, parse_timestamp
from .writer import TextWriter, normalize_filename

logger = logging.getLogger(__name__)

_CHECKBOX_RE = re.compile(r"\[[ xX]?\]")


class TasksService(Protocol):
    """The remote calls the executor needs."""

    def create_task(
        self, list_id: str, body: dict[str, Any], parent_id: str | None = None
    ) -> dict: ...

    def update_task(
        self, list_id: str, task_id: str, fields: dict[str, Any]
    ) -> dict: ...

    def delete_task(self, list_id: str, task_id: str) -> None: ...


class LineStore(Protocol):
    """Whole-file line access to Markdown."""

    def read(self, path: str | Path) -> list[str]: ...

    def write(self, path: str | Path, lines: list[str]) -> None: ...


class ExecutionOutcome(BaseModel):
    """What one list's execution produced.

    Attributes:
        results: One result per attempted operation.
        errors: Failures not tied to a single operation.
        removed_orphans: Mapping entries dropped by the final cleanup.
    """

    results: list[SyncResult] = []
    errors: list[str] = []
    removed_orphans: int = 0


def task_body(record: TaskRecord) -> dict[str, Any]:
    """Remote task fields for a Markdown record.

    ``notes`` and ``due`` are ``None`` when empty so an update clears them.
    """
    return {
        "title": record.title,
        "status": STATUS_COMPLETED if record.completed else STATUS_NEEDS_ACTION,
        "notes": record.description or None,
        "due": format_timestamp(record.due) if record.due else None,
    }


def top_level_ancestor(records: list[TaskRecord], index: int) -> int:
    """Index of the top-level task that *index* descends from."""
    parent = records[index].parent_index
    while parent is not None:
        index = parent
        parent = records[index].parent_index
    return index


def set_checkbox(line: str, completed: bool) -> str:
    """Rewrite the checkbox of a task line."""
    return _CHECKBOX_RE.sub("[x]" if completed else "[ ]", line, count=1)


def merge_spans(spans: list[tuple[int, int]]) -> list[tuple[int, int]]:
    """Sort and merge overlapping ``[start, end)`` spans."""
    merged: list[tuple[int, int]] = []
    for start, end in sorted(spans):
        if merged and start < merged[-1][1]:
            merged[-1] = (merged[-1][0], max(end, merged[-1][1]))
        else:
            merged.append((start, end))
    return merged


def _record_index(op: SyncOperation) -> int:
    if op.record_index is None:
        raise ValueError(f"{op.action.value} for '{op.title}' has no record")
    return op.record_index


class SyncExecutor:
    """Apply plans for single lists.

    Args:
        client: Remote service (a ``TasksClient`` in production).
        text_store: Markdown line store.
        markdown_dir: Directory for files created for new lists.
        writer: Renders remote-only tasks; a ``TextWriter`` by default.
        id_factory: Generates stable ids for tasks written locally.
    """

    def __init__(
        self,
        client: TasksService,
        text_store: LineStore,
        markdown_dir: Path,
        writer: TextWriter | None = None,
        id_factory: Callable[[], str] = generate_stable_id,
    ) -> None:
        self._client = client
        self._store = text_store
        self._markdown_dir = Path(markdown_dir)
        self._writer = writer or TextWriter()
        self._id_factory = id_factory

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def execute(
        self, plan: SyncPlan, list_id: str, mapping: TaskMapping
    ) -> ExecutionOutcome:
        """Run all phases of *plan* against list *list_id*.

        Args:
            plan: The list's plan, as built by ``SyncPlanner.plan()``.
            list_id: Remote id of the list.
            mapping: Shared identity mapping, updated in place.

        Returns:
            An ``ExecutionOutcome`` with per-operation results.
        """
        outcome = ExecutionOutcome()
        unembedded = self._embed_stable_ids(plan, outcome)
        self._register_matches(plan, mapping, unembedded)

        outcome.results.extend(
            await self._update_remote(plan, list_id, mapping, unembedded)
        )
        outcome.results.extend(self._update_local(plan, mapping, unembedded))

        delete_results, kept_ids = await self._delete_remote(
            plan, list_id, mapping
        )
        outcome.results.extend(delete_results)
        outcome.results.extend(self._delete_local(plan, mapping))

        outcome.results.extend(
            await self._create_remote(plan, list_id, mapping, unembedded)
        )

        written_ids = self._create_local(plan, mapping, outcome)

        current = {r.stable_id for r in plan.records if r.stable_id}
        outcome.removed_orphans = mapping.cleanup(
            plan.list_name, current | written_ids | kept_ids
        )
        return outcome

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _result(
        op: SyncOperation, success: bool, error: str | None = None
    ) -> SyncResult:
        return SyncResult(
            list_name=op.list_name,
            action=op.action,
            title=op.title,
            stable_id=op.stable_id,
            success=success,
            error=error,
        )

    def _failed(self, op: SyncOperation, exc: object) -> SyncResult:
        return self._result(op, False, f"{op.title}: {exc}")

    async def _run_concurrent(
        self,
        ops: list[SyncOperation],
        handler: Callable[[SyncOperation], Awaitable[None]],
    ) -> list[SyncResult]:
        """Run *handler* for every op concurrently and collect results."""
        outcomes = await gather_settled([handler(op) for op in ops])
        results: list[SyncResult] = []
        for op, outcome in zip(ops, outcomes):
            if isinstance(outcome, Exception):
                logger.error(
                    "%s failed for '%s': %s", op.action.value, op.title, outcome
                )
                results.append(self._failed(op, outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(self._result(op, True))
        return results

    @staticmethod
    def _register(
        plan: SyncPlan,
        index: int,
        remote_id: str,
        mapping: TaskMapping,
        remote_updated: datetime | None,
    ) -> None:
        record = plan.records[index]
        parent_id = None
        if record.parent_index is not None:
            parent_id = plan.records[record.parent_index].stable_id
        mapping.register(
            record.stable_id or "",
            remote_id,
            plan.list_name,
            record.file_path,
            parent_id,
            remote_updated,
        )

    def _embedded(
        self,
        ops: list[SyncOperation],
        unembedded: set[int],
        results: list[SyncResult],
    ) -> list[SyncOperation]:
        """Ops whose record id is in its file; the rest fail into *results*."""
        kept: list[SyncOperation] = []
        for op in ops:
            if _record_index(op) in unembedded:
                results.append(self._failed(op, "stable id could not be written"))
            else:
                kept.append(op)
        return kept

    @staticmethod
    def _by_file(
        plan: SyncPlan, ops: list[SyncOperation]
    ) -> dict[str, list[SyncOperation]]:
        groups: dict[str, list[SyncOperation]] = defaultdict(list)
        for op in ops:
            record = plan.records[_record_index(op)]
            groups[record.file_path or ""].append(op)
        return groups

    # ------------------------------------------------------------------
    # Phase 0: stable id embedding
    # ------------------------------------------------------------------

    def _embed_stable_ids(
        self, plan: SyncPlan, outcome: ExecutionOutcome
    ) -> set[int]:
        """Write generated ids below their task lines, bottom-up per file.

        An id line already below the task (a copied task) is replaced.

        Returns:
            Record indices whose id could not be written.
        """
        by_file: dict[str, list[int]] = defaultdict(list)
        for index in plan.new_ids:
            by_file[plan.records[index].file_path or ""].append(index)

        failed: set[int] = set()
        for file_path, indices in by_file.items():
            try:
                if not file_path:
                    raise ValueError("task has no source file")
                lines = self._store.read(file_path)
                ordered = sorted(
                    indices,
                    key=lambda i: plan.records[i].line_number,
                    reverse=True,
                )
                for index in ordered:
                    record = plan.records[index]
                    n = record.line_number
                    parsed = parse_task_line(lines[n]) if n < len(lines) else None
                    if parsed is None or parsed[2] != record.title:
                        raise ValueError(
                            f"line {n + 1} no longer holds task '{record.title}'"
                        )
                    indent = lines[n][: len(lines[n]) - len(lines[n].lstrip())]
                    id_line = indent + STABLE_ID_TEMPLATE.format(record.stable_id)
                    if n + 1 < len(lines) and extract_stable_id(lines[n + 1]):
                        lines[n + 1] = id_line
                    else:
                        lines.insert(n + 1, id_line)
                self._store.write(file_path, lines)
                logger.debug(
                    "Embedded %d stable ids in %s", len(indices), file_path
                )
            except Exception as exc:
                logger.error("Cannot embed stable ids in %s: %s", file_path, exc)
                outcome.errors.append(
                    f"{file_path}: cannot embed stable ids: {exc}"
                )
                failed.update(indices)
        return failed

    def _register_matches(
        self, plan: SyncPlan, mapping: TaskMapping, unembedded: set[int]
    ) -> None:
        """Map fallback matches that needed no operation."""
        for index, remote in plan.matched:
            if index in unembedded:
                logger.debug(
                    "Not mapping '%s': its stable id is not in the file",
                    plan.records[index].title,
                )
                continue
            self._register(plan, index, remote.id, mapping, remote.updated)

    # ------------------------------------------------------------------
    # Phase 1: remote updates
    # ------------------------------------------------------------------

    async def _update_remote(
        self,
        plan: SyncPlan,
        list_id: str,
        mapping: TaskMapping,
        unembedded: set[int],
    ) -> list[SyncResult]:
        async def handle(op: SyncOperation) -> None:
            index = _record_index(op)
            remote_id = op.remote_id or ""
            updated = await run_sync_limited(
                self._client.update_task,
                list_id,
                remote_id,
                task_body(plan.records[index]),
            )
            stamp = parse_timestamp((updated or {}).get("updated"))
            self._register(plan, index, remote_id, mapping, stamp)

        results: list[SyncResult] = []
        ops = self._embedded(
            plan.by_action(SyncAction.UPDATE_REMOTE), unembedded, results
        )
        results.extend(await self._run_concurrent(ops, handle))
        return results

    # ------------------------------------------------------------------
    # Phase 2: local updates
    # ------------------------------------------------------------------

    def _update_local(
        self, plan: SyncPlan, mapping: TaskMapping, unembedded: set[int]
    ) -> list[SyncResult]:
        results: list[SyncResult] = []
        ops = self._embedded(
            plan.by_action(SyncAction.UPDATE_LOCAL), unembedded, results
        )
        for file_path, file_ops in self._by_file(plan, ops).items():
            done: list[SyncOperation] = []
            missing: list[SyncOperation] = []
            try:
                lines = self._store.read(file_path)
                records = parse_tasks(lines)
                for op in file_ops:
                    target = find_record(records, op.stable_id or "")
                    if target is None:
                        missing.append(op)
                        continue
                    completed = bool(op.remote and op.remote.completed)
                    lines[target.line_number] = set_checkbox(
                        lines[target.line_number], completed
                    )
                    done.append(op)
                if done:
                    self._store.write(file_path, lines)
            except Exception as exc:
                logger.error("Cannot update %s: %s", file_path, exc)
                results.extend(self._failed(op, exc) for op in file_ops)
                continue

            results.extend(
                self._failed(op, f"task not found in {file_path}")
                for op in missing
            )
            for op in done:
                self._register(
                    plan, _record_index(op), op.remote_id or "", mapping,
                    op.remote.updated if op.remote else None,
                )
                results.append(self._result(op, True))
        return results

    # ------------------------------------------------------------------
    # Phase 3: deletions
    # ------------------------------------------------------------------

    async def _delete_remote(
        self, plan: SyncPlan, list_id: str, mapping: TaskMapping
    ) -> tuple[list[SyncResult], set[str]]:
        """Delete remote tasks whose Markdown task is gone.

        Returns:
            Results, and the stable ids whose deletion failed; their entries
            must survive cleanup so the deletion is retried next run.
        """

        async def handle(op: SyncOperation) -> None:
            stable_id = op.stable_id or ""
            await run_sync_limited(
                self._client.delete_task, list_id, op.remote_id
            )
            # Another list may have re-registered the id meanwhile.
            if mapping.get_remote_id(stable_id) == op.remote_id:
                mapping.remove(stable_id)

        ops = plan.by_action(SyncAction.DELETE_REMOTE)
        results = await self._run_concurrent(ops, handle)
        kept = {
            r.stable_id for r in results if not r.success and r.stable_id
        }
        return results, kept

    def _delete_local(
        self, plan: SyncPlan, mapping: TaskMapping
    ) -> list[SyncResult]:
        results: list[SyncResult] = []
        ops = plan.by_action(SyncAction.DELETE_LOCAL)
        for file_path, file_ops in self._by_file(plan, ops).items():
            try:
                lines = self._store.read(file_path)
                records = parse_tasks(lines)
                spans: list[tuple[int, int]] = []
                for op in file_ops:
                    target = find_record(records, op.stable_id or "")
                    if target is None:
                        continue
                    start = target.line_number
                    spans.append((start, task_block_end(lines, start)))
                for start, end in reversed(merge_spans(spans)):
                    del lines[start:end]
                if spans:
                    self._store.write(file_path, lines)
            except Exception as exc:
                logger.error("Cannot delete tasks from %s: %s", file_path, exc)
                results.extend(self._failed(op, exc) for op in file_ops)
                continue

            for op in file_ops:
                mapping.remove(op.stable_id or "")
                results.append(self._result(op, True))
        return results

    # ------------------------------------------------------------------
    # Phases 4 and 5: remote creation
    # ------------------------------------------------------------------

    async def _create_remote(
        self,
        plan: SyncPlan,
        list_id: str,
        mapping: TaskMapping,
        unembedded: set[int],
    ) -> list[SyncResult]:
        records = plan.records
        results: list[SyncResult] = []
        ops = self._embedded(
            plan.by_action(SyncAction.CREATE_REMOTE), unembedded, results
        )

        created: dict[int, str] = {}

        async def create_top(op: SyncOperation) -> None:
            index = _record_index(op)
            task = await run_sync_limited(
                self._client.create_task, list_id, task_body(records[index])
            )
            created[index] = task["id"]
            self._register(
                plan, index, task["id"], mapping,
                parse_timestamp(task.get("updated")),
            )

        async def create_child(op: SyncOperation) -> None:
            index = _record_index(op)
            root = top_level_ancestor(records, index)
            parent_remote = created.get(root) or mapping.get_remote_id(
                records[root].stable_id or ""
            )
            if parent_remote is None:
                raise LookupError(
                    f"parent task '{records[root].title}' has no remote id"
                )
            task = await run_sync_limited(
                self._client.create_task,
                list_id,
                task_body(records[index]),
                parent_remote,
            )
            self._register(
                plan, index, task["id"], mapping,
                parse_timestamp(task.get("updated")),
            )

        top: list[SyncOperation] = []
        children: list[SyncOperation] = []
        for op in ops:
            if records[_record_index(op)].parent_index is None:
                top.append(op)
            else:
                children.append(op)
        results.extend(await self._run_concurrent(top, create_top))
        results.extend(await self._run_concurrent(children, create_child))
        return results

    # ------------------------------------------------------------------
    # Phase 6: local creation
    # ------------------------------------------------------------------

    def target_file(self, plan: SyncPlan) -> Path:
        """File that receives new local tasks of *plan*'s list.

        The list's first source file, or ``<markdown_dir>/<list>.md``.  When
        that name is taken by a file of another list, ``-2``, ``-3`` ...
        suffixes are tried.
        """
        for record in plan.records:
            if record.file_path:
                return Path(record.file_path)

        stem = normalize_filename(plan.list_name)
        path = self._markdown_dir / f"{stem}.md"
        counter = 2
        while True:
            lines = self._store.read(path)
            if not lines or extract_list_name(lines) == plan.list_name:
                return path
            path = self._markdown_dir / f"{stem}-{counter}.md"
            counter += 1

    def _create_local(
        self, plan: SyncPlan, mapping: TaskMapping, outcome: ExecutionOutcome
    ) -> set[str]:
        """Write remote-only tasks into the list's file.

        Returns:
            Stable ids of the tasks written.
        """
        ops = plan.by_action(SyncAction.CREATE_LOCAL)
        if not ops:
            return set()

        existing_parents = {
            entry["google_id"]: stable_id
            for stable_id, entry in mapping.entries_for_list(plan.list_name).items()
            if entry.get("google_id")
        }
        tasks = [op.remote for op in ops if op.remote is not None]
        try:
            path = self.target_file(plan)
            lines = self._store.read(path)
            result = self._writer.append_tasks(
                lines, tasks, plan.list_name, self._id_factory, existing_parents
            )
            if result.written:
                self._store.write(path, result.lines)
        except Exception as exc:
            logger.error("Cannot write new tasks for %s: %s", plan.list_name, exc)
            outcome.results.extend(self._failed(op, exc) for op in ops)
            return set()

        op_by_remote = {op.remote_id: op for op in ops}
        for item in result.written:
            mapping.register(
                item.stable_id,
                item.remote.id,
                plan.list_name,
                str(path),
                item.parent_stable_id,
                item.remote.updated,
            )
            op = op_by_remote[item.remote.id]
            outcome.results.append(
                SyncResult(
                    list_name=op.list_name,
                    action=op.action,
                    title=op.title,
                    stable_id=item.stable_id,
                    success=True,
                )
            )
        logger.info(
            "Wrote %d new tasks to %s (%d skipped)",
            len(result.written), path, len(result.skipped),
        )
        return {item.stable_id for item in result.written}
