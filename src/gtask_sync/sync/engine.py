"""Sync engine that coordinates a full multi-list sync run.

The ``SyncEngine`` ties together the text store, parser, mapping, planner
and executor.  It:

1. Loads the identity mapping once.
2. Discovers Markdown files and groups their tasks by list (first H1).
3. Lists the remote task lists; every remote list takes part too.
4. Resolves each list's remote id and fetches its tasks, concurrently.
5. Plans every list against its snapshot.
6. Executes all plans concurrently, sharing the one mapping.
7. Saves the mapping once, after every list has settled.
8. Builds and returns a ``SyncReport``.

Error handling is per list and per operation: one failure never aborts the
run.  A dry run stops after planning and saves nothing.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from ..core.async_utils import gather_settled, init_semaphore, run_sync_limited
from ..file_handler import TextStore
from .executor import SyncExecutor
from .mapping import MappingStore, TaskMapping
from .models import RemoteTask, SyncAction, SyncPlan, SyncReport, SyncResult, TaskRecord
from .parser import parse_document
from .planner import SyncPlanner
from .resolver import create_resolver

if TYPE_CHECKING:
    from ..config import Config
    from ..core.client import TasksClient

logger = logging.getLogger(__name__)


class SyncInProgressError(RuntimeError):
    """A sync run was started while another one is still active."""


class LocalList:
    """Tasks of one list gathered from all files that name it."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.records: list[TaskRecord] = []
        self.files: list[Path] = []

    def add_file(self, path: Path, records: list[TaskRecord]) -> None:
        """Append a file's records, re-basing their parent indices."""
        offset = len(self.records)
        for record in records:
            if record.parent_index is not None:
                record.parent_index += offset
        self.records.extend(records)
        self.files.append(path)


class SyncEngine:
    """Orchestrate a full two-way sync between Markdown files and the
    Tasks API.

    Args:
        client: ``TasksClient`` (or a compatible fake) for remote calls.
        config: Runtime configuration.
        store: Mapping persistence; defaults to ``config.mapping_file``.
        text_store: Markdown file access; a ``TextStore`` by default.
    """

    def __init__(
        self,
        client: TasksClient,
        config: Config,
        store: MappingStore | None = None,
        text_store: TextStore | None = None,
    ) -> None:
        self.client = client
        self.config = config
        self.store = store or MappingStore(Path(config.mapping_file))
        self.text_store = text_store or TextStore()
        self.markdown_dir = Path(config.markdown_dir)

        self.planner = SyncPlanner(
            resolver=create_resolver(config.conflict_strategy),
            keep_completed=config.keep_completed,
            match_strategies=config.match_strategies,
        )
        self.executor = SyncExecutor(client, self.text_store, self.markdown_dir)
        self._running = False

    # ------------------------------------------------------------------
    # Main entry points
    # ------------------------------------------------------------------

    def run(self, dry_run: bool = False) -> SyncReport:
        """Execute a full sync run in a fresh event loop.

        Args:
            dry_run: If ``True``, plan operations but do not execute them.

        Returns:
            A ``SyncReport`` summarising what was (or would be) done.
        """
        return asyncio.run(self.run_async(dry_run=dry_run))

    async def run_async(self, dry_run: bool = False) -> SyncReport:
        """Async variant of ``run()`` for callers with a running loop.

        Raises:
            SyncInProgressError: If this engine is already running.
        """
        if self._running:
            raise SyncInProgressError("A sync run is already in progress")
        self._running = True
        try:
            return await self._run(dry_run)
        finally:
            self._running = False

    async def _run(self, dry_run: bool) -> SyncReport:
        started_at = datetime.now(timezone.utc).isoformat()
        init_semaphore(self.config.max_parallel_requests)
        errors: list[str] = []

        mapping = self.store.load()
        local_lists, blocked = self._collect_local(mapping, errors)

        try:
            remote_lists = await run_sync_limited(self.client.list_lists)
        except Exception as exc:
            logger.error("Failed to list remote task lists: %s", exc)
            errors.append(f"Failed to list remote task lists: {exc}")
            return SyncReport(
                dry_run=dry_run,
                lists=sorted(local_lists),
                errors_extra=errors,
                started_at=started_at,
                completed_at=datetime.now(timezone.utc).isoformat(),
            )

        remote_ids = {item["title"]: item["id"] for item in remote_lists if item.get("title")}
        names = sorted(set(local_lists) | set(remote_ids))
        for name in names:
            local_lists.setdefault(name, LocalList(name))

        # Resolve list ids and fetch snapshots concurrently.
        names = [n for n in names if n not in blocked]
        snapshots = await gather_settled(
            [
                self._fetch_list(name, mapping, remote_ids, dry_run)
                for name in names
            ]
        )

        plans: list[tuple[SyncPlan, str | None]] = []
        for name, snapshot in zip(names, snapshots):
            if isinstance(snapshot, Exception):
                logger.error("Failed to fetch list '%s': %s", name, snapshot)
                errors.append(f"{name}: failed to fetch remote tasks: {snapshot}")
                continue
            if isinstance(snapshot, BaseException):
                raise snapshot
            list_id, remote_tasks = snapshot
            local = local_lists[name]
            plan = self.planner.plan(
                name,
                local.records,
                remote_tasks,
                mapping,
                allow_position_match=len(local.files) <= 1,
            )
            plans.append((plan, list_id))

        planned = {action.value: 0 for action in SyncAction}
        for plan, _ in plans:
            for action, count in plan.counts().items():
                planned[action] += count

        results: list[SyncResult] = []
        if not dry_run:
            outcomes = await gather_settled(
                [
                    self.executor.execute(plan, list_id or "", mapping)
                    for plan, list_id in plans
                ]
            )
            for (plan, _), outcome in zip(plans, outcomes):
                if isinstance(outcome, Exception):
                    logger.error("Sync of '%s' failed: %s", plan.list_name, outcome)
                    errors.append(f"{plan.list_name}: {outcome}")
                    continue
                if isinstance(outcome, BaseException):
                    raise outcome
                results.extend(outcome.results)
                errors.extend(outcome.errors)

            try:
                self.store.save(mapping)
            except OSError as exc:
                logger.error("Failed to save mapping: %s", exc)
                errors.append(f"Failed to save mapping: {exc}")

        report = SyncReport(
            dry_run=dry_run,
            lists=[plan.list_name for plan, _ in plans],
            planned=planned,
            results=results,
            errors_extra=errors,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc).isoformat(),
        )
        logger.info(
            "Sync finished: %d lists, %d operations planned, %d errors",
            len(report.lists), sum(planned.values()),
            len(report.errors) + len(report.errors_extra),
        )
        return report

    # ------------------------------------------------------------------
    # Local side
    # ------------------------------------------------------------------

    def _collect_local(
        self, mapping: TaskMapping, errors: list[str]
    ) -> tuple[dict[str, LocalList], set[str]]:
        """Parse every Markdown file and group its tasks by list name.

        A file that cannot be read blocks every list it held tasks for, so
        its tasks are not mistaken for local deletions.

        Returns:
            Lists keyed by name, and the names of blocked lists.
        """
        lists: dict[str, LocalList] = {}
        blocked: set[str] = set()
        for path in self.text_store.discover(self.markdown_dir):
            try:
                lines = self.text_store.read(path)
            except Exception as exc:
                logger.error("Cannot read %s: %s", path, exc)
                errors.append(f"{path}: cannot read file: {exc}")
                for entry in mapping.tasks.values():
                    if entry.get("file_path") == str(path):
                        blocked.add(entry.get("list_name", ""))
                continue

            list_name, records = parse_document(lines, str(path))
            if list_name is None:
                if records:
                    logger.debug("Skipping %s: no list heading", path)
                continue
            lists.setdefault(list_name, LocalList(list_name)).add_file(
                path, records
            )

        for name in blocked:
            lists.pop(name, None)
            logger.warning("Skipping list '%s': a source file is unreadable", name)
        return lists, blocked

    # ------------------------------------------------------------------
    # Remote side
    # ------------------------------------------------------------------

    async def _fetch_list(
        self,
        name: str,
        mapping: TaskMapping,
        remote_ids: dict[str, str],
        dry_run: bool,
    ) -> tuple[str | None, list[RemoteTask]]:
        """Resolve the list's remote id by name and fetch its tasks.

        A saved list id never outranks the name: after a remote rename the
        old name gets a list of its own.  The list is created remotely if
        needed, except in a dry run.
        """
        list_id = remote_ids.get(name)
        if list_id is None:
            if dry_run:
                return None, []
            created = await run_sync_limited(self.client.find_or_create_list, name)
            list_id = created["id"]
        mapping.set_list_id(name, list_id)

        items = await run_sync_limited(self.client.list_tasks, list_id)
        return list_id, [RemoteTask.from_api(item) for item in items]
