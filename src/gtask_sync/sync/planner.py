"""Sync planner: diff Markdown records against a remote snapshot.

``SyncPlanner.plan()`` looks at one list at a time and returns a
``SyncPlan``.  Per Markdown task:

1. Find its remote counterpart: through the mapping entry of its stable
   id, or, when no entry exists, through the fallback matchers.
2. Both sides exist: a completion mismatch is handed to the conflict
   resolver (``UPDATE_LOCAL`` or ``UPDATE_REMOTE``); otherwise a title,
   description or due-date difference means ``UPDATE_REMOTE``.
3. Entry exists but the remote task is gone: a completed task under the
   keep-completed policy is flagged ``deleted_from_google`` and kept;
   anything else becomes ``DELETE_LOCAL``.
4. Nothing matched: ``CREATE_REMOTE``.

Remote tasks no Markdown task or mapping entry refers to become
``CREATE_LOCAL``; mapping entries whose task vanished from the Markdown
become ``DELETE_REMOTE`` when the remote task still exists.

Fallback matches that need no operation are listed in ``SyncPlan.matched``
and registered by the executor once their stable id is in the file.
Planning touches the mapping only to set the deleted-from-remote flag.
"""

from __future__ import annotations

import logging
from typing import Callable

from .mapping import TaskMapping, generate_stable_id
from .matcher import (
    MatchContext,
    Matcher,
    PositionMatcher,
    StableIdMatcher,
    create_matchers,
)
from .models import (
    RemoteTask,
    SyncAction,
    SyncOperation,
    SyncPlan,
    TaskRecord,
)
from .resolver import REMOTE, ConflictResolver, TimestampResolver

logger = logging.getLogger(__name__)


def normalize_notes(text: str | None) -> str | None:
    """Stripped non-empty lines joined by ``\\n``; ``None`` when empty."""
    if not text:
        return None
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return "\n".join(lines) or None


def fields_differ(record: TaskRecord, remote: RemoteTask) -> bool:
    """Whether title, description or due date differ.

    Titles compare without outer whitespace, which a task line cannot
    hold.  Due dates compare by calendar day: the service stores dates only.
    """
    if record.title != remote.title.strip():
        return True
    if normalize_notes(record.description) != normalize_notes(remote.notes):
        return True
    local_due = record.due.date() if record.due else None
    remote_due = remote.due.date() if remote.due else None
    return local_due != remote_due


class SyncPlanner:
    """Plan the operations that bring one list into agreement.

    Args:
        resolver: Decides completion conflicts; timestamp-based by default.
        keep_completed: Keep completed Markdown tasks whose remote task was
            deleted, instead of deleting them locally.
        match_strategies: Ordered fallback matchers for tasks without a
            mapping entry.
        id_factory: Generates stable ids for tasks that have none.
    """

    def __init__(
        self,
        resolver: ConflictResolver | None = None,
        keep_completed: bool = True,
        match_strategies: list[str] | tuple[str, ...] = ("title", "position"),
        id_factory: Callable[[], str] = generate_stable_id,
    ) -> None:
        self._resolver = resolver or TimestampResolver()
        self._keep_completed = keep_completed
        self._primary = StableIdMatcher()
        self._fallbacks = create_matchers(match_strategies)
        self._id_factory = id_factory

    def plan(
        self,
        list_name: str,
        records: list[TaskRecord],
        remote_tasks: list[RemoteTask],
        mapping: TaskMapping,
        allow_position_match: bool = True,
    ) -> SyncPlan:
        """Build the plan for one list.

        Args:
            list_name: Name of the list.
            records: Parsed Markdown records, in document order.  Records
                without a stable id get one assigned in place.
            remote_tasks: Current remote snapshot of the list.
            mapping: Shared identity mapping.
            allow_position_match: Disable the position matcher when the
                list's position paths are not unique (several files).

        Returns:
            The populated ``SyncPlan``.
        """
        plan = SyncPlan(list_name=list_name, records=records)
        self._assign_stable_ids(plan, mapping)

        context = MatchContext(records, remote_tasks, mapping, list_name)
        fallbacks = [
            m for m in self._fallbacks
            if allow_position_match or not isinstance(m, PositionMatcher)
        ]
        seen_ids: set[str] = set()

        for index, record in enumerate(records):
            stable_id = _stable_id(record)
            seen_ids.add(stable_id)

            entry = mapping.get(stable_id)
            if entry is not None and entry.get("list_name") != list_name:
                # Task moved here from another list; the old list deletes
                # its remote copy and this one creates a fresh one.
                entry = None

            if entry is not None:
                remote = self._primary.match(record, context)
                if remote is not None:
                    context.claim(remote)
                    self._plan_existing(plan, index, record, remote, mapping, True)
                else:
                    self._plan_remote_gone(plan, index, record, entry, mapping)
                continue

            remote = self._fallback_match(record, context, fallbacks)
            if remote is not None:
                context.claim(remote)
                self._plan_existing(plan, index, record, remote, mapping, False)
                continue

            plan.add(
                SyncOperation(
                    action=SyncAction.CREATE_REMOTE,
                    list_name=list_name,
                    stable_id=stable_id,
                    record_index=index,
                    title=record.title,
                )
            )

        self._plan_create_local(plan, context)
        self._plan_delete_remote(plan, context, seen_ids)

        logger.debug("Planned %s: %s", list_name, plan.counts())
        return plan

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _assign_stable_ids(self, plan: SyncPlan, mapping: TaskMapping) -> None:
        """Give every record a unique stable id.

        A record without an id, or repeating an id already seen in this
        list (a copied task line), gets a fresh one queued for embedding.
        """
        seen: set[str] = set()
        for index, record in enumerate(plan.records):
            if record.stable_id and record.stable_id not in seen:
                seen.add(record.stable_id)
                continue
            new_id = self._id_factory()
            while new_id in seen or new_id in mapping:
                new_id = self._id_factory()
            record.stable_id = new_id
            seen.add(new_id)
            plan.new_ids.append(index)

    def _fallback_match(
        self,
        record: TaskRecord,
        context: MatchContext,
        fallbacks: list[Matcher],
    ) -> RemoteTask | None:
        for matcher in fallbacks:
            remote = matcher.match(record, context)
            if remote is not None:
                logger.debug(
                    "Matched '%s' to remote %s by %s",
                    record.title, remote.id, matcher.name,
                )
                return remote
        return None

    def _plan_existing(
        self,
        plan: SyncPlan,
        index: int,
        record: TaskRecord,
        remote: RemoteTask,
        mapping: TaskMapping,
        has_entry: bool,
    ) -> None:
        stable_id = _stable_id(record)
        action: SyncAction | None = None

        if record.completed != remote.completed:
            stored = mapping.get_remote_updated(stable_id) if has_entry else None
            winner = self._resolver.resolve(record, remote, stored)
            action = (
                SyncAction.UPDATE_LOCAL if winner == REMOTE
                else SyncAction.UPDATE_REMOTE
            )
        elif fields_differ(record, remote):
            action = SyncAction.UPDATE_REMOTE

        if action is None:
            if not has_entry:
                plan.matched.append((index, remote))
            return

        plan.add(
            SyncOperation(
                action=action,
                list_name=plan.list_name,
                stable_id=stable_id,
                record_index=index,
                remote=remote,
                remote_id=remote.id,
                title=record.title,
            )
        )

    def _plan_remote_gone(
        self,
        plan: SyncPlan,
        index: int,
        record: TaskRecord,
        entry: dict,
        mapping: TaskMapping,
    ) -> None:
        stable_id = _stable_id(record)
        if entry.get("deleted_from_google", False):
            return
        if record.completed and self._keep_completed:
            logger.info(
                "Keeping completed task '%s' deleted from remote", record.title
            )
            mapping.mark_deleted_remote(stable_id)
            return
        plan.add(
            SyncOperation(
                action=SyncAction.DELETE_LOCAL,
                list_name=plan.list_name,
                stable_id=stable_id,
                record_index=index,
                remote_id=entry.get("google_id"),
                title=record.title,
            )
        )

    def _plan_create_local(self, plan: SyncPlan, context: MatchContext) -> None:
        for remote in context.ordered_remote:
            if remote.id in context.claimed:
                continue
            if remote.id in context.mapped_remote_ids:
                continue
            plan.add(
                SyncOperation(
                    action=SyncAction.CREATE_LOCAL,
                    list_name=plan.list_name,
                    remote=remote,
                    remote_id=remote.id,
                    title=remote.title,
                )
            )

    def _plan_delete_remote(
        self, plan: SyncPlan, context: MatchContext, seen_ids: set[str]
    ) -> None:
        entries = context.mapping.entries_for_list(plan.list_name)
        for stable_id, entry in entries.items():
            if stable_id in seen_ids:
                continue
            if entry.get("deleted_from_google", False):
                continue
            remote = context.remote_by_id.get(entry.get("google_id"))
            if remote is None:
                continue
            plan.add(
                SyncOperation(
                    action=SyncAction.DELETE_REMOTE,
                    list_name=plan.list_name,
                    stable_id=stable_id,
                    remote_id=remote.id,
                    title=remote.title,
                )
            )


def _stable_id(record: TaskRecord) -> str:
    if record.stable_id is None:
        raise ValueError(f"Task '{record.title}' has no stable id")
    return record.stable_id
