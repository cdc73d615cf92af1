"""Conflict resolution strategies for completion-state disagreements.

When a task's checkbox and its remote status disagree, one side must win:

- ``TimestampResolver``: The remote side wins only when its ``updated``
  timestamp is strictly newer than the one stored at the last sync;
  otherwise the local edit is pushed.
- ``LocalWinsResolver``: Always picks the Markdown state.
- ``RemoteWinsResolver``: Always picks the remote state.

The ``create_resolver()`` factory maps config strategy strings to resolver
instances.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol

from .models import RemoteTask, TaskRecord
from .timestamps import to_millis

logger = logging.getLogger(__name__)

LOCAL = "local"
REMOTE = "remote"


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ConflictResolver(Protocol):
    """Protocol that all conflict resolvers must satisfy."""

    def resolve(
        self,
        record: TaskRecord,
        remote: RemoteTask,
        stored_updated: datetime | None,
    ) -> str:
        """Decide which side's completion state wins.

        Args:
            record: The Markdown task.
            remote: The remote task snapshot.
            stored_updated: Remote ``updated`` timestamp recorded at the
                last successful sync, if any.

        Returns:
            ``"local"`` or ``"remote"``.
        """
        ...  # pragma: no cover


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


class TimestampResolver:
    """Remote wins when it changed since the last sync, local otherwise."""

    def resolve(
        self,
        record: TaskRecord,
        remote: RemoteTask,
        stored_updated: datetime | None,
    ) -> str:
        if stored_updated is None or remote.updated is None:
            return LOCAL
        # The stored stamp only keeps milliseconds.
        if to_millis(remote.updated) > to_millis(stored_updated):
            logger.debug(
                "Remote change to '%s' is newer than last sync", record.title
            )
            return REMOTE
        return LOCAL


class LocalWinsResolver:
    """Always resolve in favour of the Markdown file."""

    def resolve(
        self,
        record: TaskRecord,
        remote: RemoteTask,
        stored_updated: datetime | None,
    ) -> str:
        return LOCAL


class RemoteWinsResolver:
    """Always resolve in favour of the remote service."""

    def resolve(
        self,
        record: TaskRecord,
        remote: RemoteTask,
        stored_updated: datetime | None,
    ) -> str:
        return REMOTE


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_STRATEGY_MAP: dict[str, type] = {
    "timestamp": TimestampResolver,
    "local-wins": LocalWinsResolver,
    "remote-wins": RemoteWinsResolver,
}

VALID_STRATEGIES = tuple(sorted(_STRATEGY_MAP))


def create_resolver(strategy: str) -> ConflictResolver:
    """Create a conflict resolver for the given strategy string.

    Args:
        strategy: One of ``"timestamp"``, ``"local-wins"``,
            ``"remote-wins"``.

    Returns:
        A ``ConflictResolver`` implementation instance.

    Raises:
        ValueError: If the strategy string is not recognised.
    """
    cls = _STRATEGY_MAP.get(strategy)
    if cls is None:
        raise ValueError(
            f"Unknown conflict strategy: '{strategy}'. Valid strategies: {list(VALID_STRATEGIES)}"
        )
    return cls()  # type: ignore[return-value]
