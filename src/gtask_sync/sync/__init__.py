"""Two-way sync between Markdown task lists and Google Tasks.

Architecture
------------
Every Markdown task carries a **stable id** embedded as an HTML comment
below its line.  A persisted **identity mapping** ties each stable id to a
remote task id plus the remote ``updated`` timestamp seen at the last sync.
Each run diffs the freshly parsed Markdown against a fresh remote snapshot
through that mapping.

Modules:

- ``parser``    -- Markdown lines to ``TaskRecord`` lists.
- ``mapping``   -- ``TaskMapping`` and ``MappingStore``: identity mapping.
- ``matcher``   -- Identity matchers (stable id, title, position).
- ``resolver``  -- Completion conflict strategies.
- ``planner``   -- ``SyncPlanner``: snapshot diff to ``SyncPlan``.
- ``executor``  -- ``SyncExecutor``: phased plan execution.
- ``writer``    -- ``TextWriter``: remote tasks back to Markdown.
- ``engine``    -- ``SyncEngine``: runs all lists and saves the mapping.
- ``models``    -- Records, operations, results and reports.
- ``reporter``  -- Human-readable and JSON report formatting.

Usage example
-------------
::

    from gtask_sync.config_schema import resolve_config
    from gtask_sync.core.client import TasksClient
    from gtask_sync.sync import SyncEngine, format_sync_report

    config = resolve_config()  # also reads .env
    engine = SyncEngine(client=TasksClient(config), config=config)

    # Dry-run first to preview changes
    print(format_sync_report(engine.run(dry_run=True)))

    report = engine.run()
    print(format_sync_report(report))
"""

from .engine import SyncEngine, SyncInProgressError
from .mapping import MappingStore, TaskMapping
from .models import (
    RemoteTask,
    SyncAction,
    SyncOperation,
    SyncPlan,
    SyncReport,
    SyncResult,
    TaskRecord,
)
from .parser import parse_document, parse_tasks
from .planner import SyncPlanner
from .reporter import (
    format_dry_run_preview,
    format_sync_report,
    report_to_json,
)

__all__ = [
    "MappingStore",
    "RemoteTask",
    "SyncAction",
    "SyncEngine",
    "SyncInProgressError",
    "SyncOperation",
    "SyncPlan",
    "SyncPlanner",
    "SyncReport",
    "SyncResult",
    "TaskMapping",
    "TaskRecord",
    "format_dry_run_preview",
    "format_sync_report",
    "parse_document",
    "parse_tasks",
    "report_to_json",
]
