"""Sync report formatting functions.

Provides human-readable and machine-readable output for sync runs:

- ``format_sync_report`` -- full post-sync summary.
- ``format_dry_run_preview`` -- planned operation counts per action.
- ``report_to_json`` -- structured dict for JSON output.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import SyncReport

from .models import SyncAction

_SECTION_TITLES = {
    SyncAction.UPDATE_REMOTE: "Pushed to remote:",
    SyncAction.UPDATE_LOCAL: "Pulled into Markdown:",
    SyncAction.CREATE_REMOTE: "Created (remote):",
    SyncAction.CREATE_LOCAL: "Created (local):",
    SyncAction.DELETE_REMOTE: "Deleted (remote):",
    SyncAction.DELETE_LOCAL: "Deleted (local):",
}

# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def format_sync_report(report: SyncReport) -> str:
    """Format a complete sync report as human-readable text.

    Sections are only included when they contain at least one successful
    result.

    Args:
        report: The completed sync report.

    Returns:
        Multi-line formatted string.
    """
    if report.dry_run:
        return format_dry_run_preview(report)

    lines: list[str] = []
    lines.append(f"Sync report for {len(report.lists)} lists")
    lines.append(f"Started: {report.started_at}")
    if report.completed_at:
        lines.append(f"Completed: {report.completed_at}")
    lines.append("")

    executed = report.executed()
    lines.append(
        f"Synced {sum(executed.values())} of {sum(report.planned.values())} "
        f"planned operations: "
        f"{executed[SyncAction.UPDATE_REMOTE.value]} pushed, "
        f"{executed[SyncAction.UPDATE_LOCAL.value]} pulled, "
        f"{executed[SyncAction.CREATE_REMOTE.value] + executed[SyncAction.CREATE_LOCAL.value]} created, "
        f"{executed[SyncAction.DELETE_REMOTE.value] + executed[SyncAction.DELETE_LOCAL.value]} deleted, "
        f"{len(report.errors) + len(report.errors_extra)} errors"
    )
    lines.append("")

    for action, title in _SECTION_TITLES.items():
        done = [r for r in report.results if r.action == action and r.success]
        if not done:
            continue
        lines.append(title)
        for r in done:
            lines.append(f"  [{r.list_name}] {r.title}")
        lines.append("")

    if report.errors or report.errors_extra:
        lines.append("Errors:")
        for message in report.errors_extra:
            lines.append(f"  {message}")
        for r in report.errors:
            lines.append(f"  [{r.list_name}] {r.action.value}: {r.error}")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Dry-run preview
# ------------------------------------------------------------------


def format_dry_run_preview(report: SyncReport) -> str:
    """Format a dry-run preview of planned operation counts.

    Args:
        report: A dry-run sync report (``dry_run=True``).

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []
    lines.append("DRY RUN -- No changes will be made")
    lines.append(f"Lists: {', '.join(report.lists) or '(none)'}")
    lines.append("")

    any_planned = False
    for action in SyncAction:
        count = report.planned.get(action.value, 0)
        if not count:
            continue
        any_planned = True
        label = action.value.upper().replace("_", " ")
        lines.append(f"[{label}] {count}")

    if not any_planned:
        lines.append("No changes needed.")

    if report.errors_extra:
        lines.append("")
        lines.append("Errors:")
        for message in report.errors_extra:
            lines.append(f"  {message}")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def report_to_json(report: SyncReport) -> dict:
    """Convert a sync report to a structured dict for JSON serialisation.

    Args:
        report: The sync report.

    Returns:
        Dict with run info, planned/executed counts, and per-result details.
    """
    results_list = []
    for r in report.results:
        entry: dict = {
            "list": r.list_name,
            "title": r.title,
            "action": r.action.value,
            "success": r.success,
        }
        if r.stable_id:
            entry["stable_id"] = r.stable_id
        if r.error:
            entry["error"] = r.error
        results_list.append(entry)

    return {
        "dry_run": report.dry_run,
        "success": report.success,
        "started_at": report.started_at,
        "completed_at": report.completed_at,
        "lists": list(report.lists),
        "planned": dict(report.planned),
        "executed": report.executed(),
        "errors": report.error_message or None,
        "results": results_list,
    }
