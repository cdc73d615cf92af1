"""Render remote tasks back into Markdown.

``TextWriter.append_tasks()`` turns a batch of remote-only tasks into task
lines and merges them into a file's lines in one pass:

* a task whose parent is in the same batch follows its parent's block,
  one level deeper, before the next sibling;
* a task whose parent already lives in the file is inserted at the end of
  that parent's block;
* anything else is appended at the end as a top-level task.

Titles already present in the file are skipped.  The mapping is what keeps
remote tasks from being written twice; the title check only guards against
a mapping that was lost or reset.
"""

from __future__ import annotations

import logging
import re
from typing import Callable

from pydantic import BaseModel

from .matcher import normalize_title
from .models import RemoteTask
from .parser import (
    INDENT_UNIT,
    escape_description_line,
    escape_title,
    format_due,
    parse_tasks,
    stable_id_line,
    task_block_end,
)

logger = logging.getLogger(__name__)

_INVALID_FILENAME_CHARS = re.compile(r'[/:*?"<>|\\]')
_MAX_FILENAME_LENGTH = 252


def normalize_filename(list_name: str) -> str:
    """Turn a list name into a safe file stem.

    Lower-cases, maps spaces and underscores to hyphens, strips characters
    that are invalid in file names, collapses repeated hyphens and trims
    them from both ends.  Returns ``"untitled"`` when nothing is left.
    """
    name = list_name.strip().lower()
    name = re.sub(r"[\s_]+", "-", name)
    name = _INVALID_FILENAME_CHARS.sub("", name)
    name = re.sub(r"-{2,}", "-", name).strip("-")
    if not name:
        return "untitled"
    return name[:_MAX_FILENAME_LENGTH]


def render_task(
    remote: RemoteTask, indent_level: int, stable_id: str | None = None
) -> list[str]:
    """Render one remote task as Markdown lines.

    Pipes in the title and description lines that would read as a task,
    id comment or heading are escaped, so the lines parse back to the
    same task.

    Args:
        remote: The task to render.
        indent_level: Nesting level of the task line.
        stable_id: Id to embed below the task line, if any.

    Returns:
        The task line, the id line and the description lines.
    """
    indent = INDENT_UNIT * indent_level
    checkbox = "x" if remote.completed else " "
    line = f"{indent}- [{checkbox}] {escape_title(remote.title)}"
    if remote.due is not None:
        line += f" | {format_due(remote.due)}"

    rendered = [line]
    if stable_id:
        rendered.append(stable_id_line(stable_id, indent_level))
    if remote.notes:
        for note_line in remote.notes.splitlines():
            if note_line.strip():
                rendered.append(
                    f"{indent}{INDENT_UNIT}{escape_description_line(note_line)}"
                )
    return rendered


class WrittenTask(BaseModel):
    """A remote task written into the file, with its new identity."""

    remote: RemoteTask
    stable_id: str
    parent_stable_id: str | None = None

    model_config = {"frozen": True}


class WriteOutcome(BaseModel):
    """Result of ``TextWriter.append_tasks()``.

    Attributes:
        lines: The updated file lines.
        written: Tasks added, parents before children.
        skipped: Tasks left out because their title is already present.
    """

    lines: list[str]
    written: list[WrittenTask] = []
    skipped: list[RemoteTask] = []


class TextWriter:
    """Merge remote-only tasks into Markdown lines."""

    def append_tasks(
        self,
        lines: list[str],
        tasks: list[RemoteTask],
        list_name: str,
        id_factory: Callable[[], str],
        existing_parents: dict[str, str] | None = None,
    ) -> WriteOutcome:
        """Add *tasks* to *lines*.

        Args:
            lines: Current file lines; empty for a new file.
            tasks: Remote tasks to write, parents before children.
            list_name: Used for the ``# <list>`` header of a new file.
            id_factory: Generates the stable id embedded for each task.
            existing_parents: Remote id to stable id for tasks already in
                the file, so children can be placed under them.

        Returns:
            A ``WriteOutcome`` with the new lines and what was written.
        """
        lines = list(lines)
        if not any(line.strip() for line in lines):
            lines = [f"# {list_name}", ""]

        records = parse_tasks(lines)
        present = {normalize_title(r.title) for r in records}
        record_by_id = {r.stable_id: r for r in records if r.stable_id}
        used_ids = set(record_by_id)
        existing_parents = existing_parents or {}

        batch_ids = {task.id for task in tasks}
        children: dict[str, list[RemoteTask]] = {}
        under_existing: dict[str, list[RemoteTask]] = {}
        roots: list[RemoteTask] = []
        for task in tasks:
            parent = task.parent
            if parent and parent in batch_ids:
                children.setdefault(parent, []).append(task)
            elif parent and existing_parents.get(parent) in record_by_id:
                under_existing.setdefault(existing_parents[parent], []).append(task)
            else:
                roots.append(task)

        outcome = WriteOutcome(lines=[])

        def emit(
            task: RemoteTask, level: int, parent_sid: str | None
        ) -> list[str]:
            title_key = normalize_title(task.title)
            if title_key in present:
                logger.warning(
                    "Skipping '%s': a task with this title already exists",
                    task.title,
                )
                outcome.skipped.append(task)
                # Its children still need a home.
                out: list[str] = []
                for child in children.get(task.id, []):
                    out.extend(emit(child, level, parent_sid))
                return out

            stable_id = id_factory()
            while stable_id in used_ids:
                stable_id = id_factory()
            used_ids.add(stable_id)
            present.add(title_key)
            outcome.written.append(
                WrittenTask(
                    remote=task,
                    stable_id=stable_id,
                    parent_stable_id=parent_sid,
                )
            )
            out = render_task(task, level, stable_id)
            for child in children.get(task.id, []):
                out.extend(emit(child, level + 1, stable_id))
            return out

        # Insert under existing parents, bottom-up so line numbers hold.
        targets = sorted(
            under_existing,
            key=lambda sid: record_by_id[sid].line_number,
            reverse=True,
        )
        insertions: list[tuple[int, list[str]]] = []
        for parent_sid in targets:
            parent = record_by_id[parent_sid]
            block: list[str] = []
            for task in under_existing[parent_sid]:
                block.extend(emit(task, parent.indent_level + 1, parent_sid))
            if block:
                insertions.append(
                    (task_block_end(lines, parent.line_number), block)
                )
        for position, block in insertions:
            lines[position:position] = block

        appended: list[str] = []
        for task in roots:
            appended.extend(emit(task, 0, None))
        if appended:
            while lines and not lines[-1].strip():
                lines.pop()
            if lines and lines[-1].lstrip().startswith("#"):
                lines.append("")
            lines.extend(appended)

        outcome.lines = lines
        return outcome
