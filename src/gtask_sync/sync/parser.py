"""Markdown task-list parser.

Turns the lines of a Markdown file into an ordered list of ``TaskRecord``
objects.  A file looks like::

    # Groceries
    - [ ] Buy milk | 2025-01-15
      <!-- gtask:3xY9aQ2b -->
      Organic if available
      - [x] Check fridge

The first H1 heading names the task list.  Each task line may be followed
by a stable-id comment and by description lines.  Two passes then run over
the flat record list:

1. **Hierarchy** -- a task's parent is the nearest preceding task with a
   strictly smaller indent level.
2. **Position paths** -- each task gets a sibling-index chain such as
   ``[0].[1]`` whose dot count equals its nesting depth.

Nothing in this module raises on malformed input: a line that does not
match the task pattern is simply not a task.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone

from .models import TaskRecord

# Matches "- [ ] title", "- [x] title", "-[] title" and indented variants.
TASK_LINE_RE = re.compile(r"^(\s*)-\s*\[([ xX]?)\]\s*(.+)$")
# Trailing "| YYYY-MM-DD" or "| YYYY-MM-DD HH:MM" on the task content.  An
# escaped pipe ("\|") is part of the title.
DUE_SUFFIX_RE = re.compile(
    r"^(.*?)\s*(?<!\\)\|\s*(\d{4})-(\d{2})-(\d{2})(?:\s+(\d{2}):(\d{2}))?\s*$"
)
STABLE_ID_RE = re.compile(r"^\s*<!--\s*gtask:([A-Za-z0-9_-]+)\s*-->\s*$")
H1_RE = re.compile(r"^#\s+(.+?)\s*$")
HEADING_RE = re.compile(r"^\s*#{1,6}\s")

STABLE_ID_TEMPLATE = "<!-- gtask:{} -->"
INDENT_UNIT = "  "
ESCAPE = "\\"


# ---------------------------------------------------------------------------
# Line-level helpers
# ---------------------------------------------------------------------------


def indent_width(line: str) -> int:
    """Number of leading whitespace columns (a tab counts as two)."""
    prefix = line[: len(line) - len(line.lstrip())]
    return len(prefix.replace("\t", INDENT_UNIT))


def indent_level_of(line: str) -> int:
    """Indent level of *line*: ``floor(leading spaces / 2)``."""
    return indent_width(line) // 2


def is_blank(line: str) -> bool:
    return not line.strip()


def is_task_line(line: str) -> bool:
    return TASK_LINE_RE.match(line) is not None


def extract_stable_id(line: str) -> str | None:
    """Return the id from a ``<!-- gtask:ID -->`` line, else ``None``."""
    match = STABLE_ID_RE.match(line)
    return match.group(1) if match else None


def stable_id_line(stable_id: str, indent_level: int) -> str:
    """Render the id comment line for a task at *indent_level*."""
    return INDENT_UNIT * indent_level + STABLE_ID_TEMPLATE.format(stable_id)


def is_structural(text: str) -> bool:
    """Whether *text* would parse as a task, id comment or heading."""
    return bool(
        is_task_line(text) or extract_stable_id(text) or HEADING_RE.match(text)
    )


def extract_list_name(lines: list[str]) -> str | None:
    """Return the text of the first H1 heading, or ``None``."""
    for line in lines:
        match = H1_RE.match(line)
        if match:
            return match.group(1)
    return None


# ---------------------------------------------------------------------------
# Escaping
# ---------------------------------------------------------------------------


def escape_title(title: str) -> str:
    """Escape pipes so no title can be read back as a due-date suffix.

    Outer whitespace is dropped; a task line cannot carry it.
    """
    return title.strip().replace("|", ESCAPE + "|")


def unescape_title(text: str) -> str:
    return text.replace(ESCAPE + "|", "|")


def _needs_escape(text: str) -> bool:
    if is_structural(text):
        return True
    return text.startswith(ESCAPE) and _needs_escape(text[len(ESCAPE):])


def escape_description_line(text: str) -> str:
    """Prefix a description line that would otherwise parse as structure.

    A line that already starts with the escape character in front of such
    text gets another one, so ``unescape_description_line`` always gives
    back the original.
    """
    text = text.strip()
    return ESCAPE + text if _needs_escape(text) else text


def unescape_description_line(text: str) -> str:
    text = text.strip()
    if text.startswith(ESCAPE) and _needs_escape(text[len(ESCAPE):]):
        return text[len(ESCAPE):]
    return text


# ---------------------------------------------------------------------------
# Due dates
# ---------------------------------------------------------------------------


def parse_due(
    year: str, month: str, day: str,
    hour: str | None = None, minute: str | None = None,
) -> datetime | None:
    """Build a UTC datetime from date/time parts; ``None`` if invalid."""
    try:
        return datetime(
            int(year), int(month), int(day),
            int(hour or 0), int(minute or 0),
            tzinfo=timezone.utc,
        )
    except ValueError:
        return None


def format_due(due: datetime) -> str:
    """Render a due timestamp as ``YYYY-MM-DD`` or ``YYYY-MM-DD HH:MM``.

    The time is omitted when it is exactly midnight UTC.
    """
    due = due.astimezone(timezone.utc)
    text = due.strftime("%Y-%m-%d")
    if (due.hour, due.minute) != (0, 0):
        text += due.strftime(" %H:%M")
    return text


def split_due_suffix(content: str) -> tuple[str, datetime | None]:
    """Split ``"Title | 2025-01-15"`` into title and due timestamp.

    If the suffix is missing or malformed the whole content, pipes
    included, is the title.  Escaped pipes in the title are unescaped.
    """
    match = DUE_SUFFIX_RE.match(content)
    if match:
        due = parse_due(*match.group(2, 3, 4, 5, 6))
        if due is not None:
            return unescape_title(match.group(1).strip()), due
    return unescape_title(content.strip()), None


def parse_task_line(
    line: str,
) -> tuple[int, bool, str, datetime | None] | None:
    """Parse one task line.

    Returns:
        ``(indent_level, completed, title, due)`` or ``None`` when the line
        is not a task.
    """
    match = TASK_LINE_RE.match(line)
    if not match:
        return None
    indent, checkbox, content = match.groups()
    title, due = split_due_suffix(content)
    level = len(indent.replace("\t", INDENT_UNIT)) // 2
    return level, checkbox.lower() == "x", title, due


# ---------------------------------------------------------------------------
# Task blocks
# ---------------------------------------------------------------------------


def parse_single_task(
    lines: list[str], start: int
) -> tuple[TaskRecord | None, int]:
    """Parse the task starting at ``lines[start]``.

    Picks up an optional stable-id line directly below the task and any
    description lines that follow.  At most one blank line may precede the
    first description line; a second blank line, a less-indented line, a
    heading or another task ends the description.  Escaped description
    lines are unescaped.

    Returns:
        ``(record, consumed_line_count)``; ``(None, 0)`` if the line is not
        a task.
    """
    parsed = parse_task_line(lines[start])
    if parsed is None:
        return None, 0
    level, completed, title, due = parsed

    record = TaskRecord(
        title=title,
        completed=completed,
        due=due,
        indent_level=level,
        line_number=start,
    )

    j = start + 1
    if j < len(lines):
        stable_id = extract_stable_id(lines[j])
        if stable_id:
            record.stable_id = stable_id
            j += 1
    consumed_to = j

    parts: list[str] = []
    blank_seen = False
    while j < len(lines):
        line = lines[j]
        if is_blank(line):
            if parts or blank_seen:
                break
            blank_seen = True
            j += 1
            continue
        if (
            is_task_line(line)
            or extract_stable_id(line)
            or HEADING_RE.match(line)
            or indent_level_of(line) < level
        ):
            break
        parts.append(unescape_description_line(line))
        j += 1
        consumed_to = j

    if parts:
        record.description = "\n".join(parts)
    return record, consumed_to - start


def task_block_end(lines: list[str], start: int) -> int:
    """Return the index just past the block of the task at ``lines[start]``.

    The block is the task line, its id line, its description and everything
    indented deeper below it (subtasks and their own lines).  A blank line
    belongs to the block only when deeper-indented content follows it.
    """
    _, consumed = parse_single_task(lines, start)
    level = indent_level_of(lines[start])
    end = start + max(consumed, 1)
    i = end
    while i < len(lines):
        line = lines[i]
        if is_blank(line):
            i += 1
            continue
        if HEADING_RE.match(line) or indent_level_of(line) <= level:
            break
        i += 1
        end = i
    return end


# ---------------------------------------------------------------------------
# Passes
# ---------------------------------------------------------------------------


def build_hierarchy(records: list[TaskRecord]) -> None:
    """Set ``parent_index`` from indent levels (in place)."""
    stack: list[tuple[int, int]] = []  # (indent_level, index)
    for index, record in enumerate(records):
        while stack and stack[-1][0] >= record.indent_level:
            stack.pop()
        record.parent_index = stack[-1][1] if stack else None
        stack.append((record.indent_level, index))


def build_position_paths(records: list[TaskRecord]) -> None:
    """Assign ``position_path`` from the parent links (in place).

    Requires ``build_hierarchy`` to have run; parents always precede their
    children so a single forward pass suffices.
    """
    top_level = 0
    child_counts: dict[int, int] = {}
    for record in records:
        parent = record.parent_index
        if parent is None:
            record.position_path = f"[{top_level}]"
            top_level += 1
        else:
            sibling = child_counts.get(parent, 0)
            child_counts[parent] = sibling + 1
            record.position_path = (
                f"{records[parent].position_path}.[{sibling}]"
            )


def parse_tasks(
    lines: list[str], file_path: str | None = None
) -> list[TaskRecord]:
    """Parse all tasks in *lines* and run the hierarchy and path passes."""
    records: list[TaskRecord] = []
    i = 0
    while i < len(lines):
        record, consumed = parse_single_task(lines, i)
        if record is None:
            i += 1
            continue
        record.file_path = file_path
        records.append(record)
        i += consumed

    build_hierarchy(records)
    build_position_paths(records)
    return records


def parse_document(
    lines: list[str], file_path: str | None = None
) -> tuple[str | None, list[TaskRecord]]:
    """Return ``(list_name, records)`` for a whole Markdown file."""
    return extract_list_name(lines), parse_tasks(lines, file_path)


def find_record(
    records: list[TaskRecord], stable_id: str
) -> TaskRecord | None:
    """Return the record carrying *stable_id*, if any."""
    for record in records:
        if record.stable_id == stable_id:
            return record
    return None
