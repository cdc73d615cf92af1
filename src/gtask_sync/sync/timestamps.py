"""Timestamp helpers used at the persistence and wire boundaries.

Internally the sync engine works with timezone-aware ``datetime`` objects.
They are serialised to a fixed-width RFC 3339 UTC string
(``YYYY-MM-DDTHH:MM:SS.mmmZ``) only when written to the mapping file or
sent to the Tasks API, so lexicographic order of the stored strings equals
chronological order.
"""

from __future__ import annotations

from datetime import datetime, timezone

_WIRE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime (millisecond precision)."""
    return to_millis(datetime.now(timezone.utc))


def to_millis(value: datetime) -> datetime:
    """Drop sub-millisecond digits, the precision of the stored format."""
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an RFC 3339 string into an aware UTC datetime.

    Accepts a trailing ``Z`` or an explicit offset and any number of
    fractional digits.  Returns ``None`` for empty or unparseable input.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"

    # Normalise fractional seconds to six digits for fromisoformat().
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        while rest and rest[0].isdigit():
            digits += rest[0]
            rest = rest[1:]
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Serialise *value* to the fixed-width UTC wire format."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    millis = value.microsecond // 1000
    return f"{value.strftime(_WIRE_FORMAT)}.{millis:03d}Z"


def normalize_timestamp(value: str | None) -> str | None:
    """Re-serialise an RFC 3339 string to the fixed-width format.

    Unparseable values are returned unchanged so nothing is silently lost.
    """
    parsed = parse_timestamp(value)
    if parsed is None:
        return value
    return format_timestamp(parsed)
