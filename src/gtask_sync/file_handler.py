"""Local text store: encoding-aware reads and whole-file writes of Markdown.

The sync engine only ever sees lists of lines; this module turns files into
lines and back.  Reads detect the encoding with charset-normalizer and the
file is written back in the same encoding.
"""

from __future__ import annotations

import logging
from pathlib import Path

from charset_normalizer import from_bytes

logger = logging.getLogger(__name__)

# =============================================================================
# File Read/Write
# =============================================================================


def read_file_with_encoding(path: Path) -> tuple[str, str]:
    """Read a file with automatic encoding detection.

    Reads raw bytes first, then uses charset-normalizer to detect encoding.
    Defaults to UTF-8 for empty files or when detection fails.

    Args:
        path: Path to the file to read.

    Returns:
        Tuple of (content_string, detected_encoding).
    """
    raw = path.read_bytes()
    if not raw:
        return ("", "utf-8")

    result = from_bytes(raw).best()
    if result is None:
        encoding = "utf-8"
        content = raw.decode(encoding, errors="replace")
    else:
        encoding = result.encoding
        # ascii is a strict subset of utf-8
        if encoding == "ascii":
            encoding = "utf-8"
        content = str(result)
    return (content.lstrip("\ufeff"), encoding)


def write_file(path: Path, content: str, encoding: str = "utf-8") -> int:
    """Write content to a file, creating parent directories as needed.

    Returns:
        Number of bytes written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    encoded = content.encode(encoding)
    path.write_bytes(encoded)
    return len(encoded)


def split_lines(content: str) -> list[str]:
    """Split file content into lines without line terminators.

    A trailing newline does not produce an extra empty line.
    """
    return content.replace("\r\n", "\n").replace("\r", "\n").splitlines()


def join_lines(lines: list[str]) -> str:
    """Join lines into file content ending in exactly one newline."""
    if not lines:
        return ""
    return "\n".join(lines) + "\n"


# =============================================================================
# Text store
# =============================================================================


class TextStore:
    """Line-oriented access to Markdown files.

    Remembers the encoding each file was read with so a rewrite keeps it.
    """

    def __init__(self) -> None:
        self._encodings: dict[Path, str] = {}

    def read(self, path: str | Path) -> list[str]:
        """Return the lines of *path*; an empty list if it does not exist."""
        resolved = Path(path)
        if not resolved.exists():
            return []
        content, encoding = read_file_with_encoding(resolved)
        self._encodings[resolved] = encoding
        return split_lines(content)

    def write(self, path: str | Path, lines: list[str]) -> None:
        """Overwrite *path* with *lines*."""
        resolved = Path(path)
        encoding = self._encodings.get(resolved, "utf-8")
        count = write_file(resolved, join_lines(lines), encoding)
        logger.debug("Wrote %d bytes to %s", count, resolved)

    def exists(self, path: str | Path) -> bool:
        return Path(path).exists()

    def discover(self, root: str | Path) -> list[Path]:
        """Return every ``*.md`` file below *root*, sorted.

        Hidden directories (``.git``, ``.gtask`` ...) are skipped.
        """
        base = Path(root).expanduser()
        if not base.is_dir():
            logger.warning("Markdown directory %s does not exist", base)
            return []
        found = []
        for path in base.rglob("*.md"):
            relative = path.relative_to(base)
            if any(part.startswith(".") for part in relative.parts[:-1]):
                continue
            if path.is_file():
                found.append(path)
        return sorted(found)
