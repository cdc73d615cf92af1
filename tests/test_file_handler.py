"""Tests for file_handler module: encoding-aware read/write and the text store."""

import codecs
import logging

from gtask_sync.file_handler import (
    TextStore,
    join_lines,
    read_file_with_encoding,
    split_lines,
    write_file,
)

# =============================================================================
# read_file_with_encoding / write_file
# =============================================================================


class TestReadFileWithEncoding:
    """Tests for read_file_with_encoding(path)."""

    def test_utf8_file(self, tmp_path):
        f = tmp_path / "tasks.md"
        f.write_bytes("# Einkauf\n- [ ] Käse ✓\n".encode("utf-8"))

        content, encoding = read_file_with_encoding(f)

        assert content == "# Einkauf\n- [ ] Käse ✓\n"
        assert codecs.lookup(encoding).name == "utf-8"

    def test_ascii_reported_as_utf8(self, tmp_path):
        f = tmp_path / "plain.md"
        f.write_bytes(b"# List\n- [ ] plain\n")

        _, encoding = read_file_with_encoding(f)

        assert encoding == "utf-8"

    def test_bom_stripped(self, tmp_path):
        f = tmp_path / "bom.md"
        f.write_bytes(b"\xef\xbb\xbf# List\n- [ ] A\n")

        content, _ = read_file_with_encoding(f)

        assert content.startswith("# List")

    def test_empty_file(self, tmp_path):
        f = tmp_path / "empty.md"
        f.write_bytes(b"")

        assert read_file_with_encoding(f) == ("", "utf-8")


class TestWriteFile:
    """Tests for write_file(path, content, encoding)."""

    def test_returns_byte_count(self, tmp_path):
        f = tmp_path / "out.md"
        count = write_file(f, "é\n")
        assert count == 3
        assert f.read_bytes() == "é\n".encode("utf-8")

    def test_creates_parent_directories(self, tmp_path):
        f = tmp_path / "a" / "b" / "out.md"
        write_file(f, "x\n")
        assert f.read_text() == "x\n"

    def test_honours_encoding(self, tmp_path):
        f = tmp_path / "latin.md"
        write_file(f, "café\n", encoding="latin-1")
        assert f.read_bytes() == b"caf\xe9\n"


# =============================================================================
# Line helpers
# =============================================================================


class TestLineHelpers:
    def test_split_without_trailing_empty_line(self):
        assert split_lines("a\nb\n") == ["a", "b"]

    def test_split_normalises_line_endings(self):
        assert split_lines("a\r\nb\rc") == ["a", "b", "c"]

    def test_split_empty(self):
        assert split_lines("") == []

    def test_split_keeps_blank_lines(self):
        assert split_lines("a\n\nb\n") == ["a", "", "b"]

    def test_join_adds_single_trailing_newline(self):
        assert join_lines(["a", "b"]) == "a\nb\n"

    def test_join_empty(self):
        assert join_lines([]) == ""


# =============================================================================
# TextStore
# =============================================================================


class TestTextStore:
    """Tests for TextStore read/write/discover."""

    def test_read_missing_file_returns_empty(self, tmp_path):
        assert TextStore().read(tmp_path / "nope.md") == []

    def test_read_returns_lines(self, tmp_path):
        f = tmp_path / "l.md"
        f.write_text("# L\n- [ ] A\n", encoding="utf-8")
        assert TextStore().read(f) == ["# L", "- [ ] A"]

    def test_write_then_read(self, tmp_path):
        store = TextStore()
        f = tmp_path / "new" / "l.md"

        store.write(f, ["# L", "- [x] Done"])

        assert f.read_text(encoding="utf-8") == "# L\n- [x] Done\n"
        assert store.exists(f)
        assert store.read(f) == ["# L", "- [x] Done"]

    def test_write_keeps_read_encoding(self, tmp_path):
        f = tmp_path / "utf16.md"
        original = "# Liste\n- [ ] Käse\n- [ ] Brötchen\n"
        f.write_bytes(original.encode("utf-16"))
        store = TextStore()

        lines = store.read(f)
        assert lines[1] == "- [ ] Käse"
        store.write(f, lines + ["- [ ] Milch"])

        assert f.read_bytes().decode("utf-16") == original + "- [ ] Milch\n"

    def test_exists(self, tmp_path):
        store = TextStore()
        assert not store.exists(tmp_path / "x.md")
        (tmp_path / "x.md").write_text("")
        assert store.exists(tmp_path / "x.md")

    def test_discover_sorted_recursive(self, tmp_path):
        (tmp_path / "b.md").write_text("")
        (tmp_path / "a.md").write_text("")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "c.md").write_text("")
        (tmp_path / "notes.txt").write_text("")

        found = TextStore().discover(tmp_path)

        assert [p.relative_to(tmp_path).as_posix() for p in found] == [
            "a.md", "b.md", "sub/c.md",
        ]

    def test_discover_skips_hidden_directories(self, tmp_path):
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "x.md").write_text("")
        (tmp_path / "visible.md").write_text("")

        found = TextStore().discover(tmp_path)

        assert [p.name for p in found] == ["visible.md"]

    def test_discover_missing_dir_warns(self, tmp_path, caplog):
        with caplog.at_level(logging.WARNING, logger="gtask_sync.file_handler"):
            assert TextStore().discover(tmp_path / "missing") == []
        assert "does not exist" in caplog.text
