"""Tests for the env-file codec (parse / format / atomic write)."""

from __future__ import annotations

import os
import stat
import sys
from pathlib import Path

import pytest

from keyway.envfile import (
    Snapshot,
    derive_environment,
    discover_env_files,
    format,
    normalize_environment,
    parse,
    read_env_file,
    write_env_file,
)
from keyway.errors import ValidationError


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


class TestSnapshot:
    """Tests for the immutable Snapshot mapping."""

    def test_iterates_sorted(self):
        """Keys come back in canonical (sorted) order."""
        snap = Snapshot({"B": "2", "A": "1", "C": "3"})
        assert list(snap) == ["A", "B", "C"]

    def test_is_immutable(self):
        """Item assignment is not supported."""
        snap = Snapshot({"A": "1"})
        with pytest.raises(TypeError):
            snap["A"] = "2"  # type: ignore[index]

    def test_repr_hides_values(self):
        """repr() shows names only."""
        snap = Snapshot({"API_KEY": "sk-super-secret"})
        assert "API_KEY" in repr(snap)
        assert "sk-super-secret" not in repr(snap)

    def test_merged_other_wins(self):
        """merged() layers the argument on top and returns a new snapshot."""
        base = Snapshot({"A": "1", "B": "2"})
        result = base.merged({"B": "x", "C": "3"})
        assert result.to_dict() == {"A": "1", "B": "x", "C": "3"}
        assert base.to_dict() == {"A": "1", "B": "2"}

    def test_only_and_without(self):
        """only() and without() partition by key."""
        snap = Snapshot({"A": "1", "B": "2", "C": "3"})
        assert snap.only(["A", "C", "Z"]).to_dict() == {"A": "1", "C": "3"}
        assert snap.without(["A"]).to_dict() == {"B": "2", "C": "3"}

    def test_equality_with_dict(self):
        """A Snapshot compares equal to a dict with the same items."""
        assert Snapshot({"A": "1"}) == {"A": "1"}


# ---------------------------------------------------------------------------
# parse
# ---------------------------------------------------------------------------


class TestParse:
    """Tests for parse()."""

    def test_basic_pairs(self):
        """Simple KEY=VALUE lines."""
        assert parse("A=1\nB=two\n") == {"A": "1", "B": "two"}

    def test_comments_and_blank_lines_skipped(self):
        """Comments (after trimming) and blank lines are ignored."""
        text = "# header\n\n   # indented comment\nA=1\n\n"
        assert parse(text) == {"A": "1"}

    def test_first_equals_splits(self):
        """Only the first '=' separates key from value."""
        snap = parse("DATABASE_URL=postgres://u:p@h/db?sslmode=require&x=1")
        assert snap["DATABASE_URL"] == "postgres://u:p@h/db?sslmode=require&x=1"

    def test_empty_value(self):
        """A key with no value yields the empty string."""
        assert parse("EMPTY=") == {"EMPTY": ""}

    def test_surrounding_line_whitespace_ignored(self):
        """Whitespace around the line and the key is ignored."""
        assert parse("   TOKEN=abc   \n") == {"TOKEN": "abc"}
        assert parse("KEY =value") == {"KEY": "value"}

    def test_unquoted_value_keeps_inner_spaces(self):
        """Unquoted values are verbatim to end of line."""
        assert parse("GREETING=hello big world") == {"GREETING": "hello big world"}

    def test_double_quotes_stripped_and_unescaped(self):
        """Double quotes are removed and \\" sequences unescaped."""
        snap = parse('MSG="say \\"hi\\" to \\\\ everyone"')
        assert snap["MSG"] == 'say "hi" to \\ everyone'

    def test_single_quotes_stripped_verbatim(self):
        """Single quotes are removed; backslashes are kept."""
        assert parse("RAW='a \\n b'") == {"RAW": "a \\n b"}

    def test_multiline_double_quoted(self):
        """A double-quoted value may span lines."""
        text = 'KEY="-----BEGIN-----\nabc\n-----END-----"\nNEXT=1'
        snap = parse(text)
        assert snap["KEY"] == "-----BEGIN-----\nabc\n-----END-----"
        assert snap["NEXT"] == "1"

    def test_crlf_line_endings(self):
        """Windows line endings do not leak into values."""
        assert parse("A=1\r\nB=2\r\n") == {"A": "1", "B": "2"}

    def test_crlf_inside_quoted_value(self):
        """A CRLF break inside a quoted value reads back as LF."""
        assert parse('A="one\r\ntwo"\r\n') == {"A": "one\ntwo"}

    def test_repeated_key_last_wins(self):
        """A repeated key keeps its last value."""
        assert parse("A=1\nA=2") == {"A": "2"}

    def test_text_after_closing_quote_is_verbatim(self):
        """'"abc"def' is not a quoted value."""
        assert parse('A="abc"def') == {"A": '"abc"def'}

    def test_malformed_line_skipped_in_lenient_mode(self, caplog):
        """Lines without '=' are skipped and logged by line number."""
        snap = parse("A=1\nnot a pair\nB=2")
        assert snap == {"A": "1", "B": "2"}
        assert "line 2" in caplog.text
        assert "not a pair" not in caplog.text

    def test_malformed_line_rejected_in_strict_mode(self):
        """Strict mode raises with the line number, not the content."""
        with pytest.raises(ValidationError) as exc_info:
            parse("A=1\nSECRET_VALUE_NO_EQUALS", strict=True)
        assert "line 2" in str(exc_info.value)
        assert "SECRET_VALUE_NO_EQUALS" not in str(exc_info.value)

    def test_empty_key_is_malformed(self):
        """'=value' has no key."""
        assert parse("=orphan\nA=1") == {"A": "1"}
        with pytest.raises(ValidationError):
            parse("=orphan", strict=True)

    def test_unterminated_quote_skipped(self):
        """An unterminated double quote does not swallow the rest of the file."""
        assert parse('A="never closed\nB=2') == {"B": "2"}

    def test_unterminated_quote_strict(self):
        """Strict mode rejects an unterminated double quote."""
        with pytest.raises(ValidationError):
            parse('A="never closed', strict=True)


# ---------------------------------------------------------------------------
# format
# ---------------------------------------------------------------------------


class TestFormat:
    """Tests for format()."""

    def test_sorted_and_no_trailing_newline(self):
        """Keys are sorted; no trailing blank line."""
        assert format(Snapshot({"B": "2", "A": "1"})) == "A=1\nB=2"

    def test_empty_snapshot(self):
        """Nothing in, nothing out."""
        assert format(Snapshot()) == ""

    def test_quotes_empty_and_whitespace(self):
        """Empty values and values with whitespace are double-quoted."""
        text = format({"E": "", "S": "two words", "T": "tab\there"})
        assert text.splitlines() == ['E=""', 'S="two words"', 'T="tab\there"']

    def test_escapes_inside_quotes(self):
        """Quotes and backslashes are escaped inside double quotes."""
        assert format({"Q": 'a "b" c'}) == 'Q="a \\"b\\" c"'
        assert format({"P": "x \\ y"}) == 'P="x \\\\ y"'

    def test_leading_quote_is_quoted(self):
        """A value starting with a quote char is wrapped so it parses back."""
        assert format({"A": "'x'"}) == 'A="\'x\'"'

    def test_plain_value_unquoted(self):
        """Values with no whitespace stay bare, even with '=' or quotes inside."""
        assert format({"URL": "a=b", "Q": 'x"y'}) == 'Q=x"y\nURL=a=b'

    def test_invalid_key_rejected(self):
        """Keys that cannot be written as KEY=VALUE raise."""
        for key in ("", "A=B", "#A", "WITH SPACE"):
            with pytest.raises(ValidationError):
                format({key: "v"})

    def test_round_trip_awkward_values(self):
        """parse(format(s)) == s for values that need quoting."""
        snap = Snapshot({
            "EMPTY": "",
            "SPACES": "  padded  ",
            "QUOTES": 'he said "hi"',
            "LEAD_DQ": '"starts with quote',
            "LEAD_SQ": "'single'",
            "BACKSLASH": "C:\\path\\to",
            "MULTI": "line1\nline2\n",
            "EQUALS": "k=v=w",
        })
        assert parse(format(snap)) == snap


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


class TestFiles:
    """Tests for reading and atomically writing env files."""

    def test_read_missing_file(self, tmp_path: Path):
        """A missing file is a ValidationError with a hint."""
        with pytest.raises(ValidationError) as exc_info:
            read_env_file(tmp_path / ".env")
        assert "File not found" in exc_info.value.message
        assert exc_info.value.hint

    def test_read_strict_flag(self, tmp_path: Path):
        """read_env_file passes strictness through to parse()."""
        path = tmp_path / ".env"
        path.write_text("A=1\nbroken\n")
        assert read_env_file(path) == {"A": "1"}
        with pytest.raises(ValidationError):
            read_env_file(path, strict=True)

    def test_write_ends_with_newline(self, tmp_path: Path):
        """The written file is the formatted text plus one newline."""
        path = tmp_path / ".env"
        write_env_file(path, Snapshot({"B": "2", "A": "1"}))
        assert path.read_text() == "A=1\nB=2\n"

    def test_write_empty_snapshot(self, tmp_path: Path):
        """An empty snapshot produces an empty file."""
        path = tmp_path / ".env"
        write_env_file(path, Snapshot())
        assert path.read_text() == ""

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_write_owner_only(self, tmp_path: Path):
        """The file is created 0600."""
        path = tmp_path / ".env"
        write_env_file(path, {"A": "1"})
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_write_replaces_existing(self, tmp_path: Path):
        """Existing content is replaced, not merged."""
        path = tmp_path / ".env"
        path.write_text("OLD=1\n")
        write_env_file(path, {"NEW": "2"})
        assert parse(path.read_text()) == {"NEW": "2"}

    def test_failed_write_leaves_original(self, tmp_path: Path, monkeypatch):
        """A failure before the swap leaves the old file and no temp files."""
        path = tmp_path / ".env"
        path.write_text("OLD=1\n")

        def boom(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", boom)
        with pytest.raises(OSError):
            write_env_file(path, {"NEW": "2"})
        assert path.read_text() == "OLD=1\n"
        assert sorted(p.name for p in tmp_path.iterdir()) == [".env"]

    def test_discover_skips_templates(self, tmp_path: Path):
        """Template files are not candidates."""
        for name in (".env", ".env.staging", ".env.example", ".env.template", "README.md"):
            (tmp_path / name).write_text("")
        (tmp_path / ".env.dir").mkdir()
        found = [p.name for p in discover_env_files(tmp_path)]
        assert found == [".env", ".env.staging"]


# ---------------------------------------------------------------------------
# Environment names
# ---------------------------------------------------------------------------


class TestEnvironmentNames:
    """Tests for derive_environment() and normalize_environment()."""

    @pytest.mark.parametrize(
        "filename,expected",
        [
            (".env", "development"),
            (".env.production", "production"),
            (".env.prod", "production"),
            (".env.Staging", "staging"),
            (".env.local", "local"),
            ("secrets.txt", "development"),
        ],
    )
    def test_derive(self, filename, expected):
        """File names map to environments."""
        assert derive_environment(Path("/repo") / filename) == expected

    def test_normalize_aliases(self):
        """Aliases expand and names are lower-cased."""
        assert normalize_environment("PROD") == "production"
        assert normalize_environment(" dev ") == "development"
        assert normalize_environment("stg") == "staging"
        assert normalize_environment("preview-2") == "preview-2"

    @pytest.mark.parametrize("bad", ["", "has space", "-leading", "a/b", "x" * 65])
    def test_normalize_rejects(self, bad):
        """Invalid names raise with a hint."""
        with pytest.raises(ValidationError) as exc_info:
            normalize_environment(bad)
        assert exc_info.value.hint
