"""
Secret snapshot codec — the line-oriented .env format.

    parse(text)      ->  Snapshot
    format(snapshot) ->  text

Rules:
    - surrounding whitespace on a line is ignored
    - blank lines and lines starting with '#' are skipped
    - the first '=' splits key from value; later '=' belong to the value
    - 'single' quotes are stripped verbatim
    - "double" quotes are stripped and \\" and \\\\ unescaped; a double
      quoted value may span several lines
    - unquoted values are taken verbatim to end of line

A line without '=' is malformed. In lenient mode (the default) it is
logged and skipped; in strict mode parse() raises ValidationError.
The line number is reported, never the line content.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Iterable, Optional

from .errors import ValidationError

logger = logging.getLogger("keyway.envfile")

TEMPLATE_FILES = frozenset({".env.example", ".env.sample", ".env.template"})

ENV_ALIASES = {"prod": "production", "dev": "development", "stg": "staging"}

_ENV_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9._-]{0,63}$")


class Snapshot(Mapping):
    """An immutable secret set: name -> value.

    Keys are unique. Every operation returns a new Snapshot; the
    canonical order used for output is sorted by key.
    """

    __slots__ = ("_data",)

    def __init__(self, data: Optional[Mapping[str, str] | Iterable[tuple[str, str]]] = None) -> None:
        self._data: dict[str, str] = dict(data or {})

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._data))

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        # Values are secrets: only names are shown.
        return f"Snapshot(keys={sorted(self._data)!r})"

    def merged(self, other: Mapping[str, str]) -> "Snapshot":
        """Return a snapshot with `other` layered on top (other wins)."""
        data = dict(self._data)
        data.update(other)
        return Snapshot(data)

    def only(self, keys: Iterable[str]) -> "Snapshot":
        """Return the subset of this snapshot restricted to `keys`."""
        wanted = set(keys)
        return Snapshot((k, v) for k, v in self._data.items() if k in wanted)

    def without(self, keys: Iterable[str]) -> "Snapshot":
        """Return this snapshot minus `keys`."""
        unwanted = set(keys)
        return Snapshot((k, v) for k, v in self._data.items() if k not in unwanted)

    def to_dict(self) -> dict[str, str]:
        return {k: self._data[k] for k in self}


def _malformed(lineno: int, reason: str, strict: bool) -> None:
    if strict:
        raise ValidationError(f"Malformed line {lineno}: {reason}")
    logger.warning("Skipping malformed line %d: %s", lineno, reason)


def _scan_double_quoted(first: str, lines: list[str], start: int) -> tuple[Optional[str], int, str]:
    """Read a double-quoted value that may continue on following lines.

    Args:
        first: Text after the opening quote on the first line.
        lines: All raw lines of the document.
        start: Index of the line after the first one.

    Returns:
        (value, next_index, trailing): value is None when the quote is
        never closed; trailing is whatever follows the closing quote.
    """
    out: list[str] = []
    text = first
    index = start
    while True:
        i = 0
        while i < len(text):
            ch = text[i]
            if ch == "\\" and i + 1 < len(text) and text[i + 1] in ('"', "\\"):
                out.append(text[i + 1])
                i += 2
                continue
            if ch == '"':
                return "".join(out), index, text[i + 1:]
            out.append(ch)
            i += 1
        if index >= len(lines):
            return None, index, ""
        out.append("\n")
        text = lines[index]
        index += 1


def parse(text: str, strict: bool = False) -> Snapshot:
    """Parse env-file text into a Snapshot.

    Line endings may be LF or CRLF. A carriage return ending any physical
    line is dropped, inside a multi-line double-quoted value too, so such
    a value always comes back with bare LF line breaks.

    Args:
        text: File content.
        strict: Raise on malformed lines instead of skipping them.

    Returns:
        Snapshot: Parsed secrets. A repeated key keeps its last value.

    Raises:
        ValidationError: On a malformed line in strict mode, or an
            unterminated double-quoted value in strict mode.
    """
    lines = [line[:-1] if line.endswith("\r") else line for line in text.split("\n")]
    data: dict[str, str] = {}
    index = 0
    while index < len(lines):
        lineno = index + 1
        raw = lines[index]
        index += 1

        stripped = raw.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if "=" not in stripped:
            _malformed(lineno, "expected KEY=VALUE", strict)
            continue

        key, _, rest = raw.lstrip().partition("=")
        key = key.strip()
        if not key:
            _malformed(lineno, "empty key", strict)
            continue

        value = rest.rstrip()
        if value.startswith('"'):
            scanned, next_index, trailing = _scan_double_quoted(rest[1:], lines, index)
            if scanned is None:
                _malformed(lineno, "unterminated double quote", strict)
                continue
            # "abc"def is not a quoted value; it falls through verbatim.
            if not trailing.strip():
                data[key] = scanned
                index = next_index
                continue
        elif len(value) >= 2 and value[0] == value[-1] == "'":
            value = value[1:-1]
        data[key] = value

    return Snapshot(data)


def _needs_quotes(value: str) -> bool:
    if not value:
        return True
    if value[0] in ('"', "'"):
        return True
    return any(ch.isspace() for ch in value)


def validate_key(key: str) -> None:
    """Reject keys that cannot be written as a KEY=VALUE line."""
    if not key or key != key.strip() or "=" in key or key.startswith("#"):
        raise ValidationError(f"Invalid secret name: {key!r}")
    if any(ch.isspace() for ch in key):
        raise ValidationError(f"Invalid secret name: {key!r}")


def format(snapshot: Mapping[str, str]) -> str:  # noqa: A001
    """Serialize a snapshot to env-file text.

    Keys are emitted in sorted order. Values are quoted when empty,
    when they contain whitespace, or when they start with a quote
    character. No trailing blank line is produced.

    Raises:
        ValidationError: When a key cannot be represented.
    """
    lines = []
    for key in sorted(snapshot):
        validate_key(key)
        value = snapshot[key]
        if _needs_quotes(value):
            escaped = value.replace("\\", "\\\\").replace('"', '\\"')
            lines.append(f'{key}="{escaped}"')
        else:
            lines.append(f"{key}={value}")
    return "\n".join(lines)


def read_env_file(path: Path, strict: bool = False) -> Snapshot:
    """Read and parse a local env file.

    Raises:
        ValidationError: When the file is missing or unreadable, so the
            problem is reported before any network call.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ValidationError(
            f"File not found: {path}",
            hint="Pass --file or create the file first",
        ) from None
    except (OSError, UnicodeDecodeError) as exc:
        raise ValidationError(f"Cannot read {path}: {exc.__class__.__name__}") from None
    return parse(text, strict=strict)


def write_env_file(path: Path, snapshot: Mapping[str, str]) -> None:
    """Replace `path` with the formatted snapshot, all or nothing.

    The text goes to a temporary sibling first and is moved over the
    target with os.replace(), so a failure never leaves a half-written
    file. The result is readable by the owner only (0600).
    """
    text = format(snapshot)
    if text:
        text += "\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(text)
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise
    logger.debug("Wrote %d secret(s) to %s", len(snapshot), path)


def discover_env_files(directory: Path) -> list[Path]:
    """List `.env*` files in a directory, skipping templates."""
    if not directory.is_dir():
        return []
    return sorted(
        p for p in directory.iterdir()
        if p.is_file() and p.name.startswith(".env") and p.name not in TEMPLATE_FILES
    )


def derive_environment(path: Path | str) -> str:
    """`.env` -> development, `.env.production` -> production."""
    name = Path(path).name
    if name.startswith(".env.") and len(name) > len(".env."):
        return normalize_environment(name[len(".env."):])
    return "development"


def normalize_environment(name: str) -> str:
    """Lower-case, expand aliases (prod/dev/stg) and validate.

    Raises:
        ValidationError: When the name is not a valid environment name.
    """
    env = (name or "").strip().lower()
    env = ENV_ALIASES.get(env, env)
    if not _ENV_NAME_RE.match(env):
        raise ValidationError(
            f"Invalid environment name: {name!r}",
            hint="Use letters, digits, '.', '_' or '-' (e.g. production)",
        )
    return env
