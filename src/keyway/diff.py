"""
Snapshot diff — classify keys between an "old" and a "new" snapshot.

    diff(old, new) -> DiffResult(added, removed, changed, kept)

What old and new mean depends on the caller:

    push           old = vault,      new = local file
    compare        old = left side,  new = right side
    provider push  old = provider,   new = vault
    provider pull  old = vault,      new = provider

Comparison is exact string equality on names and values. Rendering
never shows a value unless the caller asks for it (show_values=True).

Usage:
    keyway diff production staging             # table
    keyway diff production --file .env --json  # machine-readable
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Mapping

from rich.markup import escape
from rich.table import Table


@dataclass(frozen=True)
class DiffResult:
    """Four disjoint, sorted key lists.

    Attributes:
        added: Keys only in the new snapshot.
        removed: Keys only in the old snapshot.
        changed: Keys in both with different values.
        kept: Keys in both with identical values.
    """

    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    changed: tuple[str, ...] = ()
    kept: tuple[str, ...] = ()

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.changed)

    def counts(self) -> dict[str, int]:
        return {
            "added": len(self.added),
            "removed": len(self.removed),
            "changed": len(self.changed),
            "kept": len(self.kept),
        }


def diff(old: Mapping[str, str], new: Mapping[str, str]) -> DiffResult:
    """Compare two snapshots.

    Args:
        old: Baseline snapshot.
        new: Target snapshot.

    Returns:
        DiffResult: Key classification, each list sorted.
    """
    added, changed, kept = [], [], []
    for key, value in new.items():
        if key not in old:
            added.append(key)
        elif old[key] != value:
            changed.append(key)
        else:
            kept.append(key)
    removed = [key for key in old if key not in new]
    return DiffResult(
        added=tuple(sorted(added)),
        removed=tuple(sorted(removed)),
        changed=tuple(sorted(changed)),
        kept=tuple(sorted(kept)),
    )


def describe_value(value: str) -> str:
    """A value-free description: only the length is shown."""
    if not value:
        return "(empty)"
    return f"({len(value)} chars)"


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


@dataclass
class DiffView:
    """A diff plus what is needed to render it.

    Attributes:
        result: The computed diff.
        old_label: Name of the old side (environment or file).
        new_label: Name of the new side.
        old: Old snapshot (only read when values are revealed or sized).
        new: New snapshot.
    """

    result: DiffResult
    old_label: str
    new_label: str
    old: Mapping[str, str] = field(default_factory=dict)
    new: Mapping[str, str] = field(default_factory=dict)

    def rows(self, show_values: bool = False) -> list[tuple[str, str, str, str]]:
        """(status, key, old, new) rows sorted by key."""
        show = (lambda v: v) if show_values else describe_value
        rows = []
        for key in self.result.removed:
            rows.append(("removed", key, show(self.old[key]), ""))
        for key in self.result.added:
            rows.append(("added", key, "", show(self.new[key])))
        for key in self.result.changed:
            rows.append(("changed", key, show(self.old[key]), show(self.new[key])))
        return sorted(rows, key=lambda r: r[1])


_MARKS = {"added": "+", "removed": "-", "changed": "~"}


def format_text(view: DiffView, show_values: bool = False) -> str:
    """Format the diff as plain text.

    Args:
        view: Diff with labels and snapshots.
        show_values: Reveal secret values.

    Returns:
        Human-readable diff text.
    """
    res = view.result
    lines = [f"# {view.old_label} -> {view.new_label}", ""]
    if not res.has_changes:
        lines.append(f"No differences ({len(res.kept)} identical key(s)).")
        return "\n".join(lines)

    for status, key, old, new in view.rows(show_values):
        if status == "changed":
            lines.append(f"~ {key}: {old} -> {new}")
        elif status == "added":
            lines.append(f"+ {key}: {new}")
        else:
            lines.append(f"- {key}: {old}")

    c = res.counts()
    lines.append("")
    lines.append(
        f"{c['added']} only in {view.new_label}, {c['removed']} only in {view.old_label}, "
        f"{c['changed']} different, {c['kept']} identical"
    )
    return "\n".join(lines)


def format_keys(view: DiffView, show_values: bool = False) -> str:
    """One `<mark> KEY` line per differing key; never shows values."""
    return "\n".join(f"{_MARKS[status]} {key}" for status, key, _, _ in view.rows())


def format_json(view: DiffView, show_values: bool = False) -> str:
    """Format the diff as JSON.

    Values appear only under `values` and only when show_values is set.
    """
    res = view.result
    payload: dict = {
        "old": view.old_label,
        "new": view.new_label,
        "added": list(res.added),
        "removed": list(res.removed),
        "changed": list(res.changed),
        "kept": list(res.kept),
        "stats": res.counts(),
    }
    if show_values:
        payload["values"] = {
            key: {"old": view.old.get(key), "new": view.new.get(key)}
            for _, key, _, _ in view.rows()
        }
    return json.dumps(payload, indent=2)


FORMATTERS = {"text": format_text, "keys": format_keys, "json": format_json}


def render_table(view: DiffView, show_values: bool = False) -> Table:
    """Build a rich table for terminal output."""
    table = Table(title=f"{view.old_label} → {view.new_label}", show_lines=False)
    table.add_column("", width=1)
    table.add_column("Key", style="bold")
    table.add_column(view.old_label, style="dim")
    table.add_column(view.new_label)
    styles = {"added": "green", "removed": "red", "changed": "yellow"}
    for status, key, old, new in view.rows(show_values):
        table.add_row(
            f"[{styles[status]}]{_MARKS[status]}[/]",
            escape(key),
            escape(old),
            escape(new),
        )
    return table
