"""Scan command: look for secrets committed in plain text."""

from __future__ import annotations

import json
from pathlib import Path

import click
from rich.markup import escape

from ._common import console, handle_errors, logger
from ..scan import scan_path


def register_scan_commands(main: click.Group) -> None:
    """Register the scan command on the main CLI group."""

    @main.command()
    @click.argument("path", required=False, default=".", type=click.Path(path_type=Path))
    @click.option("--exclude", "-e", "excludes", multiple=True, help="Extra directory or path prefix to skip.")
    @click.option("--json", "json_out", is_flag=True, help="Output as JSON (for CI).")
    @click.option("--show-all", is_flag=True, help="Keep matches that look like placeholders or test data.")
    @handle_errors
    def scan(path: Path, excludes: tuple, json_out: bool, show_all: bool):
        """Scan files for leaked API keys, tokens and passwords.

        Only a masked preview of each match is shown.
        """
        if json_out:
            result = scan_path(path, excludes, show_all=show_all)
            click.echo(json.dumps(result.to_dict(), indent=2))
            return

        console.print(f"\n  Scanning [cyan]{escape(str(path.resolve()))}[/]")
        with console.status("Scanning files..."):
            result = scan_path(path, excludes, show_all=show_all)
        logger.info("Scan of %s: %d finding(s)", result.root, len(result.findings))
        console.print(f"  [dim]{result.files_scanned} file(s) scanned[/]\n")

        if not result.findings:
            console.print("  [green]✓[/] No secrets detected\n")
            return

        console.print(f"  [yellow]![/] Found {len(result.findings)} potential secret(s):\n")
        for file, findings in result.by_file().items():
            console.print(f"  [cyan]{escape(file)}[/]", highlight=False)
            for f in findings:
                console.print(f"  │ Line {f.line}: [dim]{escape(f.type)}[/]", highlight=False)
                console.print(f"  │ {escape(f.preview)}", highlight=False)
            console.print()
