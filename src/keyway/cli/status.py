"""Status and doctor commands: login state, last sync activity, environment checks."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ._common import CliContext, console, handle_errors, pass_context
from ..audit import read_audit_log
from ..credentials import resolve_token
from ..doctor import FAIL, PASS, WARN, run_diagnostics
from ..sync.engine import load_state

_DOCTOR_ICONS = {PASS: "[green]✓[/]", WARN: "[yellow]![/]", FAIL: "[red]✗[/]"}


def register_status_commands(main: click.Group) -> None:
    """Register the status and doctor commands on the main CLI group."""

    @main.command()
    @click.option("--audit", "audit_limit", default=5, show_default=True, help="Recent audit entries to show.")
    @pass_context
    @handle_errors
    def status(obj: CliContext, audit_limit: int):
        """Show login state and the last push/pull."""
        config = obj.get_config()
        token, source = resolve_token(config, obj.get_store())
        state = load_state(config)

        login = f"[green]logged in[/] [dim](via {source})[/]" if token else "[yellow]not logged in[/]"
        console.print()
        console.print(
            Panel(
                f"Login: {login}\n"
                f"API: [cyan]{escape(config.api_url)}[/]\n"
                f"Last push: {escape(state.last_push_target or '')} {state.last_push or '[dim]never[/]'}\n"
                f"Last pull: {escape(state.last_pull_target or '')} {state.last_pull or '[dim]never[/]'}\n"
                f"Pushes: [bold]{state.push_count}[/]  Pulls: [bold]{state.pull_count}[/]  "
                f"Provider syncs: [bold]{state.sync_count}[/]\n"
                f"Last error: {escape(state.last_error) if state.last_error else '[dim]none[/]'}",
                title="Keyway",
                border_style="bright_blue",
            )
        )

        entries = read_audit_log(config.home, limit=audit_limit) if audit_limit > 0 else []
        if entries:
            table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
            table.add_column("When", style="dim")
            table.add_column("Event", style="cyan")
            table.add_column("Detail")
            for entry in reversed(entries):
                table.add_row(entry.timestamp[:19], entry.event_type, escape(entry.detail))
            console.print(table)
        console.print()

    @main.command()
    @click.option("--json", "json_out", is_flag=True, help="Output as machine-readable JSON.")
    @click.option("--strict", is_flag=True, help="Treat warnings as failures.")
    @pass_context
    @handle_errors
    def doctor(obj: CliContext, json_out: bool, strict: bool):
        """Check login, keychain, repository, API and .env setup."""
        report = run_diagnostics(
            obj.get_config(),
            obj.get_store(),
            Path.cwd(),
            client_factory=obj.client_factory,
            repo_override=obj.repo_override,
            strict=strict,
        )

        if json_out:
            click.echo(json.dumps(report.to_dict(), indent=2))
        else:
            console.print()
            for c in report.checks:
                icon = _DOCTOR_ICONS[c.status]
                console.print(f"  {icon} {escape(c.name)}: {escape(c.detail)}", highlight=False)
                if c.status != PASS and c.fix:
                    console.print(f"      [yellow]Fix: {escape(c.fix)}[/]", highlight=False)
            console.print()
            console.print(
                f"  Results: [bold green]{report.count(PASS)}[/] passed, "
                f"[bold yellow]{report.count(WARN)}[/] warnings, "
                f"[bold red]{report.count(FAIL)}[/] failed",
                highlight=False,
            )
            console.print()

        if report.exit_code:
            sys.exit(report.exit_code)
