"""Sync command: mirror a vault environment into a deployment provider."""

from __future__ import annotations

import click
from rich.markup import escape

from ._common import CliContext, console, handle_errors, pass_context
from ..envfile import normalize_environment
from ..sync.models import ProviderPlan, SyncDirection
from ..sync.providers import available_providers

PREVIEW_LIMIT = 5


def _preview(plan: ProviderPlan) -> None:
    arrow = "→" if plan.direction == SyncDirection.PUSH else "←"
    console.print(
        f"\n  Keyway [cyan]{escape(plan.vault_environment)}[/] {arrow} "
        f"{escape(plan.provider.capitalize())} [cyan]{escape(plan.project_name)}[/] "
        f"([cyan]{escape(plan.provider_environment)}[/])"
    )
    for label, style, mark, keys in (
        ("to create", "green", "+", list(plan.diff.added)),
        ("to update", "yellow", "~", list(plan.diff.changed)),
        ("to delete", "red", "-", plan.to_delete),
    ):
        if not keys:
            continue
        console.print(f"  [{style}]{mark} {len(keys)} {label}[/]")
        for key in keys[:PREVIEW_LIMIT]:
            console.print(f"    [{style}]{mark}[/] {escape(key)}")
        if len(keys) > PREVIEW_LIMIT:
            console.print(f"    [dim]... and {len(keys) - PREVIEW_LIMIT} more[/]")
    if plan.left_in_place:
        where = "vault" if plan.direction == SyncDirection.PULL else plan.provider
        console.print(
            f"  [dim]{len(plan.left_in_place)} key(s) only in {escape(where)} left in place"
            + (" (use --allow-delete to remove)" if plan.direction == SyncDirection.PUSH else "")
            + "[/]"
        )
    if plan.conflict_note:
        console.print(f"  [yellow]⚠ {escape(plan.conflict_note)}[/]")


def _confirm_sync(plan: ProviderPlan) -> bool:
    _preview(plan)
    return click.confirm("  Apply these changes?", default=True)


def register_sync_commands(main: click.Group) -> None:
    """Register the provider sync command."""

    @main.command()
    @click.argument("provider", type=click.Choice(available_providers(), case_sensitive=False))
    @click.option("--env", "-e", "environment", default="production", show_default=True,
                  help="Vault environment.")
    @click.option("--provider-env", default=None, help="Provider environment (default: mapped from --env).")
    @click.option("--project", default=None, help="Provider project id or name.")
    @click.option("--push/--pull", "push", default=True, help="Vault → provider (default) or provider → vault.")
    @click.option("--allow-delete", is_flag=True, help="Delete provider keys missing from the vault (push only).")
    @click.option("--yes", "-y", is_flag=True, help="Skip the confirmation prompt.")
    @pass_context
    @handle_errors
    def sync(obj: CliContext, provider, environment, provider_env, project, push, allow_delete, yes):
        """Sync a vault environment with PROVIDER.

        Keys changed on both sides: the vault wins on --push, the
        provider wins on --pull. Pull never deletes vault secrets.

        \b
        Examples:
            keyway sync vercel --env production
            keyway sync railway --pull --env staging
        """
        direction = SyncDirection.PUSH if push else SyncDirection.PULL
        interactive = obj.is_interactive() and not yes
        engine = obj.engine(confirm=_confirm_sync if interactive else None)
        result = engine.provider_sync(
            provider,
            obj.repo(),
            normalize_environment(environment),
            direction=direction,
            project=project,
            provider_environment=provider_env,
            allow_delete=allow_delete,
        )

        if not result.confirmed:
            console.print("  [dim]Sync cancelled.[/]")
            return
        if not interactive and result.note and result.report.outcomes:
            console.print(f"  [yellow]⚠ {escape(result.note)}[/]")
        if not result.report.outcomes:
            console.print(f"  [green]✓[/] {escape(result.note or 'Already in sync')}: {escape(result.target)}")
            return
        console.print(
            f"  [green]✓[/] Synced {len(result.report.applied)} key(s): {escape(result.target)}"
        )
