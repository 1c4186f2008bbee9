"""Secret commands: push, pull, run, diff."""

from __future__ import annotations

import sys
from pathlib import Path

import click
from rich.markup import escape

from ._common import CliContext, console, handle_errors, logger, pass_context
from ..audit import audit_event
from ..diff import FORMATTERS, render_table
from ..envfile import derive_environment, discover_env_files, normalize_environment, read_env_file
from ..errors import ValidationError
from ..git import check_env_gitignore
from ..injector import run_command
from ..sync.models import PushPlan, VaultRef

PREVIEW_LIMIT = 5


def _list_keys(mark: str, style: str, keys: list[str]) -> None:
    for key in keys[:PREVIEW_LIMIT]:
        console.print(f"    [{style}]{mark}[/] {escape(key)}")
    if len(keys) > PREVIEW_LIMIT:
        console.print(f"    [dim]... and {len(keys) - PREVIEW_LIMIT} more[/]")


def _confirm_push(plan: PushPlan) -> bool:
    """CONFIRM for push: counts and key names, never values."""
    console.print(f"\n  Pushing to [cyan]{escape(str(plan.target))}[/]")
    if plan.diff.added:
        console.print(f"  [green]+ {len(plan.diff.added)} to add[/]")
        _list_keys("+", "green", list(plan.diff.added))
    if plan.diff.changed:
        console.print(f"  [yellow]~ {len(plan.diff.changed)} to update[/]")
        _list_keys("~", "yellow", list(plan.diff.changed))
    if plan.to_delete:
        console.print(f"  [red]- {len(plan.to_delete)} to delete[/]")
        _list_keys("-", "red", plan.to_delete)
    elif plan.diff.removed:
        console.print(f"  [dim]{len(plan.diff.removed)} vault-only key(s) kept (use --prune to delete)[/]")
    return click.confirm("  Continue?", default=True)


def _warn_gitignore() -> None:
    if not check_env_gitignore():
        console.print("  [yellow]⚠ .env files are not in .gitignore[/]")


def register_secrets_commands(main: click.Group) -> None:
    """Register push, pull, run and diff."""

    @main.command()
    @click.option("--file", "-f", "file_", default=None, help="Env file to push (default: .env).")
    @click.option("--env", "-e", "environment", default=None, help="Vault environment (default: from file name).")
    @click.option("--prune", is_flag=True, help="Delete vault keys that are not in the file.")
    @click.option("--yes", "-y", is_flag=True, help="Skip the confirmation prompt.")
    @pass_context
    @handle_errors
    def push(obj: CliContext, file_, environment, prune, yes):
        """Upload a local env file to the vault (additive by default)."""
        config = obj.get_config()
        path = Path(file_ or config.default_env_file)
        if file_ is None and not path.exists():
            found = discover_env_files(Path.cwd())
            if found:
                raise ValidationError(
                    f"File not found: {path}",
                    hint="Pass --file, e.g. " + ", ".join(p.name for p in found),
                )
        local = read_env_file(path, strict=config.strict_parsing)
        env = normalize_environment(environment) if environment else derive_environment(path)
        target = VaultRef.parse(obj.repo(), env)
        _warn_gitignore()

        confirm = None if yes or not obj.is_interactive() else _confirm_push
        result = obj.engine(confirm=confirm).push(target, local, prune=prune)

        if not result.confirmed:
            console.print("  [dim]Push cancelled.[/]")
            return
        if result.note:
            console.print(f"  [green]✓[/] {escape(result.note)} ({escape(str(target))})")
            return
        d = result.diff
        console.print(
            f"  [green]✓[/] Pushed to [cyan]{escape(str(target))}[/]: "
            f"{len(d.added)} added, {len(d.changed)} updated"
            + (f", {len(d.removed)} deleted" if prune else "")
        )
        if d.removed and not prune:
            console.print(f"  [dim]{len(d.removed)} vault-only key(s) left untouched.[/]")

    @main.command()
    @click.option("--file", "-f", "file_", default=None, help="Env file to write (default: .env).")
    @click.option("--env", "-e", "environment", default=None, help="Vault environment (default: development).")
    @click.option("--keep-local", is_flag=True, help="Keep keys that only exist in the local file.")
    @pass_context
    @handle_errors
    def pull(obj: CliContext, file_, environment, keep_local):
        """Write the vault's secrets to a local env file."""
        config = obj.get_config()
        path = Path(file_ or config.default_env_file)
        target = VaultRef.parse(obj.repo(), environment or config.default_environment)

        result = obj.engine().pull(target, path, keep_local=keep_local)
        _warn_gitignore()

        d = result.diff
        console.print(
            f"  [green]✓[/] Pulled [cyan]{escape(str(target))}[/] into {escape(str(path))}: "
            f"{result.written} secret(s)"
        )
        if d is not None and d.has_changes:
            kept = f", {len(d.removed)} local-only kept" if keep_local else (
                f", {len(d.removed)} local-only removed" if d.removed else ""
            )
            console.print(f"  [dim]{len(d.added)} new, {len(d.changed)} updated{kept}[/]")

    @main.command(context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False})
    @click.option("--env", "-e", "environment", default=None, help="Vault environment (default: development).")
    @click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
    @pass_context
    @handle_errors
    def run(obj: CliContext, environment, command):
        """Run COMMAND with the vault's secrets in its environment.

        \b
        Example:
            keyway run -e production -- npm start
        """
        config = obj.get_config()
        target = VaultRef.parse(obj.repo(), environment or config.default_environment)
        secrets = obj.session().call(lambda c: c.pull_snapshot(target.full_name, target.environment))
        logger.debug("Injecting %d secret(s) from %s", len(secrets), target)

        audit_event(
            config.home, "RUN", f"Injected {len(secrets)} secret(s) into {command[0]}",
            target=str(target), metadata={"keys": sorted(secrets)},
        )
        status = run_command(command[0], list(command[1:]), secrets)
        sys.exit(status)

    @main.command("diff")
    @click.argument("old_env")
    @click.argument("new_env", required=False)
    @click.option("--file", "-f", "file_", default=None, help="Compare OLD_ENV against this local file.")
    @click.option("--keys-only", is_flag=True, help="List differing key names only.")
    @click.option("--json", "as_json", is_flag=True, help="Machine-readable output.")
    @click.option("--show-values", is_flag=True, help="Reveal secret values.")
    @pass_context
    @handle_errors
    def diff_cmd(obj: CliContext, old_env, new_env, file_, keys_only, as_json, show_values):
        """Compare two environments, or an environment and a local file."""
        if bool(new_env) == bool(file_):
            raise ValidationError(
                "Give either a second environment or --file",
                hint="Example: keyway diff production staging",
            )
        old = normalize_environment(old_env)
        new = Path(file_) if file_ else normalize_environment(new_env)
        view = obj.engine().compare(obj.repo(), old, new)

        if as_json:
            click.echo(FORMATTERS["json"](view, show_values))
        elif keys_only:
            text = FORMATTERS["keys"](view)
            if text:
                click.echo(text)
        elif not view.result.has_changes:
            console.print(
                f"  [green]✓[/] {escape(view.old_label)} and {escape(view.new_label)} are identical "
                f"({len(view.result.kept)} secret(s))"
            )
        else:
            console.print(render_table(view, show_values))
            c = view.result.counts()
            console.print(
                f"  {c['added']} only in {escape(view.new_label)}, "
                f"{c['removed']} only in {escape(view.old_label)}, "
                f"{c['changed']} different, {c['kept']} identical"
            )
