"""Auth commands: login, logout."""

from __future__ import annotations

from typing import Optional

import click

from ._common import CliContext, console, handle_errors, pass_context, print_login
from ..audit import audit_event
from ..auth import PAT_PREFIX, login_with_token
from ..git import detect_repo
from ..errors import ValidationError

PAT_URL = "https://github.com/settings/personal-access-tokens/new?description={description}"


def _detected_repo() -> Optional[str]:
    try:
        return detect_repo()
    except ValidationError:
        return None


def register_auth_commands(main: click.Group) -> None:
    """Register login and logout."""

    @main.command()
    @click.option("--token", "use_token", is_flag=True, help="Use a GitHub fine-grained personal access token.")
    @pass_context
    @handle_errors
    def login(obj: CliContext, use_token):
        """Sign in with GitHub (device flow, or a PAT with --token)."""
        config = obj.get_config()
        repo = obj.repo_override or _detected_repo()

        if use_token:
            description = f"Keyway CLI for {repo}" if repo else "Keyway CLI"
            console.print("  [dim]Create a fine-grained PAT with Metadata: Read-only.[/]")
            console.print(f"  [dim]{PAT_URL.format(description=description.replace(' ', '+'))}[/]")
            token = click.prompt(f"  Paste your GitHub PAT ({PAT_PREFIX}...)", hide_input=True)
            result = login_with_token(config, obj.get_store(), token, client_factory=obj.client_factory)
            print_login(result)
        else:
            result = obj.run_login(repo)

        audit_event(
            config.home, "LOGIN", f"Logged in via {result.method}",
            target=repo, metadata={"username": result.username},
        )

    @main.command()
    @pass_context
    @handle_errors
    def logout(obj: CliContext):
        """Forget the stored credential."""
        config = obj.get_config()
        removed = obj.get_store().delete()
        if removed:
            console.print("  [green]✓[/] Logged out of Keyway")
        else:
            console.print("  [dim]No stored credential to remove.[/]")
        if config.token:
            console.print("  [yellow]KEYWAY_TOKEN is still set in this environment.[/]")
        audit_event(config.home, "LOGOUT", "Credential removed" if removed else "No credential stored")
