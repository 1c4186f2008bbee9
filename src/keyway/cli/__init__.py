"""
Keyway CLI — GitHub-gated secrets from the command line.

This package organizes the CLI into modular command groups.
Each group lives in its own module for maintainability.
The main Click group is defined here and all subcommands
are registered via register functions.

Entry point: keyway.cli:main
"""

from __future__ import annotations

from typing import Optional

import click

from .. import __version__
from ._common import CliContext, setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="keyway")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging (never shows secret values).")
@click.option("--repo", default=None, metavar="OWNER/REPO", help="Repository to use instead of the git origin.")
@click.pass_context
def main(ctx: click.Context, verbose: bool, repo: Optional[str]):
    """Keyway: secrets synced by GitHub access.

    Push and pull .env files, inject secrets into commands, and keep
    deployment providers in step with the vault.
    """
    obj = ctx.ensure_object(CliContext)
    obj.verbose = verbose
    if repo:
        obj.repo_override = repo
    setup_logging(verbose)


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .auth_cmd import register_auth_commands
from .secrets_cmd import register_secrets_commands
from .scan_cmd import register_scan_commands
from .sync_cmd import register_sync_commands
from .status import register_status_commands

register_auth_commands(main)
register_secrets_commands(main)
register_sync_commands(main)
register_status_commands(main)
register_scan_commands(main)
