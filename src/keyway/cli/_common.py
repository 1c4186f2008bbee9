"""Shared utilities for all CLI command modules.

Provides the Rich console instance, the per-invocation context object,
error reporting, and the prompts used across every command.
"""

from __future__ import annotations

import functools
import logging
import sys
from dataclasses import dataclass
from typing import Any, Callable, Optional

import click
from rich.console import Console
from rich.markup import escape

from ..api import VaultClient
from ..auth import AuthSession, DeviceAuthorization, DeviceFlow, LoginResult
from ..config import KeywayConfig, is_interactive, load_config
from ..credentials import KeyringCredentialStore, resolve_token, store_for
from ..errors import KeywayError
from ..git import detect_repo
from ..sync import SyncEngine

console = Console()
logger = logging.getLogger("keyway.cli")


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@dataclass
class CliContext:
    """Per-invocation state shared by every command (click's ctx.obj).

    Everything is built lazily so tests can inject any piece.
    """

    config: Optional[KeywayConfig] = None
    store: Optional[KeyringCredentialStore] = None
    client_factory: Callable[..., VaultClient] = VaultClient
    repo_override: Optional[str] = None
    interactive: Optional[bool] = None
    verbose: bool = False

    def get_config(self) -> KeywayConfig:
        if self.config is None:
            self.config = load_config()
        return self.config

    def get_store(self) -> KeyringCredentialStore:
        if self.store is None:
            self.store = store_for(self.get_config())
        return self.store

    def is_interactive(self) -> bool:
        if self.interactive is None:
            self.interactive = is_interactive()
        return self.interactive

    def repo(self) -> str:
        """`owner/repo` from --repo, else the git origin remote."""
        return self.repo_override or detect_repo()

    def device_flow(self) -> DeviceFlow:
        client = self.client_factory(self.get_config())
        return DeviceFlow(client, self.get_store(), display=show_device_code)

    def run_login(self, repository: Optional[str] = None) -> LoginResult:
        result = self.device_flow().run(repository)
        print_login(result)
        return result

    def session(self) -> AuthSession:
        config = self.get_config()
        store = self.get_store()
        token, source = resolve_token(config, store)
        return AuthSession(
            config,
            store,
            token=token,
            source=source,
            interactive=self.is_interactive(),
            login=self.run_login,
            confirm=lambda question: click.confirm(question, default=True),
            client_factory=self.client_factory,
        )

    def engine(self, confirm: Optional[Callable[[Any], bool]] = None) -> SyncEngine:
        return SyncEngine(self.get_config(), self.session(), confirm=confirm)


pass_context = click.make_pass_decorator(CliContext, ensure=True)


def show_device_code(auth: DeviceAuthorization) -> None:
    """DISPLAY step: show the user code and open the browser."""
    console.print(f"\n  Code: [bold cyan]{escape(auth.user_code)}[/]")
    console.print(f"  [dim]Open: {escape(auth.verification_url)}[/]")
    console.print("  [dim]If the browser doesn't open, copy the URL above into your browser.[/]\n")
    if auth.verification_url:
        try:
            click.launch(auth.verification_url)
        except OSError as exc:
            logger.debug("Could not open browser: %s", exc)
    console.print("  Waiting for authorization...")


def print_login(result: LoginResult) -> None:
    if result.username:
        console.print(f"  [green]✓[/] Logged in as [cyan]@{escape(result.username)}[/]")
    else:
        console.print("  [green]✓[/] Logged in")


def report_error(exc: KeywayError) -> None:
    """Print `✗ [CATEGORY] message` and the remedy hint."""
    console.print(
        f"[bold red]✗ {escape('[' + exc.category + ']')}[/] {escape(exc.message)}",
        highlight=False,
        soft_wrap=True,
    )
    if exc.hint:
        console.print(f"  [dim]{escape(exc.hint)}[/]", highlight=False)


def handle_errors(fn: Callable) -> Callable:
    """Turn KeywayError into a printed category/hint and its exit code."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except KeywayError as exc:
            logger.debug("Command failed: %s", exc.category)
            report_error(exc)
            sys.exit(exc.exit_code)

    return wrapper
