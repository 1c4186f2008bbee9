"""
Environment diagnostics for the keyway CLI.

Checks everything a push or pull depends on and reports pass, warn or
fail with a suggested fix. Nothing here writes to the vault.

Usage:
    keyway doctor
    keyway doctor --json
    keyway doctor --strict
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from .api import VaultClient
from .config import KeywayConfig
from .credentials import SOURCE_ENV, KeyringCredentialStore, keychain_backend, resolve_token
from .envfile import discover_env_files
from .errors import AuthExpired, KeywayError, ValidationError
from .git import check_env_gitignore, detect_repo, git_root

logger = logging.getLogger("keyway.doctor")

PASS = "pass"
WARN = "warn"
FAIL = "fail"


@dataclass
class Check:
    """A single diagnostic check result.

    Attributes:
        id: Stable identifier (auth, keychain, github, network, envfile, gitignore).
        name: Human-readable label.
        status: pass, warn or fail.
        detail: What was found.
        fix: Suggested command when the check did not pass.
    """

    id: str
    name: str
    status: str
    detail: str = ""
    fix: str = ""


@dataclass
class DiagnosticReport:
    """All check results for one run."""

    checks: list[Check] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for c in self.checks if c.status == status)

    @property
    def exit_code(self) -> int:
        return 1 if self.count(FAIL) else 0

    def make_strict(self) -> None:
        """Treat every warning as a failure."""
        for check in self.checks:
            if check.status == WARN:
                check.status = FAIL

    def to_dict(self) -> dict:
        return {
            "checks": [
                {"id": c.id, "name": c.name, "status": c.status, "detail": c.detail, "fix": c.fix}
                for c in self.checks
            ],
            "summary": {"pass": self.count(PASS), "warn": self.count(WARN), "fail": self.count(FAIL)},
            "exitCode": self.exit_code,
        }


def check_auth(
    config: KeywayConfig,
    store: KeyringCredentialStore,
    client_factory: Callable[..., VaultClient] = VaultClient,
) -> Check:
    """Is there a token, and does the vault accept it?"""
    name = "Authentication"
    token, source = resolve_token(config, store)
    if not token:
        return Check("auth", name, WARN, "Not logged in", fix="keyway login")
    try:
        account = client_factory(config, token=token).validate_token()
    except AuthExpired:
        fix = "Replace KEYWAY_TOKEN" if source == SOURCE_ENV else "keyway logout && keyway login"
        return Check("auth", name, WARN, "Token expired or invalid", fix=fix)
    except KeywayError as exc:
        return Check("auth", name, WARN, f"Could not validate token ({exc.category})")
    username = account.get("username") or "user"
    return Check("auth", name, PASS, f"Logged in as @{username} (via {source})")


def check_keychain() -> Check:
    """Can a token be stored in the OS keychain?"""
    backend = keychain_backend()
    if backend is None:
        return Check(
            "keychain", "Credential store", WARN, "No OS keychain available",
            fix="Set KEYWAY_TOKEN for non-interactive use",
        )
    return Check("keychain", "Credential store", PASS, backend)


def check_github(cwd: Optional[Path] = None, repo_override: Optional[str] = None) -> Check:
    """Which repository would commands use?"""
    name = "GitHub repository"
    if repo_override:
        return Check("github", name, PASS, f"{repo_override} (from --repo)")
    try:
        repo = detect_repo(cwd)
    except ValidationError as exc:
        return Check("github", name, WARN, exc.message, fix=exc.hint or "")
    return Check("github", name, PASS, repo)


def check_network(
    config: KeywayConfig,
    client_factory: Callable[..., VaultClient] = VaultClient,
) -> Check:
    """Does the vault service answer?"""
    name = "API connectivity"
    try:
        status = client_factory(config).health()
    except KeywayError as exc:
        logger.debug("Health check failed: %s", exc.message)
        return Check("network", name, WARN, f"Cannot connect to {config.api_url}", fix="Check KEYWAY_API_URL")
    if status >= 500:
        return Check("network", name, WARN, f"Server returned {status}")
    return Check("network", name, PASS, f"Connected to {config.api_url}")


def check_env_file(cwd: Path) -> Check:
    """Is there a local env file to push or run with?"""
    found = discover_env_files(cwd)
    if not found:
        return Check("envfile", "Environment file", WARN, "No .env file found", fix="keyway pull")
    return Check("envfile", "Environment file", PASS, "Found: " + ", ".join(p.name for p in found))


def check_gitignore(cwd: Optional[Path] = None) -> Check:
    """Would a pulled .env be committed by accident?"""
    if git_root(cwd) is None:
        return Check("gitignore", ".gitignore", PASS, "Not in a git repository")
    if check_env_gitignore(cwd):
        return Check("gitignore", ".gitignore", PASS, "Environment files are ignored")
    return Check(
        "gitignore", ".gitignore", WARN, "Missing .env patterns in .gitignore",
        fix="echo '.env*' >> .gitignore",
    )


def run_diagnostics(
    config: KeywayConfig,
    store: KeyringCredentialStore,
    cwd: Path,
    client_factory: Callable[..., VaultClient] = VaultClient,
    repo_override: Optional[str] = None,
    strict: bool = False,
) -> DiagnosticReport:
    """Run every check.

    Args:
        config: Loaded configuration.
        store: Credential store to read the token from.
        cwd: Working copy to inspect.
        client_factory: Builds the vault client (tests inject a fake).
        repo_override: Repository given with --repo.
        strict: Report warnings as failures.

    Returns:
        DiagnosticReport with one result per check.
    """
    report = DiagnosticReport()
    report.checks.append(check_auth(config, store, client_factory))
    report.checks.append(check_keychain())
    report.checks.append(check_github(cwd, repo_override))
    report.checks.append(check_network(config, client_factory))
    report.checks.append(check_env_file(cwd))
    report.checks.append(check_gitignore(cwd))
    if strict:
        report.make_strict()
    return report
