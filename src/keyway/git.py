"""
Git helpers: which GitHub repository is this working copy?
"""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import Optional

from .errors import ValidationError

logger = logging.getLogger("keyway.git")

_SSH_RE = re.compile(r"^(?:ssh://)?git@github\.com[:/](?P<owner>[^/]+)/(?P<repo>.+?)(?:\.git)?/?$")
_HTTPS_RE = re.compile(r"^https?://(?:[^@/]+@)?github\.com/(?P<owner>[^/]+)/(?P<repo>.+?)(?:\.git)?/?$")

GITIGNORE_PATTERNS = (".env", ".env*", ".env.*", "*.env")


def _git(*args: str, cwd: Optional[Path] = None) -> Optional[str]:
    """Run a git command; stdout on success, None otherwise."""
    try:
        result = subprocess.run(
            ["git", *args],
            capture_output=True, text=True, check=False,
            cwd=str(cwd) if cwd else None, timeout=10,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
        logger.debug("git %s failed: %s", args[0], exc.__class__.__name__)
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def parse_github_url(url: str) -> str:
    """`git@github.com:owner/repo.git` or `https://github.com/owner/repo` -> `owner/repo`.

    Raises:
        ValidationError: Not a GitHub remote.
    """
    url = (url or "").strip()
    for pattern in (_SSH_RE, _HTTPS_RE):
        match = pattern.match(url)
        if match and "/" not in match.group("repo"):
            return f"{match.group('owner')}/{match.group('repo')}"
    raise ValidationError(
        f"Not a GitHub URL: {url}",
        hint="Pass --repo owner/repo",
    )


def git_root(cwd: Optional[Path] = None) -> Optional[Path]:
    out = _git("rev-parse", "--show-toplevel", cwd=cwd)
    return Path(out) if out else None


def detect_repo(cwd: Optional[Path] = None) -> str:
    """The `owner/repo` of the origin remote.

    Raises:
        ValidationError: Not a git repository, no origin, or not GitHub.
    """
    if _git("rev-parse", "--is-inside-work-tree", cwd=cwd) != "true":
        raise ValidationError(
            "Not in a git repository",
            hint="Run inside a GitHub clone or pass --repo owner/repo",
        )
    remote = _git("remote", "get-url", "origin", cwd=cwd)
    if not remote:
        raise ValidationError(
            "No remote origin configured",
            hint="Add a GitHub origin remote or pass --repo owner/repo",
        )
    return parse_github_url(remote)


def check_env_gitignore(cwd: Optional[Path] = None) -> bool:
    """True when the repository's .gitignore covers .env files.

    Outside a git repository there is nothing to leak, so True.
    """
    root = git_root(cwd)
    if root is None:
        return True
    try:
        lines = (root / ".gitignore").read_text(encoding="utf-8").splitlines()
    except OSError:
        return False
    for line in lines:
        line = line.strip()
        if line and not line.startswith("#") and line.lstrip("/") in GITIGNORE_PATTERNS:
            return True
    return False
