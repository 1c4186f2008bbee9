"""
Leaked secret scanner.

Walks a directory tree and matches every non-comment line against a
set of known credential shapes (cloud keys, VCS tokens, payment keys,
private key headers, webhooks) plus two generic assignment patterns.

Usage:
    keyway scan
    keyway scan ./src --json
    keyway scan -e fixtures -e seeds

Findings carry a masked preview only. The matched text itself never
leaves this module.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Sequence

from .errors import ValidationError

logger = logging.getLogger("keyway.scan")

MAX_FILE_SIZE = 1024 * 1024


@dataclass(frozen=True)
class SecretPattern:
    """A named credential shape.

    Attributes:
        name: Finding type shown to the user.
        regex: Compiled pattern.
        description: Longer label.
    """

    name: str
    regex: re.Pattern
    description: str


def _p(name: str, pattern: str, description: str) -> SecretPattern:
    return SecretPattern(name, re.compile(pattern), description)


SECRET_PATTERNS: tuple[SecretPattern, ...] = (
    _p("AWS Access Key", r"\b((?:A3T[A-Z0-9]|AKIA|ASIA|ABIA|ACCA)[A-Z2-7]{16})\b", "AWS Access Key ID"),
    _p(
        "AWS Secret Key",
        r"""(?i)aws_secret_access_key\s*[=:]\s*['"]?([A-Za-z0-9/+=]{40})['"]?""",
        "AWS Secret Access Key",
    ),
    _p("GitHub PAT", r"ghp_[0-9a-zA-Z]{36}", "GitHub Personal Access Token"),
    _p("GitHub PAT (fine-grained)", r"github_pat_[0-9a-zA-Z_]{82}", "GitHub Fine-Grained Personal Access Token"),
    _p("GitHub OAuth", r"gho_[0-9a-zA-Z]{36}", "GitHub OAuth Token"),
    _p("GitHub App Token", r"ghu_[0-9a-zA-Z]{36}", "GitHub App User Token"),
    _p("GitHub Refresh Token", r"ghr_[0-9a-zA-Z]{36}", "GitHub Refresh Token"),
    _p("GitLab Token", r"glpat-[0-9a-zA-Z_-]{20,}", "GitLab Personal Access Token"),
    _p("Stripe Secret Key", r"sk_live_[0-9a-zA-Z]{24,}", "Stripe Live Secret Key"),
    _p("Stripe Publishable Key", r"pk_live_[0-9a-zA-Z]{24,}", "Stripe Live Publishable Key"),
    _p("Stripe Restricted Key", r"rk_live_[0-9a-zA-Z]{24,}", "Stripe Live Restricted Key"),
    _p(
        "Private Key",
        r"-----BEGIN\s+(RSA|EC|OPENSSH|DSA|PGP|ENCRYPTED)?\s*PRIVATE KEY-----",
        "Private Key Header",
    ),
    _p(
        "Slack Webhook",
        r"https://hooks\.slack\.com/services/T[a-zA-Z0-9_]{8,}/B[a-zA-Z0-9_]{8,}/[a-zA-Z0-9_]{24}",
        "Slack Webhook URL",
    ),
    _p("Slack Token", r"xox[baprs]-[0-9]{10,13}-[0-9]{10,13}[a-zA-Z0-9-]*", "Slack API Token"),
    _p("Twilio API Key", r"SK[0-9a-fA-F]{32}", "Twilio API Key"),
    _p("SendGrid API Key", r"SG\.[a-zA-Z0-9_-]{22}\.[a-zA-Z0-9_-]{43}", "SendGrid API Key"),
    _p("npm Token", r"npm_[a-zA-Z0-9]{36}", "npm Access Token"),
    _p(
        "Heroku API Key",
        r"""(?i)heroku[a-z_-]*[=:\s]+['"]?[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}['"]?""",
        "Heroku API Key",
    ),
    _p("Google API Key", r"AIza[0-9A-Za-z_-]{35}", "Google API Key"),
    _p("Discord Token", r"[MN][A-Za-z\d]{23,}\.[\w-]{6}\.[\w-]{27}", "Discord Bot Token"),
    _p(
        "Discord Webhook",
        r"https://discord(?:app)?\.com/api/webhooks/[0-9]{17,20}/[A-Za-z0-9_-]{60,68}",
        "Discord Webhook URL",
    ),
    # Generic shapes match more noise; keep them last.
    _p(
        "Generic API Key",
        r"""(?i)['"]?api[_-]?key['"]?\s*[=:]\s*['"]([a-zA-Z0-9_-]{20,})['"]""",
        "Generic API Key assignment",
    ),
    _p(
        "Generic Secret",
        r"""(?i)['"]?(?:secret|password|passwd|pwd)['"]?\s*[=:]\s*['"]([^'"]{8,})['"]""",
        "Generic secret assignment",
    ),
)

DEFAULT_EXCLUDES = (
    "node_modules", ".git", "vendor", "dist", "build", ".next", "__pycache__",
    ".venv", "venv", ".idea", ".vscode", "coverage", ".nyc_output",
)

BINARY_EXTENSIONS = frozenset({
    ".png", ".jpg", ".jpeg", ".gif", ".ico",
    ".pdf", ".zip", ".tar", ".gz", ".rar",
    ".exe", ".dll", ".so", ".dylib",
    ".woff", ".woff2", ".ttf", ".eot",
    ".mp3", ".mp4", ".wav", ".avi",
    ".bin", ".dat", ".db", ".sqlite",
    ".jar", ".class", ".pyc",
    ".lock",
})

_TEST_PATH_MARKERS = ("test", "spec", "example", "mock", "fixture", ".sample")

_PLACEHOLDERS = (
    "xxx", "your", "example", "placeholder", "changeme",
    "insert", "replace", "todo", "fixme", "dummy",
    "test", "fake", "mock", "sample", "demo",
    "<your", "${", "{{", "env[", "process.env",
)

_VARIABLE_REFERENCES = ("${", "$(", "process.env", "os.getenv", "ENV[")

_DOC_MARKERS = ("example:", "e.g.", "for example")


@dataclass
class Finding:
    """One suspected secret.

    Attributes:
        file: Path relative to the scan root.
        line: 1-based line number.
        type: Name of the pattern that matched.
        preview: Masked match.
    """

    file: str
    line: int
    type: str
    preview: str


@dataclass
class ScanResult:
    """Outcome of a scan."""

    root: str = ""
    files_scanned: int = 0
    findings: list[Finding] = field(default_factory=list)

    def by_file(self) -> dict[str, list[Finding]]:
        grouped: dict[str, list[Finding]] = {}
        for finding in self.findings:
            grouped.setdefault(finding.file, []).append(finding)
        return grouped

    def to_dict(self) -> dict:
        return {
            "filesScanned": self.files_scanned,
            "findings": [
                {"file": f.file, "line": f.line, "type": f.type, "preview": f.preview}
                for f in self.findings
            ],
        }


def mask_secret(secret: str) -> str:
    """Keep the first 4 and last 3 characters; short matches are fully masked."""
    if len(secret) <= 10:
        return "*" * len(secret)
    return secret[:4] + "*" * (len(secret) - 7) + secret[-3:]


def is_false_positive(match: str, line: str, rel_path: str) -> bool:
    """Heuristics for matches that are placeholders, references or docs."""
    lower_line = line.lower()
    lower_match = match.lower()
    lower_path = rel_path.lower()

    if any(marker in lower_path for marker in _TEST_PATH_MARKERS):
        return True
    if any(p in lower_match or p in lower_line for p in _PLACEHOLDERS):
        return True
    if any(ref in line for ref in _VARIABLE_REFERENCES):
        return True
    return any(marker in lower_line for marker in _DOC_MARKERS)


def scan_lines(
    lines: Iterable[str],
    rel_path: str,
    patterns: Sequence[SecretPattern] = SECRET_PATTERNS,
    show_all: bool = False,
) -> list[Finding]:
    """Match each line against every pattern.

    Blank lines and lines starting with `#` or `//` are skipped.
    """
    findings = []
    for lineno, line in enumerate(lines, start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith(("#", "//")):
            continue
        for pattern in patterns:
            for match in pattern.regex.finditer(line):
                text = match.group(0)
                if not show_all and is_false_positive(text, line, rel_path):
                    continue
                findings.append(Finding(rel_path, lineno, pattern.name, mask_secret(text)))
    return findings


def _excluded(name: str, rel_dir: str, excludes: Sequence[str]) -> bool:
    return any(name == ex or rel_dir.startswith(ex) for ex in excludes)


def _scan_file(path: Path, rel_path: str, show_all: bool) -> Optional[list[Finding]]:
    """Findings for one file, or None when it is skipped."""
    if path.suffix.lower() in BINARY_EXTENSIONS:
        return None
    try:
        if path.stat().st_size > MAX_FILE_SIZE:
            return None
        with path.open(encoding="utf-8", errors="replace") as fh:
            return scan_lines((line.rstrip("\r\n") for line in fh), rel_path, show_all=show_all)
    except OSError as exc:
        logger.debug("Skipping %s: %s", rel_path, exc.__class__.__name__)
        return None


def scan_path(
    root: Path,
    excludes: Sequence[str] = (),
    show_all: bool = False,
) -> ScanResult:
    """Scan a file or a directory tree.

    Args:
        root: File or directory to scan.
        excludes: Directory names or relative path prefixes added to
            DEFAULT_EXCLUDES.
        show_all: Keep matches the false-positive heuristics would drop.

    Returns:
        ScanResult: Files scanned and findings in walk order.

    Raises:
        ValidationError: The path does not exist.
    """
    root = Path(root).resolve()
    if not root.exists():
        raise ValidationError(f"Path does not exist: {root}")

    result = ScanResult(root=str(root))
    all_excludes = tuple(DEFAULT_EXCLUDES) + tuple(excludes)

    if root.is_file():
        found = _scan_file(root, root.name, show_all)
        if found is not None:
            result.files_scanned = 1
            result.findings.extend(found)
        return result

    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        rel_base = base.relative_to(root)
        dirnames[:] = sorted(
            d for d in dirnames
            if not _excluded(d, (rel_base / d).as_posix(), all_excludes)
        )
        for name in sorted(filenames):
            rel_path = (rel_base / name).as_posix()
            found = _scan_file(base / name, rel_path, show_all)
            if found is None:
                continue
            result.files_scanned += 1
            result.findings.extend(found)

    logger.debug("Scanned %d file(s), %d finding(s)", result.files_scanned, len(result.findings))
    return result
