"""
Local audit log: what this machine did with which secrets.

One JSON object per line in ~/.keyway/audit.log. Lines are only ever
appended, so a crash mid-write can cost at most the last line, which
read_audit_log() reports as UNKNOWN instead of failing.

Entries name keys and count them. They never contain a value or a
token.
"""

from __future__ import annotations

import json
import logging
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger("keyway.audit")

AUDIT_LOG_NAME = "audit.log"

EVENT_TYPES = ("LOGIN", "LOGOUT", "PUSH", "PULL", "RUN", "DIFF", "SYNC")


class AuditEntry(BaseModel):
    """One keyway command recorded against a vault environment.

    Attributes:
        timestamp: UTC time, ISO 8601.
        event_type: One of EVENT_TYPES.
        detail: What happened, in words. Key names only.
        host: Machine that ran the command.
        target: `owner/repo:environment`, when one was involved.
        metadata: Key lists, counts and flags for the command.
    """

    event_type: str
    detail: str
    target: Optional[str] = None
    metadata: Optional[dict] = None
    host: str = Field(default_factory=socket.gethostname)
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


def audit_event(
    home: Path,
    event_type: str,
    detail: str,
    target: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> Optional[AuditEntry]:
    """Append a structured event to the audit log.

    Args:
        home: Agent home directory (~/.keyway).
        event_type: One of LOGIN, LOGOUT, PUSH, PULL, RUN, DIFF, SYNC.
        detail: Human-readable description (no secret values).
        target: Optional `owner/repo:environment` the event touched.
        metadata: Optional key names and counts.

    Returns:
        The entry that was written, or None if the log is not writable.
    """
    entry = AuditEntry(
        event_type=event_type,
        detail=detail,
        target=target,
        metadata=metadata,
    )
    try:
        home.mkdir(parents=True, exist_ok=True)
        with (home / AUDIT_LOG_NAME).open("a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")
    except OSError as exc:
        logger.warning("Could not write audit log: %s", exc)
        return None
    return entry


def read_audit_log(home: Path, limit: int = 0) -> list[AuditEntry]:
    """Read and parse the audit log.

    Unparseable lines are kept as event_type="UNKNOWN" entries.

    Args:
        home: Agent home directory.
        limit: Maximum entries to return (0 = all); the newest are kept.

    Returns:
        list[AuditEntry]: Parsed audit entries, oldest first.
    """
    audit_log = home / AUDIT_LOG_NAME
    if not audit_log.exists():
        return []

    entries: list[AuditEntry] = []
    for line in audit_log.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(AuditEntry.model_validate(json.loads(line)))
        except (json.JSONDecodeError, ValidationError):
            entries.append(AuditEntry(event_type="UNKNOWN", detail=line))

    if limit > 0:
        entries = entries[-limit:]

    return entries
