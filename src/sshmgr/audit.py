"""
Audit trail -- who synced, restored, connected, and when.

JSONL, one object per line, append-only. Entries carry host names and
counts, never secrets or tokens.
"""

from __future__ import annotations

import json
import logging
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger("sshmgr.audit")

AUDIT_LOG_NAME = "audit.log"


class AuditEntry(BaseModel):
    """A single structured audit log entry."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    event_type: str
    detail: str
    host: str = Field(default_factory=socket.gethostname)
    metadata: Optional[dict] = None


def audit_event(
    home: Path,
    event_type: str,
    detail: str,
    metadata: Optional[dict] = None,
) -> AuditEntry:
    """Append a structured event to the audit log.

    Args:
        home: sshmgr home directory.
        event_type: Event category (UNLOCK, SYNC_PULL, SYNC_PUSH,
            SYNC_RESTORE, SYNC_FAILED, CREDENTIAL_DELETE, SESSION_START,
            SESSION_END).
        detail: Human-readable event description.
        metadata: Optional dict of extra structured data.

    Returns:
        AuditEntry: The entry that was written.
    """
    home.mkdir(mode=0o700, parents=True, exist_ok=True)
    entry = AuditEntry(event_type=event_type, detail=detail, metadata=metadata)
    with (home / AUDIT_LOG_NAME).open("a", encoding="utf-8") as f:
        f.write(entry.model_dump_json() + "\n")
    return entry


def safe_audit(home: Path, event_type: str, detail: str, metadata: Optional[dict] = None) -> None:
    """audit_event() that logs instead of raising when the log is unwritable."""
    try:
        audit_event(home, event_type, detail, metadata)
    except OSError as exc:
        logger.warning("Failed to write audit entry %s: %s", event_type, exc)


def read_audit_log(home: Path, limit: int = 0) -> list[AuditEntry]:
    """Read the audit log (0 = all entries, otherwise the newest ``limit``).

    Unparseable lines come back as event_type="UNPARSEABLE".
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
            entries.append(AuditEntry(event_type="UNPARSEABLE", detail=line))

    if limit > 0:
        entries = entries[-limit:]
    return entries
