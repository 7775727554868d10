"""Audit trail for role grants, moderation decisions, and trust adjustments.

Entries are appended as newline-delimited JSON to daily files under
``<home>/audit_logs/``. Denied attempts are recorded too, with
``success=False`` and the error code, so a refused action leaves a trace.
"""

from __future__ import annotations

import csv
import io
import json
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from anontrust.errors import StorageUnavailable
from anontrust.storage import ensure_dir

RESOURCE_ROLE = "role"
RESOURCE_MODERATION_ITEM = "moderation_item"
RESOURCE_TRUST = "trust"
RESOURCE_IDENTITY = "identity"


@dataclass
class AuditEntry:
    """A single audit log entry."""

    id: str
    timestamp: str
    actor: str
    action: str
    resource_type: str
    resource_id: str
    details: dict[str, Any] = field(default_factory=dict)
    success: bool = True
    error_code: str = ""


class AuditLogger:
    """File-based JSONL audit logger."""

    def __init__(self, base_dir: Optional[Path] = None) -> None:
        self._base_dir = ensure_dir(Path(base_dir) if base_dir else Path.home() / ".anontrust" / "audit_logs")
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _log_file_for_date(self, dt: datetime) -> Path:
        return self._base_dir / f"{dt.strftime('%Y-%m-%d')}.jsonl"

    def _read_all_entries(self) -> list[AuditEntry]:
        entries: list[AuditEntry] = []
        for path in sorted(self._base_dir.glob("*.jsonl")):
            try:
                text = path.read_text(encoding="utf-8")
            except OSError as exc:
                raise StorageUnavailable(f"Cannot read {path.name}: {exc}") from exc
            for line in text.splitlines():
                if not line.strip():
                    continue
                try:
                    entries.append(AuditEntry(**json.loads(line)))
                except (json.JSONDecodeError, TypeError):
                    # A torn final line from an interrupted append.
                    continue
        return entries

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def log_event(
        self,
        actor: str,
        action: str,
        resource_type: str,
        resource_id: str,
        details: Optional[dict[str, Any]] = None,
        success: bool = True,
        error_code: str = "",
    ) -> AuditEntry:
        """Record an audit event and return the created entry."""
        now = datetime.now(timezone.utc)
        entry = AuditEntry(
            id=uuid.uuid4().hex[:16],
            timestamp=now.isoformat(),
            actor=actor,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details or {},
            success=success,
            error_code=error_code,
        )
        line = json.dumps(asdict(entry), ensure_ascii=False) + "\n"
        with self._lock:
            try:
                with self._log_file_for_date(now).open("a", encoding="utf-8") as fh:
                    fh.write(line)
            except OSError as exc:
                raise StorageUnavailable(f"Cannot write audit log: {exc}") from exc
        return entry

    def get_events(
        self,
        *,
        actor: Optional[str] = None,
        action: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        limit: int = 200,
    ) -> list[AuditEntry]:
        """Return filtered audit events, newest first."""
        entries = self._read_all_entries()

        if actor:
            entries = [e for e in entries if e.actor == actor]
        if action:
            entries = [e for e in entries if e.action == action]
        if resource_type:
            entries = [e for e in entries if e.resource_type == resource_type]
        if resource_id:
            entries = [e for e in entries if e.resource_id == resource_id]

        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries[:limit]

    def export_events(self, fmt: str = "json", **filters: Any) -> str:
        """Export audit events as ``json`` or ``csv``."""
        entries = self.get_events(**filters)
        if fmt == "csv":
            buf = io.StringIO()
            writer = csv.writer(buf)
            writer.writerow(
                ["id", "timestamp", "actor", "action", "resource_type", "resource_id", "success", "error_code"]
            )
            for e in entries:
                writer.writerow(
                    [e.id, e.timestamp, e.actor, e.action, e.resource_type, e.resource_id, e.success, e.error_code]
                )
            return buf.getvalue()
        if fmt != "json":
            raise ValueError(f"Unsupported export format '{fmt}'")
        return json.dumps([asdict(e) for e in entries], indent=2, ensure_ascii=False)
