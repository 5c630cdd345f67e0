"""Audit log for the actions the reconciler takes on certificates."""

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    CERTIFICATE_ISSUE = "certificate_issue"
    CERTIFICATE_ROTATE = "certificate_rotate"
    CERTIFICATE_EXPIRED = "certificate_expired"
    CERTIFICATE_PURGE = "certificate_purge"
    WORKLOAD_RELOAD = "workload_reload"
    FINALIZER_CLEAR = "finalizer_clear"


@dataclass
class AuditEntry:
    action: AuditAction
    target: str
    detail: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    entry_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def to_dict(self) -> dict:
        return {
            "entry_id": self.entry_id,
            "action": self.action.value,
            "target": self.target,
            "detail": self.detail,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AuditEntry":
        return cls(
            entry_id=data.get("entry_id", ""),
            action=AuditAction(data["action"]),
            target=data.get("target", ""),
            detail=data.get("detail", ""),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


MAX_ENTRIES = 10000


class AuditLog:
    """JSON-file-backed audit log, newest entry first.

    A failed audit write is logged and dropped; it never fails the
    reconcile that produced it.
    """

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def log(self, action, target: str, detail: str = "") -> AuditEntry:
        if isinstance(action, str):
            action = AuditAction(action)
        entry = AuditEntry(action=action, target=target, detail=detail)
        with self._lock:
            data = self._load()
            data.insert(0, entry.to_dict())
            if len(data) > MAX_ENTRIES:
                data = data[:MAX_ENTRIES]
            self._save(data)
        return entry

    def list_all(self, limit: int = 500) -> list[AuditEntry]:
        data = self._load()
        return [AuditEntry.from_dict(d) for d in data[:limit]]

    def filter(
        self,
        action: AuditAction = None,
        target: str = None,
        since: datetime = None,
        limit: int = 500,
    ) -> list[AuditEntry]:
        entries = self.list_all(limit=MAX_ENTRIES)
        if action:
            entries = [e for e in entries if e.action == action]
        if since:
            entries = [e for e in entries if e.timestamp >= since]
        if target:
            t = target.lower()
            entries = [e for e in entries if t in e.target.lower()]
        return entries[:limit]

    def _load(self) -> list[dict]:
        if self._path.exists():
            try:
                return json.loads(self._path.read_text())
            except json.JSONDecodeError as e:
                backup = self._path.with_name(self._path.name + ".corrupt")
                logger.warning(
                    "Audit log %s is corrupt, moving it to %s and starting a new one: %s",
                    self._path, backup, e,
                )
                try:
                    self._path.replace(backup)
                except OSError as move_error:
                    logger.warning("Failed to move audit log %s: %s", self._path, move_error)
                return []
            except OSError as e:
                logger.warning("Failed to read audit log %s: %s", self._path, e)
                return []
        return []

    def _save(self, data: list[dict]) -> None:
        try:
            self._path.write_text(json.dumps(data, indent=2, default=str))
        except OSError as e:
            logger.warning("Failed to write audit log %s: %s", self._path, e)
