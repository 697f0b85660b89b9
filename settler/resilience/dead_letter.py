"""
Dead letter queue for saga steps that failed for good.

Entries carry enough context to replay by hand. They are never deleted;
resolving one marks it and appends to its history.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

import structlog

from ..exceptions import DeadLetterEntryNotFoundError
from ..models import utcnow

logger = structlog.get_logger()


@dataclass
class DeadLetterEntry:
    tenant_id: str
    aggregate_id: str
    aggregate_type: str
    error: str
    payload: Dict[str, Any] = field(default_factory=dict)
    error_type: Optional[str] = None
    step: Optional[str] = None
    attempts: int = 0
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None
    history: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "aggregate_id": self.aggregate_id,
            "aggregate_type": self.aggregate_type,
            "error": self.error,
            "error_type": self.error_type,
            "step": self.step,
            "attempts": self.attempts,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
            "resolved": self.resolved,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
            "resolution_notes": self.resolution_notes,
            "history": list(self.history),
        }


class DeadLetterQueue:
    """In-memory, thread-safe dead letter store."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._entries: Dict[str, DeadLetterEntry] = {}
        self._lock = threading.Lock()

    def add_entry(
        self,
        tenant_id: str,
        aggregate_id: str,
        aggregate_type: str,
        error: str,
        payload: Optional[Dict[str, Any]] = None,
        error_type: Optional[str] = None,
        step: Optional[str] = None,
        attempts: int = 0,
    ) -> DeadLetterEntry:
        now = self.clock()
        entry = DeadLetterEntry(
            tenant_id=tenant_id,
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            error=error,
            payload=dict(payload or {}),
            error_type=error_type,
            step=step,
            attempts=attempts,
            created_at=now,
            history=[{"action": "created", "at": now.isoformat(), "notes": error}],
        )
        with self._lock:
            self._entries[entry.id] = entry

        logger.error(
            "Dead letter entry created",
            entry_id=entry.id,
            tenant_id=tenant_id,
            aggregate_id=aggregate_id,
            step=step,
            error=error,
        )
        return entry

    def get_entry(self, entry_id: str) -> DeadLetterEntry:
        with self._lock:
            return self._entry(entry_id)

    def _entry(self, entry_id: str) -> DeadLetterEntry:
        # Caller holds _lock
        entry = self._entries.get(entry_id)
        if entry is None:
            raise DeadLetterEntryNotFoundError(entry_id)
        return entry

    def get_unresolved_entries(self, limit: int = 100) -> List[DeadLetterEntry]:
        with self._lock:
            entries = [e for e in self._entries.values() if not e.resolved]
        entries.sort(key=lambda e: (e.created_at, e.id))
        return entries[:limit]

    def get_entries_by_tenant(self, tenant_id: str, limit: int = 100) -> List[DeadLetterEntry]:
        with self._lock:
            entries = [e for e in self._entries.values() if e.tenant_id == tenant_id]
        entries.sort(key=lambda e: (e.created_at, e.id))
        return entries[:limit]

    def get_entries_by_aggregate(self, aggregate_id: str) -> List[DeadLetterEntry]:
        with self._lock:
            return [e for e in self._entries.values() if e.aggregate_id == aggregate_id]

    def resolve_entry(self, entry_id: str, notes: str, resolved_by: Optional[str] = None) -> DeadLetterEntry:
        with self._lock:
            entry = self._entry(entry_id)
            now = self.clock()
            entry.resolved = True
            entry.resolved_at = now
            entry.resolved_by = resolved_by
            entry.resolution_notes = notes
            entry.history.append({"action": "resolved", "at": now.isoformat(), "by": resolved_by, "notes": notes})

        logger.info("Dead letter entry resolved", entry_id=entry_id, resolved_by=resolved_by)
        return entry

    def stats(self) -> Dict[str, int]:
        with self._lock:
            total = len(self._entries)
            unresolved = sum(1 for e in self._entries.values() if not e.resolved)
        return {"total": total, "unresolved": unresolved, "resolved": total - unresolved}
