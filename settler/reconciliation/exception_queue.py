"""
Exception queue: review lifecycle of unmatched and ambiguous records.

Records move open -> in_progress -> resolved | ignored through explicit
operator actions only. Nothing is ever removed; every transition is kept
in the record's history.
"""

import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

import structlog

from ..exceptions import ExceptionRecordNotFoundError, InvalidTransitionError, SecurityError
from ..models import (
    ExceptionCategory,
    ExceptionRecord,
    ExceptionSeverity,
    ResolutionStatus,
    utcnow,
)

logger = structlog.get_logger()

_CLOSED = (ResolutionStatus.RESOLVED, ResolutionStatus.IGNORED)


class ExceptionQueue:
    """Tenant-scoped store of ExceptionRecords."""

    def __init__(self, tenant_id: str, clock: Callable[[], datetime] = utcnow):
        self.tenant_id = tenant_id
        self.clock = clock
        self._records: Dict[str, ExceptionRecord] = {}
        self._history: Dict[str, List[dict]] = {}
        self._lock = threading.Lock()

    def add_many(self, exceptions: Iterable[ExceptionRecord]) -> int:
        """Add new records; ids already present are left untouched. Returns the number added."""
        exceptions = list(exceptions)
        for exception in exceptions:
            self._check_tenant(exception)

        added = 0
        with self._lock:
            for exception in exceptions:
                if exception.id in self._records:
                    continue
                self._records[exception.id] = exception
                self._history[exception.id] = [{
                    "status": exception.resolution_status.value,
                    "at": exception.created_at.isoformat(),
                    "by": None,
                    "notes": None,
                }]
                added += 1

        if added:
            logger.info("Exceptions queued", tenant_id=self.tenant_id, added=added)
        return added

    def add(self, exception: ExceptionRecord) -> bool:
        return self.add_many([exception]) == 1

    def get(self, exception_id: str) -> ExceptionRecord:
        record = self._records.get(exception_id)
        if record is None:
            raise ExceptionRecordNotFoundError(exception_id)
        return record

    def list(
        self,
        status: Optional[ResolutionStatus] = None,
        category: Optional[ExceptionCategory] = None,
        severity: Optional[ExceptionSeverity] = None,
    ) -> List[ExceptionRecord]:
        records = sorted(self._records.values(), key=lambda e: (e.created_at, e.id))
        if status is not None:
            records = [e for e in records if e.resolution_status is status]
        if category is not None:
            records = [e for e in records if e.category is category]
        if severity is not None:
            records = [e for e in records if e.severity is severity]
        return records

    def get_open(self) -> List[ExceptionRecord]:
        return [e for e in self.list() if e.is_open]

    def open_for_record(self, record_id: str) -> List[ExceptionRecord]:
        return [
            e for e in self.get_open()
            if record_id in (e.related_transaction_id, e.related_settlement_id)
        ]

    def start_review(self, exception_id: str, user_id: Optional[str] = None) -> ExceptionRecord:
        return self._transition(exception_id, ResolutionStatus.IN_PROGRESS, user_id, None, allowed=(ResolutionStatus.OPEN,))

    def resolve(self, exception_id: str, notes: Optional[str] = None, resolved_by: Optional[str] = None) -> ExceptionRecord:
        return self._transition(exception_id, ResolutionStatus.RESOLVED, resolved_by, notes)

    def ignore(self, exception_id: str, notes: Optional[str] = None, resolved_by: Optional[str] = None) -> ExceptionRecord:
        return self._transition(exception_id, ResolutionStatus.IGNORED, resolved_by, notes)

    def bulk_resolve(
        self,
        exception_ids: Iterable[str],
        notes: Optional[str] = None,
        resolved_by: Optional[str] = None,
    ) -> List[ExceptionRecord]:
        """Resolve several records; all ids are checked before any is changed."""
        exception_ids = list(dict.fromkeys(exception_ids))
        for exception_id in exception_ids:
            record = self.get(exception_id)
            if record.resolution_status in _CLOSED:
                raise InvalidTransitionError(exception_id, record.resolution_status.value, "resolve", entity="exception")
        return [self.resolve(i, notes=notes, resolved_by=resolved_by) for i in exception_ids]

    def history(self, exception_id: str) -> List[dict]:
        self.get(exception_id)
        return [dict(h) for h in self._history[exception_id]]

    def stats(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in ResolutionStatus}
        for record in self._records.values():
            counts[record.resolution_status.value] += 1
        counts["total"] = len(self._records)
        return counts

    def _check_tenant(self, exception: ExceptionRecord) -> None:
        if exception.tenant_id != self.tenant_id:
            raise SecurityError(
                f"Exception {exception.id} belongs to another tenant",
                tenant_id=self.tenant_id,
                resource_tenant_id=exception.tenant_id,
            )

    def _transition(
        self,
        exception_id: str,
        target: ResolutionStatus,
        user_id: Optional[str],
        notes: Optional[str],
        allowed=(ResolutionStatus.OPEN, ResolutionStatus.IN_PROGRESS),
    ) -> ExceptionRecord:
        with self._lock:
            record = self.get(exception_id)
            if record.resolution_status not in allowed:
                raise InvalidTransitionError(
                    exception_id, record.resolution_status.value, target.value, entity="exception"
                )
            now = self.clock()
            closing = target in _CLOSED
            updated = replace(
                record,
                resolution_status=target,
                updated_at=now,
                resolved_by=user_id if closing else record.resolved_by,
                resolution_notes=notes if closing else record.resolution_notes,
            )
            self._records[exception_id] = updated
            self._history[exception_id].append({
                "status": target.value,
                "at": now.isoformat(),
                "by": user_id,
                "notes": notes,
            })

        logger.info(
            "Exception status changed",
            tenant_id=self.tenant_id,
            exception_id=exception_id,
            status=target.value,
            by=user_id,
        )
        return updated
