"""
Operator-facing inspection and control of sagas, events and dead letters.

Calls made on behalf of a tenant pass `tenant_id`; resources of any other
tenant are refused with SecurityError.
"""

from typing import Any, Dict, List, Optional

import structlog

from .eventsourcing import reconciliation as events
from .eventsourcing.envelope import EventEnvelope
from .eventsourcing.store import EventStore
from .exceptions import SecurityError
from .models import ExecutionSummary
from .resilience.dead_letter import DeadLetterEntry, DeadLetterQueue
from .sagas.orchestrator import SagaOrchestrator

logger = structlog.get_logger()


class AdminService:
    """Admin operations over an orchestrator, its event store and dead letter queue."""

    def __init__(
        self,
        orchestrator: SagaOrchestrator,
        event_store: Optional[EventStore] = None,
        dead_letter_queue: Optional[DeadLetterQueue] = None,
    ):
        self.orchestrator = orchestrator
        self.event_store = event_store or orchestrator.event_store
        self.dead_letter_queue = dead_letter_queue or orchestrator.dead_letter_queue

    def _check_saga_tenant(self, saga_id: str, tenant_id: Optional[str]) -> None:
        if tenant_id is None:
            return
        owner = self.orchestrator.load_state(saga_id)["tenant_id"]
        if owner != tenant_id:
            logger.warning("Cross-tenant admin call refused", saga_id=saga_id, tenant_id=tenant_id)
            raise SecurityError(
                f"Saga {saga_id} belongs to another tenant",
                tenant_id=tenant_id,
                resource_tenant_id=owner,
            )

    # Sagas

    def get_saga_status(self, saga_id: str, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        self._check_saga_tenant(saga_id, tenant_id)
        return self.orchestrator.get_saga_status(saga_id)

    def list_sagas(self, tenant_id: Optional[str] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.orchestrator.list_sagas(tenant_id=tenant_id, status=status)

    async def resume_saga(self, saga_id: str, tenant_id: Optional[str] = None, user_id: Optional[str] = None) -> Dict[str, Any]:
        self._check_saga_tenant(saga_id, tenant_id)
        return await self.orchestrator.resume_saga(saga_id, user_id=user_id)

    async def retry_saga(self, saga_id: str, tenant_id: Optional[str] = None, user_id: Optional[str] = None) -> Dict[str, Any]:
        self._check_saga_tenant(saga_id, tenant_id)
        return await self.orchestrator.retry_saga(saga_id, user_id=user_id)

    async def cancel_saga(
        self,
        saga_id: str,
        tenant_id: Optional[str] = None,
        reason: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        self._check_saga_tenant(saga_id, tenant_id)
        return await self.orchestrator.cancel_saga(saga_id, reason=reason, user_id=user_id)

    # Events

    def list_events_for_aggregate(
        self,
        aggregate_id: str,
        aggregate_type: str = events.AGGREGATE_TYPE,
        tenant_id: Optional[str] = None,
    ) -> List[EventEnvelope]:
        found = self.event_store.get_events(aggregate_id, aggregate_type)
        return self._scoped(found, tenant_id)

    def list_events_by_correlation_id(self, correlation_id: str, tenant_id: Optional[str] = None) -> List[EventEnvelope]:
        return self._scoped(self.event_store.get_events_by_correlation_id(correlation_id), tenant_id)

    def list_events_by_type(self, event_type: str, tenant_id: Optional[str] = None, limit: Optional[int] = None) -> List[EventEnvelope]:
        return self.event_store.get_events_by_type(event_type, tenant_id=tenant_id, limit=limit)

    def _scoped(self, found: List[EventEnvelope], tenant_id: Optional[str]) -> List[EventEnvelope]:
        if tenant_id is None:
            return found
        foreign = {e.metadata.tenant_id for e in found if e.metadata.tenant_id != tenant_id}
        if foreign:
            raise SecurityError(
                "Events belong to another tenant",
                tenant_id=tenant_id,
                resource_tenant_id=sorted(foreign)[0],
            )
        return found

    # Dead letters

    def get_dead_letter_entries(self, tenant_id: Optional[str] = None, limit: int = 100) -> List[DeadLetterEntry]:
        if tenant_id:
            return self.dead_letter_queue.get_entries_by_tenant(tenant_id, limit)
        return self.dead_letter_queue.get_unresolved_entries(limit)

    def resolve_dead_letter_entry(
        self,
        entry_id: str,
        notes: str,
        tenant_id: Optional[str] = None,
        resolved_by: Optional[str] = None,
    ) -> DeadLetterEntry:
        entry = self.dead_letter_queue.get_entry(entry_id)
        if tenant_id is not None and entry.tenant_id != tenant_id:
            raise SecurityError(
                f"Dead letter entry {entry_id} belongs to another tenant",
                tenant_id=tenant_id,
                resource_tenant_id=entry.tenant_id,
            )
        return self.dead_letter_queue.resolve_entry(entry_id, notes, resolved_by=resolved_by)

    # Dry run

    def dry_run_reconciliation(
        self,
        saga_id: str,
        history: Optional[List[EventEnvelope]] = None,
        tenant_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Replay historical events without writing anything and report the
        outcome counts they imply.
        """
        if history is None:
            history = self.list_events_for_aggregate(saga_id, tenant_id=tenant_id)
        else:
            history = self._scoped(history, tenant_id)

        matched = sum(1 for e in history if e.event_type == events.RECORD_MATCHED)
        unmatched = sum(1 for e in history if e.event_type == events.EXCEPTION_RAISED)
        errors = sum(1 for e in history if e.event_type == events.RECONCILIATION_FAILED)

        state = events.fold(history)
        superseded = sum(1 for m in state["matches"].values() if m.get("superseded"))

        result = ExecutionSummary.compute(matched - superseded, unmatched, errors).to_dict()
        result.update({
            "saga_id": saga_id,
            "events_replayed": len(history),
            "superseded": superseded,
            "status": state["status"],
        })
        return result
