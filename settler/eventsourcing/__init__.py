"""Event sourcing: envelopes, store, snapshots and the reconciliation reducer."""

from .envelope import EventEnvelope, EventMetadata, SnapshotEnvelope, create_event
from .reconciliation import (
    AGGREGATE_TYPE,
    apply_event,
    fold,
    initial_state,
    pending_steps,
    project_execution,
)
from .snapshots import SnapshotPolicy, SnapshotService
from .store import EventStore, InMemoryEventStore

__all__ = [
    "EventEnvelope",
    "EventMetadata",
    "SnapshotEnvelope",
    "create_event",
    "EventStore",
    "InMemoryEventStore",
    "SnapshotPolicy",
    "SnapshotService",
    "AGGREGATE_TYPE",
    "apply_event",
    "fold",
    "initial_state",
    "pending_steps",
    "project_execution",
]
