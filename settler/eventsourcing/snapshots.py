"""
Snapshot policy and aggregate rebuild.
"""

import copy
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from ..config import get_settings
from .envelope import EventEnvelope, SnapshotEnvelope
from .store import EventStore

logger = structlog.get_logger()

Reducer = Callable[[Dict[str, Any], EventEnvelope], Dict[str, Any]]


@dataclass(frozen=True)
class SnapshotPolicy:
    snapshot_every_n_events: int = 100
    max_events_without_snapshot: int = 200

    @classmethod
    def from_settings(cls) -> "SnapshotPolicy":
        settings = get_settings()
        return cls(
            snapshot_every_n_events=settings.snapshot_every_n_events,
            max_events_without_snapshot=settings.max_events_without_snapshot,
        )


class SnapshotService:
    """
    Decides when to snapshot, writes snapshots paired with the last event
    they fold, and rebuilds state from (snapshot, later events).
    """

    def __init__(self, event_store: EventStore, policy: Optional[SnapshotPolicy] = None):
        self.event_store = event_store
        self.policy = policy or SnapshotPolicy.from_settings()

    def should_create_snapshot(self, aggregate_id: str, aggregate_type: str) -> bool:
        snapshot = self.event_store.get_latest_snapshot(aggregate_id, aggregate_type)
        if snapshot is None:
            count = self.event_store.get_version(aggregate_id, aggregate_type)
            return count >= self.policy.max_events_without_snapshot

        since = self.event_store.get_events_after_snapshot(aggregate_id, aggregate_type, snapshot)
        return len(since) >= self.policy.snapshot_every_n_events

    def create_snapshot(
        self,
        aggregate_id: str,
        aggregate_type: str,
        snapshot_data: Dict[str, Any],
        event: EventEnvelope,
    ) -> SnapshotEnvelope:
        """Snapshot `snapshot_data`, which must be the state after folding `event`."""
        latest = self.event_store.get_latest_snapshot(aggregate_id, aggregate_type)
        snapshot = SnapshotEnvelope(
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            snapshot_data=copy.deepcopy(snapshot_data),
            snapshot_version=latest.snapshot_version + 1 if latest else 1,
            event_id=event.id,
            event_sequence=event.sequence,
        )
        self.event_store.save_snapshot(snapshot)
        logger.info(
            "Snapshot created",
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            snapshot_version=snapshot.snapshot_version,
            event_sequence=snapshot.event_sequence,
        )
        return snapshot

    def load(
        self,
        aggregate_id: str,
        aggregate_type: str,
        initial_state: Dict[str, Any],
        reducer: Reducer,
    ) -> Tuple[Dict[str, Any], Optional[EventEnvelope]]:
        """State plus the last event folded into it (None for an empty stream)."""
        snapshot = self.event_store.get_latest_snapshot(aggregate_id, aggregate_type)
        last_event: Optional[EventEnvelope] = None

        if snapshot is not None:
            state = copy.deepcopy(snapshot.snapshot_data)
            events: List[EventEnvelope] = self.event_store.get_events_after_snapshot(
                aggregate_id, aggregate_type, snapshot
            )
            if not events:
                tail = self.event_store.get_events(aggregate_id, aggregate_type, after_sequence=snapshot.event_sequence - 1)
                last_event = tail[0] if tail else None
        else:
            state = copy.deepcopy(initial_state)
            events = self.event_store.get_events(aggregate_id, aggregate_type)

        for event in events:
            state = reducer(state, event)
            last_event = event
        return state, last_event

    def rebuild(
        self,
        aggregate_id: str,
        aggregate_type: str,
        initial_state: Dict[str, Any],
        reducer: Reducer,
    ) -> Dict[str, Any]:
        state, _ = self.load(aggregate_id, aggregate_type, initial_state, reducer)
        return state

    def maybe_snapshot(
        self,
        aggregate_id: str,
        aggregate_type: str,
        initial_state: Dict[str, Any],
        reducer: Reducer,
    ) -> Optional[SnapshotEnvelope]:
        """Snapshot if the policy asks for it. State and pairing come from one read."""
        if not self.should_create_snapshot(aggregate_id, aggregate_type):
            return None
        state, last_event = self.load(aggregate_id, aggregate_type, initial_state, reducer)
        if last_event is None:
            return None
        return self.create_snapshot(aggregate_id, aggregate_type, state, last_event)
