"""
Event store with optimistic concurrency.
"""

import copy
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

import structlog

from ..exceptions import VersionConflictError
from .envelope import EventEnvelope, SnapshotEnvelope

logger = structlog.get_logger()

StreamKey = Tuple[str, str]


class EventStore(ABC):
    """Append-only, per-aggregate event streams plus snapshots."""

    @abstractmethod
    def append(
        self,
        aggregate_id: str,
        aggregate_type: str,
        events: List[EventEnvelope],
        expected_version: int,
    ) -> int:
        """
        Append events if the stream is at `expected_version`; return the new
        version. Raises VersionConflictError otherwise.
        """

    @abstractmethod
    def get_events(self, aggregate_id: str, aggregate_type: str, after_sequence: int = 0) -> List[EventEnvelope]:
        """Events in stream order with sequence > after_sequence."""

    @abstractmethod
    def get_version(self, aggregate_id: str, aggregate_type: str) -> int:
        """Current stream version (0 for a new stream)."""

    @abstractmethod
    def get_events_by_type(self, event_type: str, tenant_id: Optional[str] = None, limit: Optional[int] = None) -> List[EventEnvelope]:
        pass

    @abstractmethod
    def get_events_by_correlation_id(self, correlation_id: str) -> List[EventEnvelope]:
        pass

    @abstractmethod
    def list_aggregate_ids(self, aggregate_type: str) -> List[str]:
        pass

    @abstractmethod
    def save_snapshot(self, snapshot: SnapshotEnvelope) -> None:
        pass

    @abstractmethod
    def get_latest_snapshot(self, aggregate_id: str, aggregate_type: str) -> Optional[SnapshotEnvelope]:
        pass

    def get_events_after_snapshot(
        self,
        aggregate_id: str,
        aggregate_type: str,
        snapshot: SnapshotEnvelope,
    ) -> List[EventEnvelope]:
        """Events the snapshot does not cover."""
        return self.get_events(aggregate_id, aggregate_type, after_sequence=snapshot.event_sequence)


class InMemoryEventStore(EventStore):
    """Thread-safe in-process store. Event data is copied on the way in."""

    def __init__(self):
        self._streams: Dict[StreamKey, List[EventEnvelope]] = defaultdict(list)
        self._snapshots: Dict[StreamKey, List[SnapshotEnvelope]] = defaultdict(list)
        self._log: List[EventEnvelope] = []  # Global append order
        self._lock = threading.Lock()

    def append(
        self,
        aggregate_id: str,
        aggregate_type: str,
        events: List[EventEnvelope],
        expected_version: int,
    ) -> int:
        key = (aggregate_id, aggregate_type)
        for event in events:
            if (event.aggregate_id, event.aggregate_type) != key:
                raise ValueError(
                    f"Event {event.id} targets {event.aggregate_type}/{event.aggregate_id}, "
                    f"not {aggregate_type}/{aggregate_id}"
                )

        with self._lock:
            stream = self._streams[key]
            actual = len(stream)
            if actual != expected_version:
                logger.warning(
                    "Event append rejected",
                    aggregate_id=aggregate_id,
                    aggregate_type=aggregate_type,
                    expected_version=expected_version,
                    actual_version=actual,
                )
                raise VersionConflictError(aggregate_id, aggregate_type, expected_version, actual)

            for offset, event in enumerate(events, start=1):
                stored = replace(event, data=copy.deepcopy(event.data), sequence=actual + offset)
                stream.append(stored)
                self._log.append(stored)

            return len(stream)

    def get_events(self, aggregate_id: str, aggregate_type: str, after_sequence: int = 0) -> List[EventEnvelope]:
        with self._lock:
            stream = list(self._streams.get((aggregate_id, aggregate_type), []))
        return [e for e in stream if e.sequence > after_sequence]

    def get_version(self, aggregate_id: str, aggregate_type: str) -> int:
        with self._lock:
            return len(self._streams.get((aggregate_id, aggregate_type), []))

    def get_events_by_type(self, event_type: str, tenant_id: Optional[str] = None, limit: Optional[int] = None) -> List[EventEnvelope]:
        with self._lock:
            events = [
                e for e in self._log
                if e.event_type == event_type and (tenant_id is None or e.metadata.tenant_id == tenant_id)
            ]
        return events[:limit] if limit is not None else events

    def get_events_by_correlation_id(self, correlation_id: str) -> List[EventEnvelope]:
        with self._lock:
            return [e for e in self._log if e.metadata.correlation_id == correlation_id]

    def list_aggregate_ids(self, aggregate_type: str) -> List[str]:
        with self._lock:
            return [aid for (aid, atype), stream in self._streams.items() if atype == aggregate_type and stream]

    def save_snapshot(self, snapshot: SnapshotEnvelope) -> None:
        key = (snapshot.aggregate_id, snapshot.aggregate_type)
        with self._lock:
            stream = self._streams.get(key, [])
            if snapshot.event_sequence < 1 or snapshot.event_sequence > len(stream):
                raise ValueError(
                    f"Snapshot references sequence {snapshot.event_sequence}, stream has {len(stream)} events"
                )
            if stream[snapshot.event_sequence - 1].id != snapshot.event_id:
                raise ValueError(f"Snapshot event id {snapshot.event_id} does not match the stream")

            existing = self._snapshots[key]
            latest_version = existing[-1].snapshot_version if existing else 0
            if snapshot.snapshot_version != latest_version + 1:
                raise VersionConflictError(
                    snapshot.aggregate_id,
                    f"{snapshot.aggregate_type}:snapshot",
                    latest_version + 1,
                    snapshot.snapshot_version,
                )
            existing.append(replace(snapshot, snapshot_data=copy.deepcopy(snapshot.snapshot_data)))

    def get_latest_snapshot(self, aggregate_id: str, aggregate_type: str) -> Optional[SnapshotEnvelope]:
        with self._lock:
            snapshots = self._snapshots.get((aggregate_id, aggregate_type))
            return snapshots[-1] if snapshots else None
