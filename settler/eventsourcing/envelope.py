"""Event and snapshot envelopes."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from ..models import utcnow


@dataclass(frozen=True)
class EventMetadata:
    tenant_id: str
    user_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    correlation_id: Optional[str] = None
    causation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
            "causation_id": self.causation_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventMetadata":
        return cls(
            tenant_id=data["tenant_id"],
            user_id=data.get("user_id"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            correlation_id=data.get("correlation_id"),
            causation_id=data.get("causation_id"),
        )


@dataclass(frozen=True)
class EventEnvelope:
    """
    One append-only event.

    `event_version` is the schema version of `data`; `sequence` is the
    1-based position in the aggregate's stream, assigned by the store.
    """
    aggregate_id: str
    aggregate_type: str
    event_type: str
    data: Dict[str, Any]
    metadata: EventMetadata
    event_version: int = 1
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    sequence: int = 0

    def with_sequence(self, sequence: int) -> "EventEnvelope":
        return replace(self, sequence=sequence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "aggregate_id": self.aggregate_id,
            "aggregate_type": self.aggregate_type,
            "event_type": self.event_type,
            "event_version": self.event_version,
            "sequence": self.sequence,
            "data": self.data,
            "metadata": self.metadata.to_dict(),
            "created_at": self.created_at.isoformat(),
        }


def create_event(
    aggregate_id: str,
    aggregate_type: str,
    event_type: str,
    data: Dict[str, Any],
    tenant_id: str,
    user_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    causation_id: Optional[str] = None,
    event_version: int = 1,
) -> EventEnvelope:
    return EventEnvelope(
        aggregate_id=aggregate_id,
        aggregate_type=aggregate_type,
        event_type=event_type,
        data=data,
        metadata=EventMetadata(
            tenant_id=tenant_id,
            user_id=user_id,
            correlation_id=correlation_id,
            causation_id=causation_id,
        ),
        event_version=event_version,
    )


@dataclass(frozen=True)
class SnapshotEnvelope:
    """
    Materialized aggregate state paired with the exact event it covers.
    Replay resumes strictly after `event_sequence`.
    """
    aggregate_id: str
    aggregate_type: str
    snapshot_data: Dict[str, Any]
    snapshot_version: int
    event_id: str
    event_sequence: int
    created_at: datetime = field(default_factory=utcnow)
