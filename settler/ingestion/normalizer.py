"""
Normalizer: provider-native payloads to canonical records.

Amounts leave this module as Decimal + ISO currency code regardless of how
the provider encodes them (minor units, decimal strings, signed totals).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import NAMESPACE_URL, uuid5

import structlog

from ..exceptions import ValidationError
from ..models import Money, NormalizedRecord, RecordKind, Settlement, Transaction
from .providers import ProviderRegistry, ValidationResult, default_registry

logger = structlog.get_logger()


@dataclass
class RejectedRecord:
    """A payload that failed normalization in a batch."""
    index: int
    payload: Any
    errors: List[str]


@dataclass
class BatchNormalizationResult:
    records: List[NormalizedRecord] = field(default_factory=list)
    rejected: List[RejectedRecord] = field(default_factory=list)

    @property
    def stats(self) -> Dict[str, int]:
        return {"accepted": len(self.records), "rejected": len(self.rejected)}


def canonical_record_id(tenant_id: str, provider: str, kind: RecordKind, source_id: str) -> str:
    """Stable id so re-ingesting the same payload yields the same record."""
    return str(uuid5(NAMESPACE_URL, f"settler:{tenant_id}:{provider}:{kind.value}:{source_id}"))


class Normalizer:
    """
    Dispatches payloads to provider strategies.

    normalize() is pure and raises ValidationError; validate() and
    normalize_batch() never raise for bad records.
    """

    def __init__(self, registry: Optional[ProviderRegistry] = None):
        self.registry = registry or default_registry()

    def normalize(self, raw: Dict[str, Any], provider_hint: str) -> NormalizedRecord:
        strategy = self.registry.get(provider_hint)
        if not isinstance(raw, dict):
            raise ValidationError(
                "Payload must be a JSON object",
                field="payload",
                value=type(raw).__name__,
            )

        record = strategy.normalize(raw)
        result = strategy.validate(record)
        if not result.valid:
            raise ValidationError(
                f"{strategy.name} payload rejected: {'; '.join(result.errors)}",
                field=result.errors[0].split(" ")[0],
                value=raw.get("id"),
                errors=result.errors,
            )
        return record

    def validate(self, record: NormalizedRecord) -> ValidationResult:
        if record.provider not in self.registry:
            return ValidationResult(valid=False, errors=[f"Unknown provider '{record.provider}'"])
        return self.registry.get(record.provider).validate(record)

    def normalize_batch(self, payloads: List[Dict[str, Any]], provider_hint: str) -> BatchNormalizationResult:
        """Normalize what can be normalized; report the rest."""
        result = BatchNormalizationResult()
        for index, raw in enumerate(payloads):
            try:
                result.records.append(self.normalize(raw, provider_hint))
            except ValidationError as e:
                result.rejected.append(RejectedRecord(index=index, payload=raw, errors=e.errors))
                logger.warning(
                    "Record rejected",
                    provider=provider_hint,
                    index=index,
                    errors=e.errors,
                )

        logger.info("Batch normalized", provider=provider_hint, **result.stats)
        return result

    def to_transaction(self, record: NormalizedRecord, tenant_id: str) -> Transaction:
        return Transaction(
            id=canonical_record_id(tenant_id, record.provider, RecordKind.TRANSACTION, record.id),
            tenant_id=tenant_id,
            provider=record.provider,
            provider_transaction_id=record.id,
            amount=Money(record.amount, record.currency),
            timestamp=record.date,
            status=record.status,
            reference_id=record.reference_id,
            description=record.description,
            metadata=dict(record.metadata),
            raw_payload=dict(record.raw_payload),
        )

    def to_settlement(self, record: NormalizedRecord, tenant_id: str) -> Settlement:
        linked = record.linked_transaction_ids
        if not linked:
            # Batch linkage may also arrive in the payload or metadata
            for source in (record.raw_payload, record.metadata):
                ids = source.get("transaction_ids")
                if isinstance(ids, list) and ids:
                    linked = tuple(str(i) for i in ids)
                    break
                if source.get("transaction_id"):
                    linked = (str(source["transaction_id"]),)
                    break

        return Settlement(
            id=canonical_record_id(tenant_id, record.provider, RecordKind.SETTLEMENT, record.id),
            tenant_id=tenant_id,
            provider=record.provider,
            provider_transaction_id=record.id,
            amount=Money(record.amount, record.currency),
            timestamp=record.date,
            status=record.status,
            reference_id=record.reference_id,
            description=record.description,
            metadata=dict(record.metadata),
            raw_payload=dict(record.raw_payload),
            transaction_ids=tuple(linked),
        )
