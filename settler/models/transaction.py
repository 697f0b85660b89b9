"""Canonical financial record models.

All monetary amounts are Decimal values tagged with an ISO 4217 code. Provider
unit conventions (minor units, decimal strings) are resolved by the
normalizer before a record is built.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from .enums import FeeType, RecordKind, TransactionStatus


def _parse_datetime(value: Any) -> datetime:
    """ISO-8601 or datetime; naive values are taken as UTC, as the normalizer does."""
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Money:
    """Immutable amount with currency."""

    value: Decimal
    currency: str

    def __post_init__(self):
        if not isinstance(self.value, Decimal):
            object.__setattr__(self, "value", Decimal(str(self.value)))
        object.__setattr__(self, "currency", self.currency.upper())

    def __add__(self, other: "Money") -> "Money":
        if other.currency != self.currency:
            raise ValueError(f"Cannot add {other.currency} to {self.currency}")
        return Money(self.value + other.value, self.currency)

    def is_zero(self) -> bool:
        return self.value == 0

    def to_dict(self) -> Dict[str, str]:
        return {"value": str(self.value), "currency": self.currency}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Money":
        return cls(Decimal(str(data["value"])), data["currency"])

    @classmethod
    def zero(cls, currency: str) -> "Money":
        return cls(Decimal("0"), currency)


@dataclass(frozen=True)
class FinancialRecord:
    """
    Shared shape of transactions and settlements.

    Records are immutable once ingested; a correction is a new record that
    supersedes the old one.
    """
    id: str
    tenant_id: str
    provider: str
    provider_transaction_id: str
    amount: Money
    timestamp: datetime
    status: TransactionStatus = TransactionStatus.SUCCEEDED
    reference_id: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    raw_payload: Dict[str, Any] = field(default_factory=dict)

    kind = RecordKind.TRANSACTION

    @property
    def currency(self) -> str:
        return self.amount.currency

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "kind": self.kind.value,
            "id": self.id,
            "tenant_id": self.tenant_id,
            "provider": self.provider,
            "provider_transaction_id": self.provider_transaction_id,
            "amount": self.amount.to_dict(),
            "timestamp": self.timestamp.isoformat(),
            "status": self.status.value,
            "reference_id": self.reference_id,
            "description": self.description,
            "metadata": dict(self.metadata),
            "raw_payload": dict(self.raw_payload),
        }

    @classmethod
    def _common_kwargs(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": data["id"],
            "tenant_id": data["tenant_id"],
            "provider": data["provider"],
            "provider_transaction_id": data["provider_transaction_id"],
            "amount": Money.from_dict(data["amount"]),
            "timestamp": _parse_datetime(data["timestamp"]),
            "status": TransactionStatus(data.get("status", TransactionStatus.SUCCEEDED.value)),
            "reference_id": data.get("reference_id"),
            "description": data.get("description"),
            "metadata": dict(data.get("metadata") or {}),
            "raw_payload": dict(data.get("raw_payload") or {}),
        }


@dataclass(frozen=True)
class Transaction(FinancialRecord):
    """One payment-side financial event (charge, order, capture)."""

    kind = RecordKind.TRANSACTION

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transaction":
        return cls(**cls._common_kwargs(data))


@dataclass(frozen=True)
class Settlement(FinancialRecord):
    """
    One target-side financial event (payout, bank deposit, ledger entry).

    `transaction_ids` holds the provider transaction ids a batch payout
    covers; empty for a plain 1:1 settlement.
    """
    transaction_ids: Tuple[str, ...] = ()

    kind = RecordKind.SETTLEMENT

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["transaction_ids"] = list(self.transaction_ids)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settlement":
        return cls(
            **cls._common_kwargs(data),
            transaction_ids=tuple(data.get("transaction_ids") or ()),
        )


@dataclass(frozen=True)
class Fee:
    """
    Derived fee line item. Computed from a transaction's raw payload and
    safe to recompute; never authoritative.
    """
    id: str
    tenant_id: str
    source_transaction_id: str
    type: FeeType
    amount: Money
    description: str = ""
    rate: Optional[Decimal] = None  # fee / transaction amount, when known

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "source_transaction_id": self.source_transaction_id,
            "type": self.type.value,
            "amount": self.amount.to_dict(),
            "description": self.description,
            "rate": str(self.rate) if self.rate is not None else None,
        }


@dataclass
class NormalizedRecord:
    """
    Provider-neutral output of the normalizer, before it is bound to a
    tenant as a Transaction or Settlement.
    """
    id: Optional[str]
    provider: str
    amount: Optional[Decimal]
    currency: Optional[str]
    date: Optional[datetime]
    source_id: Optional[str] = None
    reference_id: Optional[str] = None
    status: TransactionStatus = TransactionStatus.SUCCEEDED
    kind: RecordKind = RecordKind.TRANSACTION
    description: Optional[str] = None
    linked_transaction_ids: Tuple[str, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)
    raw_payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def money(self) -> Money:
        return Money(self.amount, self.currency)
