"""
Provider strategies for the normalizer.

Each strategy exposes the same capability set: fetch raw payloads from the
provider, normalize one payload, validate one normalized record. Adding a
provider means registering a new strategy; the dispatcher never changes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from ..exceptions import ValidationError
from ..models import NormalizedRecord, RecordKind, TransactionStatus
from ..resilience.retry import collaborator_retry
from .currency import from_minor_units, parse_decimal, parse_timestamp

logger = structlog.get_logger()

Fetcher = Callable[..., Awaitable[Any]]


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


def _split_ids(value: Any) -> Tuple[str, ...]:
    """Linked ids come as a list or as a comma separated string (Stripe metadata)."""
    if not value:
        return ()
    if isinstance(value, str):
        return tuple(v.strip() for v in value.split(",") if v.strip())
    return tuple(str(v) for v in value)


class ProviderStrategy(ABC):
    """Base strategy for one payment provider."""

    name: str = ""
    collection_key: Optional[str] = None  # Where list responses keep their items
    status_map: Dict[str, TransactionStatus] = {}

    async def fetch(self, fetcher: Fetcher, **params) -> List[Dict[str, Any]]:
        """
        Pull raw payloads through a caller-supplied async fetcher.

        The fetcher owns transport and credentials; transient failures are
        retried with backoff here.
        """

        @collaborator_retry()
        async def _call():
            return await fetcher(**params)

        response = await _call()
        items = self.extract_items(response)
        logger.info("Fetched provider records", provider=self.name, count=len(items))
        return items

    def extract_items(self, response: Any) -> List[Dict[str, Any]]:
        if isinstance(response, list):
            return response
        if isinstance(response, dict) and self.collection_key:
            return list(response.get(self.collection_key) or [])
        raise ValidationError(
            f"Unexpected {self.name} response shape",
            field=self.collection_key,
            value=type(response).__name__,
        )

    @abstractmethod
    def normalize(self, raw: Dict[str, Any]) -> NormalizedRecord:
        """Map one raw payload to a NormalizedRecord. Missing fields stay None."""

    def validate(self, record: NormalizedRecord) -> ValidationResult:
        """Required-field checks. Never raises."""
        errors = []
        if not record.id:
            errors.append("id is required")
        if record.amount is None:
            errors.append("amount is required")
        elif not isinstance(record.amount, Decimal) or not record.amount.is_finite():
            errors.append("amount must be a finite decimal")
        if not record.currency:
            errors.append("currency is required")
        elif len(record.currency) != 3 or not record.currency.isalpha():
            errors.append(f"currency must be an ISO 4217 code, got '{record.currency}'")
        if record.date is None:
            errors.append("date is required")
        return ValidationResult(valid=not errors, errors=errors)

    def map_status(self, raw_status: Any) -> TransactionStatus:
        if raw_status is None:
            return TransactionStatus.SUCCEEDED
        return self.status_map.get(str(raw_status).lower(), TransactionStatus.PENDING)

    def _field(self, name: str, convert: Callable[[Any], Any], value: Any) -> Any:
        """Apply a conversion; None passes through, bad values become ValidationError."""
        if value is None or value == "":
            return None
        try:
            return convert(value)
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"{self.name}: invalid {name}: {e}", field=name, value=value
            ) from e


class StripeStrategy(ProviderStrategy):
    """Charges, payouts and balance transactions. Amounts in minor units, unix timestamps."""

    name = "stripe"
    collection_key = "data"
    status_map = {
        "succeeded": TransactionStatus.SUCCEEDED,
        "paid": TransactionStatus.SUCCEEDED,
        "available": TransactionStatus.SUCCEEDED,
        "pending": TransactionStatus.PENDING,
        "in_transit": TransactionStatus.PENDING,
        "failed": TransactionStatus.FAILED,
        "canceled": TransactionStatus.FAILED,
    }

    def normalize(self, raw: Dict[str, Any]) -> NormalizedRecord:
        currency = raw.get("currency")
        currency = currency.upper() if isinstance(currency, str) else None
        metadata = dict(raw.get("metadata") or {})

        amount = None
        if currency:
            amount = self._field("amount", lambda v: from_minor_units(v, currency), raw.get("amount"))

        status = self.map_status(raw.get("status"))
        if raw.get("refunded"):
            status = TransactionStatus.REFUNDED

        return NormalizedRecord(
            id=raw.get("id"),
            provider=self.name,
            amount=amount,
            currency=currency,
            date=self._field("date", parse_timestamp, raw.get("created")),
            source_id=raw.get("payment_intent") or raw.get("id"),
            reference_id=metadata.get("reference_id") or metadata.get("order_id") or raw.get("invoice"),
            status=status,
            kind=RecordKind.SETTLEMENT if raw.get("object") == "payout" else RecordKind.TRANSACTION,
            description=raw.get("description"),
            linked_transaction_ids=_split_ids(metadata.get("transaction_ids")),
            metadata=metadata,
            raw_payload=raw,
        )


class PayPalStrategy(ProviderStrategy):
    """Captures and payouts. Amounts are decimal strings under amount.value."""

    name = "paypal"
    collection_key = "items"
    status_map = {
        "completed": TransactionStatus.SUCCEEDED,
        "success": TransactionStatus.SUCCEEDED,
        "pending": TransactionStatus.PENDING,
        "denied": TransactionStatus.FAILED,
        "failed": TransactionStatus.FAILED,
        "refunded": TransactionStatus.REFUNDED,
        "partially_refunded": TransactionStatus.REFUNDED,
    }

    def normalize(self, raw: Dict[str, Any]) -> NormalizedRecord:
        amount_field = raw.get("amount")
        if isinstance(amount_field, dict):
            value = amount_field.get("value")
            currency = amount_field.get("currency_code") or amount_field.get("currency")
        else:
            value = amount_field
            currency = raw.get("currency")

        return NormalizedRecord(
            id=raw.get("id") or raw.get("transaction_id"),
            provider=self.name,
            amount=self._field("amount", parse_decimal, value),
            currency=currency.upper() if isinstance(currency, str) else None,
            date=self._field("date", parse_timestamp, raw.get("create_time") or raw.get("created_time")),
            source_id=raw.get("id") or raw.get("transaction_id"),
            reference_id=raw.get("invoice_id") or raw.get("custom_id"),
            status=self.map_status(raw.get("status")),
            kind=RecordKind.SETTLEMENT if raw.get("payout_batch_id") else RecordKind.TRANSACTION,
            description=raw.get("note_to_payer") or raw.get("description"),
            linked_transaction_ids=_split_ids(raw.get("transaction_ids")),
            metadata=dict(raw.get("metadata") or {}),
            raw_payload=raw,
        )


class ShopifyStrategy(ProviderStrategy):
    """Orders. total_price is a decimal string."""

    name = "shopify"
    collection_key = "orders"
    status_map = {
        "paid": TransactionStatus.SUCCEEDED,
        "partially_paid": TransactionStatus.PENDING,
        "pending": TransactionStatus.PENDING,
        "authorized": TransactionStatus.PENDING,
        "refunded": TransactionStatus.REFUNDED,
        "partially_refunded": TransactionStatus.REFUNDED,
        "voided": TransactionStatus.FAILED,
    }

    def normalize(self, raw: Dict[str, Any]) -> NormalizedRecord:
        currency = raw.get("currency")
        order_id = raw.get("id")
        order_number = raw.get("order_number")
        return NormalizedRecord(
            id=str(order_id) if order_id is not None else None,
            provider=self.name,
            amount=self._field("amount", parse_decimal, raw.get("total_price")),
            currency=currency.upper() if isinstance(currency, str) else None,
            date=self._field("date", parse_timestamp, raw.get("created_at")),
            source_id=str(order_id) if order_id is not None else None,
            reference_id=raw.get("name") or (str(order_number) if order_number is not None else None),
            status=self.map_status(raw.get("financial_status")),
            description=raw.get("note"),
            metadata={"email": raw.get("email")} if raw.get("email") else {},
            raw_payload=raw,
        )


class SquareStrategy(ProviderStrategy):
    """Payments and settlements. Money objects carry minor units."""

    name = "square"
    collection_key = "payments"
    status_map = {
        "completed": TransactionStatus.SUCCEEDED,
        "approved": TransactionStatus.PENDING,
        "pending": TransactionStatus.PENDING,
        "sent": TransactionStatus.SUCCEEDED,
        "failed": TransactionStatus.FAILED,
        "canceled": TransactionStatus.FAILED,
    }

    def normalize(self, raw: Dict[str, Any]) -> NormalizedRecord:
        money = raw.get("total_money") or raw.get("amount_money") or {}
        currency = money.get("currency")
        currency = currency.upper() if isinstance(currency, str) else None

        amount = None
        if currency:
            amount = self._field("amount", lambda v: from_minor_units(v, currency), money.get("amount"))

        is_settlement = "initiated_at" in raw or raw.get("type") == "settlement"
        linked = _split_ids(raw.get("payment_ids"))
        if not linked and raw.get("entries"):
            linked = tuple(str(e["payment_id"]) for e in raw["entries"] if e.get("payment_id"))

        return NormalizedRecord(
            id=raw.get("id"),
            provider=self.name,
            amount=amount,
            currency=currency,
            date=self._field("date", parse_timestamp, raw.get("initiated_at") or raw.get("created_at")),
            source_id=raw.get("id"),
            reference_id=raw.get("reference_id") or raw.get("order_id"),
            status=self.map_status(raw.get("status")),
            kind=RecordKind.SETTLEMENT if is_settlement else RecordKind.TRANSACTION,
            description=raw.get("note"),
            linked_transaction_ids=linked,
            raw_payload=raw,
        )


class QuickBooksStrategy(ProviderStrategy):
    """Ledger entities (Deposit, Payment, Purchase). TotalAmt is a decimal number."""

    name = "quickbooks"
    collection_key = "QueryResponse"

    def extract_items(self, response: Any) -> List[Dict[str, Any]]:
        if isinstance(response, dict) and isinstance(response.get("QueryResponse"), dict):
            items = []
            for value in response["QueryResponse"].values():
                if isinstance(value, list):
                    items.extend(value)
            return items
        return super().extract_items(response)

    def normalize(self, raw: Dict[str, Any]) -> NormalizedRecord:
        currency_ref = raw.get("CurrencyRef") or {}
        currency = currency_ref.get("value") if isinstance(currency_ref, dict) else currency_ref
        linked = tuple(
            str(txn["TxnId"])
            for line in raw.get("Line") or []
            for txn in line.get("LinkedTxn") or []
            if txn.get("TxnId")
        )
        return NormalizedRecord(
            id=raw.get("Id"),
            provider=self.name,
            amount=self._field("amount", parse_decimal, raw.get("TotalAmt")),
            currency=currency.upper() if isinstance(currency, str) else None,
            date=self._field("date", parse_timestamp, raw.get("TxnDate")),
            source_id=raw.get("Id"),
            reference_id=raw.get("DocNumber") or raw.get("PaymentRefNum"),
            kind=RecordKind.SETTLEMENT if raw.get("DepositToAccountRef") else RecordKind.TRANSACTION,
            description=raw.get("PrivateNote"),
            linked_transaction_ids=linked,
            raw_payload=raw,
        )


class XeroStrategy(ProviderStrategy):
    """Bank transactions. Total is signed; /Date(ms)/ timestamps."""

    name = "xero"
    collection_key = "BankTransactions"
    status_map = {
        "authorised": TransactionStatus.SUCCEEDED,
        "paid": TransactionStatus.SUCCEEDED,
        "draft": TransactionStatus.PENDING,
        "submitted": TransactionStatus.PENDING,
        "voided": TransactionStatus.FAILED,
        "deleted": TransactionStatus.FAILED,
    }

    def normalize(self, raw: Dict[str, Any]) -> NormalizedRecord:
        tx_id = raw.get("BankTransactionID") or raw.get("InvoiceID") or raw.get("PaymentID")
        total = self._field("amount", parse_decimal, raw.get("Total"))
        currency = raw.get("CurrencyCode")
        line_items = raw.get("LineItems") or []
        contact = (raw.get("Contact") or {}).get("Name")

        return NormalizedRecord(
            id=tx_id,
            provider=self.name,
            amount=abs(total) if total is not None else None,
            currency=currency.upper() if isinstance(currency, str) else None,
            date=self._field("date", parse_timestamp, raw.get("DateString") or raw.get("Date")),
            source_id=tx_id,
            reference_id=raw.get("Reference"),
            status=self.map_status(raw.get("Status")),
            kind=RecordKind.SETTLEMENT if raw.get("Type") == "RECEIVE" else RecordKind.TRANSACTION,
            description=line_items[0].get("Description") if line_items else None,
            metadata={"contact": contact} if contact else {},
            raw_payload=raw,
        )


class ProviderRegistry:
    """Provider name -> strategy."""

    def __init__(self, strategies: Optional[List[ProviderStrategy]] = None):
        self._strategies: Dict[str, ProviderStrategy] = {}
        for strategy in strategies or []:
            self.register(strategy)

    def register(self, strategy: ProviderStrategy) -> None:
        self._strategies[strategy.name.lower()] = strategy

    def get(self, provider: str) -> ProviderStrategy:
        strategy = self._strategies.get((provider or "").lower())
        if strategy is None:
            raise ValidationError(
                f"Unknown provider '{provider}'",
                field="provider",
                value=provider,
            )
        return strategy

    def __contains__(self, provider: str) -> bool:
        return (provider or "").lower() in self._strategies

    @property
    def providers(self) -> List[str]:
        return sorted(self._strategies)


def default_registry() -> ProviderRegistry:
    return ProviderRegistry([
        StripeStrategy(),
        PayPalStrategy(),
        ShopifyStrategy(),
        SquareStrategy(),
        QuickBooksStrategy(),
        XeroStrategy(),
    ])
