"""
Per-provider fee extractors.

Extractors read a transaction's raw payload and emit Fee line items. They
never fail a transaction for missing fee data; absent fields yield no fees.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, List, Optional
from uuid import NAMESPACE_URL, uuid5

import structlog

from ..ingestion.currency import from_minor_units, parse_decimal
from ..models import Fee, FeeType, Money, Transaction
from .fx_fees import paypal_fx_fee, stripe_fx_fee

logger = structlog.get_logger()


def fee_id(tenant_id: str, transaction_id: str, fee_type: FeeType, slot: str) -> str:
    """Deterministic so recomputing fees for a transaction yields the same ids."""
    return str(uuid5(NAMESPACE_URL, f"settler-fee:{tenant_id}:{transaction_id}:{fee_type.value}:{slot}"))


class FeeExtractor(ABC):
    """Base extractor for one provider."""

    provider: str = ""

    @abstractmethod
    def extract(self, transaction: Transaction, tenant_id: str) -> List[Fee]:
        """Return the fee line items found in the raw payload."""

    def build_fee(
        self,
        transaction: Transaction,
        tenant_id: str,
        fee_type: FeeType,
        amount: Money,
        description: str,
        slot: str = "0",
    ) -> Fee:
        rate: Optional[Decimal] = None
        if amount.currency == transaction.currency and not transaction.amount.is_zero():
            rate = amount.value / abs(transaction.amount.value)

        return Fee(
            id=fee_id(tenant_id, transaction.id, fee_type, slot),
            tenant_id=tenant_id,
            source_transaction_id=transaction.id,
            type=fee_type,
            amount=amount,
            description=description,
            rate=rate,
        )


class StripeFeeExtractor(FeeExtractor):
    """balance_transaction.fee (minor units), FX estimate, dispute fee."""

    provider = "stripe"

    def extract(self, transaction: Transaction, tenant_id: str) -> List[Fee]:
        payload = transaction.raw_payload
        fees = []

        balance_tx = payload.get("balance_transaction")
        if isinstance(balance_tx, dict):
            fee_currency = (balance_tx.get("currency") or transaction.currency).upper()
            if balance_tx.get("fee") is not None:
                fees.append(self.build_fee(
                    transaction,
                    tenant_id,
                    FeeType.PROCESSING,
                    Money(from_minor_units(balance_tx["fee"], fee_currency), fee_currency),
                    "Stripe processing fee",
                ))

            fx_fee = stripe_fx_fee(transaction.amount, balance_tx.get("exchange_rate"))
            if fx_fee is not None:
                fees.append(self.build_fee(
                    transaction, tenant_id, FeeType.FX, fx_fee, "Stripe FX conversion fee"
                ))

        dispute = payload.get("dispute")
        if payload.get("disputed") and isinstance(dispute, dict) and dispute.get("fee"):
            currency = (dispute.get("currency") or transaction.currency).upper()
            fees.append(self.build_fee(
                transaction,
                tenant_id,
                FeeType.CHARGEBACK,
                Money(from_minor_units(dispute["fee"], currency), currency),
                "Stripe chargeback fee",
            ))

        return fees


class PayPalFeeExtractor(FeeExtractor):
    """transaction_fee (decimal string) and FX estimate."""

    provider = "paypal"

    def extract(self, transaction: Transaction, tenant_id: str) -> List[Fee]:
        payload = transaction.raw_payload
        fees = []

        fee_field = payload.get("transaction_fee") or (payload.get("seller_receivable_breakdown") or {}).get("paypal_fee")
        if isinstance(fee_field, dict) and fee_field.get("value") is not None:
            currency = (fee_field.get("currency_code") or fee_field.get("currency") or transaction.currency).upper()
            fees.append(self.build_fee(
                transaction,
                tenant_id,
                FeeType.PROCESSING,
                Money(parse_decimal(fee_field["value"]), currency),
                "PayPal processing fee",
            ))

        fx_fee = paypal_fx_fee(transaction.amount, payload.get("exchange_rate"))
        if fx_fee is not None:
            fees.append(self.build_fee(transaction, tenant_id, FeeType.FX, fx_fee, "PayPal FX conversion fee"))

        return fees


class SquareFeeExtractor(FeeExtractor):
    """processing_fee_money, a single money object or a list of them."""

    provider = "square"

    def extract(self, transaction: Transaction, tenant_id: str) -> List[Fee]:
        raw_fees = transaction.raw_payload.get("processing_fee_money") or transaction.raw_payload.get("processing_fee")
        if not raw_fees:
            return []
        if isinstance(raw_fees, dict):
            raw_fees = [raw_fees]

        fees = []
        for index, entry in enumerate(raw_fees):
            money = entry.get("amount_money", entry) if isinstance(entry, dict) else {}
            if money.get("amount") is None:
                continue
            currency = (money.get("currency") or transaction.currency).upper()
            fees.append(self.build_fee(
                transaction,
                tenant_id,
                FeeType.PROCESSING,
                Money(from_minor_units(money["amount"], currency), currency),
                "Square processing fee",
                slot=str(index),
            ))
        return fees


class GenericFeeExtractor(FeeExtractor):
    """Fallback: common top-level fee fields, in the transaction currency."""

    provider = "*"
    fee_fields = ("fee", "processing_fee", "transaction_fee", "service_fee")

    def extract(self, transaction: Transaction, tenant_id: str) -> List[Fee]:
        payload = transaction.raw_payload
        fees = []
        for field_name in self.fee_fields:
            raw_value: Any = payload.get(field_name)
            if isinstance(raw_value, dict):
                raw_value = raw_value.get("value", raw_value.get("amount"))
            if raw_value in (None, ""):
                continue
            try:
                value = parse_decimal(raw_value)
            except ValueError:
                logger.warning(
                    "Ignoring unparseable fee field",
                    transaction_id=transaction.id,
                    field=field_name,
                    value=raw_value,
                )
                continue
            if value > 0:
                fees.append(self.build_fee(
                    transaction,
                    tenant_id,
                    FeeType.PROCESSING,
                    Money(value, transaction.currency),
                    f"Processing fee ({field_name})",
                    slot=field_name,
                ))
        return fees
