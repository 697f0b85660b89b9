"""
Fee extraction service.

Dispatches a transaction to the extractor registered for its provider and
totals the result in the transaction currency.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

import structlog

from ..exceptions import RateLookupError, SecurityError
from ..models import Fee, Money, Transaction
from ..reconciliation.fx import FXConverter
from .extractors import (
    FeeExtractor,
    GenericFeeExtractor,
    PayPalFeeExtractor,
    SquareFeeExtractor,
    StripeFeeExtractor,
)

logger = structlog.get_logger()


@dataclass
class FeeExtractionResult:
    """Fees for one transaction."""
    fees: List[Fee]
    total_fees: Money
    effective_rate: Decimal  # total_fees / amount, 0 for zero-amount transactions
    unconverted_fees: List[Fee] = field(default_factory=list)  # Foreign currency, no rate

    def to_dict(self) -> Dict:
        return {
            "fees": [f.to_dict() for f in self.fees],
            "total_fees": self.total_fees.to_dict(),
            "effective_rate": str(self.effective_rate),
            "unconverted_fee_ids": [f.id for f in self.unconverted_fees],
        }


class FeeExtractionService:
    """
    Provider-dispatched fee extraction.

    Unknown providers use the generic extractor. Fees in another currency
    are converted with `converter` when given; without a rate they stay in
    the fee list but are left out of total_fees.
    """

    def __init__(
        self,
        extractors: Optional[List[FeeExtractor]] = None,
        fallback: Optional[FeeExtractor] = None,
        converter: Optional[FXConverter] = None,
    ):
        self._extractors: Dict[str, FeeExtractor] = {}
        for extractor in extractors or [StripeFeeExtractor(), PayPalFeeExtractor(), SquareFeeExtractor()]:
            self.register(extractor)
        self.fallback = fallback or GenericFeeExtractor()
        self.converter = converter

    def register(self, extractor: FeeExtractor) -> None:
        self._extractors[extractor.provider.lower()] = extractor

    def extractor_for(self, provider: str) -> FeeExtractor:
        return self._extractors.get((provider or "").lower(), self.fallback)

    def extract_fees(self, transaction: Transaction, tenant_id: str) -> FeeExtractionResult:
        if transaction.tenant_id != tenant_id:
            raise SecurityError(
                "Transaction belongs to another tenant",
                tenant_id=tenant_id,
                resource_tenant_id=transaction.tenant_id,
            )

        extractor = self.extractor_for(transaction.provider)
        try:
            fees = extractor.extract(transaction, tenant_id)
        except ValueError as e:
            # Fee data is auxiliary; a malformed fee field never blocks the transaction
            logger.warning(
                "Fee extraction failed",
                transaction_id=transaction.id,
                provider=transaction.provider,
                error=str(e),
            )
            fees = []

        return self._totals(transaction, fees)

    def extract_many(self, transactions: List[Transaction], tenant_id: str) -> Dict[str, FeeExtractionResult]:
        return {t.id: self.extract_fees(t, tenant_id) for t in transactions}

    def _totals(self, transaction: Transaction, fees: List[Fee]) -> FeeExtractionResult:
        currency = transaction.currency
        total = Decimal("0")
        unconverted = []

        for fee in fees:
            if fee.amount.currency == currency:
                total += fee.amount.value
                continue
            if self.converter is None:
                unconverted.append(fee)
                continue
            try:
                converted = self.converter.convert(fee.amount, on=transaction.timestamp.date(), to_currency=currency)
            except RateLookupError as e:
                unconverted.append(fee)
                logger.warning(
                    "Fee left out of total, no FX rate",
                    fee_id=fee.id,
                    from_currency=fee.amount.currency,
                    to_currency=currency,
                    error=str(e),
                )
                continue
            total += converted.value

        if unconverted and self.converter is None:
            logger.warning(
                "Foreign currency fees left out of total",
                transaction_id=transaction.id,
                count=len(unconverted),
            )

        amount = abs(transaction.amount.value)
        effective_rate = total / amount if amount != 0 else Decimal("0")

        return FeeExtractionResult(
            fees=fees,
            total_fees=Money(total, currency),
            effective_rate=effective_rate,
            unconverted_fees=unconverted,
        )
