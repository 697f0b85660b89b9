"""Fee extraction."""

from .extractors import (
    FeeExtractor,
    GenericFeeExtractor,
    PayPalFeeExtractor,
    SquareFeeExtractor,
    StripeFeeExtractor,
    fee_id,
)
from .fx_fees import estimate_fx_fee, paypal_fx_fee, stripe_fx_fee
from .service import FeeExtractionResult, FeeExtractionService

__all__ = [
    "FeeExtractionService",
    "FeeExtractionResult",
    "FeeExtractor",
    "StripeFeeExtractor",
    "PayPalFeeExtractor",
    "SquareFeeExtractor",
    "GenericFeeExtractor",
    "fee_id",
    "estimate_fx_fee",
    "stripe_fx_fee",
    "paypal_fx_fee",
]
