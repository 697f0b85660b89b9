"""Ingestion: provider payload normalization."""

from .normalizer import BatchNormalizationResult, Normalizer, RejectedRecord, canonical_record_id
from .providers import (
    PayPalStrategy,
    ProviderRegistry,
    ProviderStrategy,
    QuickBooksStrategy,
    ShopifyStrategy,
    SquareStrategy,
    StripeStrategy,
    ValidationResult,
    XeroStrategy,
    default_registry,
)

__all__ = [
    "Normalizer",
    "BatchNormalizationResult",
    "RejectedRecord",
    "canonical_record_id",
    "ProviderRegistry",
    "ProviderStrategy",
    "ValidationResult",
    "StripeStrategy",
    "PayPalStrategy",
    "ShopifyStrategy",
    "SquareStrategy",
    "QuickBooksStrategy",
    "XeroStrategy",
    "default_registry",
]
