"""
Provider FX fee estimates.

Providers rarely itemize the FX spread, so it is estimated as a share of
the transaction amount. One helper per provider; register new ones in
FX_FEE_RATES.
"""

from decimal import Decimal
from typing import Any, Optional

from ..ingestion.currency import parse_decimal
from ..models import Money

STRIPE_FX_RATE = Decimal("0.015")
PAYPAL_FX_RATE = Decimal("0.025")

FX_FEE_RATES = {
    "stripe": STRIPE_FX_RATE,
    "paypal": PAYPAL_FX_RATE,
}


def is_cross_currency(exchange_rate: Any) -> bool:
    """A present exchange rate other than 1 means the provider converted funds."""
    if exchange_rate in (None, ""):
        return False
    return parse_decimal(exchange_rate) != 1


def estimate_fx_fee(provider: str, amount: Money, exchange_rate: Any) -> Optional[Money]:
    rate = FX_FEE_RATES.get(provider)
    if rate is None or not is_cross_currency(exchange_rate):
        return None
    return Money(abs(amount.value) * rate, amount.currency)


def stripe_fx_fee(amount: Money, exchange_rate: Any) -> Optional[Money]:
    return estimate_fx_fee("stripe", amount, exchange_rate)


def paypal_fx_fee(amount: Money, exchange_rate: Any) -> Optional[Money]:
    return estimate_fx_fee("paypal", amount, exchange_rate)
