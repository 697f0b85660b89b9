"""
FX rate lookup and conversion for amount-based rules.

Rate state lives in an explicitly passed cache, never in module globals.
"""

from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Dict, MutableMapping, Optional, Tuple

import httpx
import structlog

from ..config import get_settings
from ..exceptions import RateLookupError
from ..models import Money
from ..resilience.retry import collaborator_retry

logger = structlog.get_logger()

RateKey = Tuple[str, str, Optional[str]]


class RateProvider(ABC):
    """Source of FX rates: 1 unit of from_currency = rate units of to_currency."""

    @abstractmethod
    def get_rate(self, from_currency: str, to_currency: str, on: Optional[date] = None) -> Decimal:
        """Return the rate or raise RateLookupError."""


class StaticRateProvider(RateProvider):
    """Fixed rates, keyed "EUR/USD". Inverse pairs are derived."""

    def __init__(self, rates: Optional[Dict[str, object]] = None):
        self.rates: Dict[Tuple[str, str], Decimal] = {}
        for pair, rate in (rates or {}).items():
            base, quote = pair.upper().split("/")
            self.rates[(base, quote)] = Decimal(str(rate))

    def get_rate(self, from_currency: str, to_currency: str, on: Optional[date] = None) -> Decimal:
        from_currency, to_currency = from_currency.upper(), to_currency.upper()
        if from_currency == to_currency:
            return Decimal("1")
        if (from_currency, to_currency) in self.rates:
            return self.rates[(from_currency, to_currency)]
        inverse = self.rates.get((to_currency, from_currency))
        if inverse:
            return Decimal("1") / inverse
        raise RateLookupError(from_currency, to_currency, "pair not configured")


class HttpRateProvider(RateProvider):
    """
    Rates from an HTTP endpoint (exchangerate.host style `/convert`).
    Transient failures are retried with backoff; anything else is a
    RateLookupError.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.settings = get_settings()
        self.base_url = (base_url or self.settings.fx_api_url).rstrip("/")
        self.timeout = timeout or self.settings.fx_timeout_seconds
        self._client = client

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(base_url=self.base_url, timeout=self.timeout)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    @collaborator_retry()
    def _request(self, params: Dict[str, str]) -> dict:
        response = self._get_client().get("/convert", params=params)
        response.raise_for_status()
        return response.json()

    def get_rate(self, from_currency: str, to_currency: str, on: Optional[date] = None) -> Decimal:
        from_currency, to_currency = from_currency.upper(), to_currency.upper()
        if from_currency == to_currency:
            return Decimal("1")

        params = {"from": from_currency, "to": to_currency, "amount": "1"}
        if on is not None:
            params["date"] = on.isoformat()

        try:
            data = self._request(params)
        except httpx.HTTPError as e:
            logger.error("FX rate request failed", pair=f"{from_currency}/{to_currency}", error=str(e))
            raise RateLookupError(from_currency, to_currency, str(e)) from e
        except ValueError as e:
            # Body was not JSON
            logger.error("FX rate response unreadable", pair=f"{from_currency}/{to_currency}", error=str(e))
            raise RateLookupError(from_currency, to_currency, "malformed response") from e

        if not isinstance(data, dict) or not isinstance(data.get("info") or {}, dict):
            raise RateLookupError(from_currency, to_currency, "malformed response")
        raw_rate = (data.get("info") or {}).get("rate", data.get("result"))
        if raw_rate is None:
            raise RateLookupError(from_currency, to_currency, "no rate in response")
        try:
            rate = Decimal(str(raw_rate))
        except (InvalidOperation, ValueError):
            raise RateLookupError(from_currency, to_currency, "malformed response") from None
        if not rate.is_finite() or rate <= 0:
            raise RateLookupError(from_currency, to_currency, "no rate in response")
        return rate


class FXConverter:
    """
    Converts Money into a base currency through a rate provider and an
    injectable cache. Failed lookups are never cached.
    """

    def __init__(
        self,
        provider: RateProvider,
        base_currency: str = "USD",
        cache: Optional[MutableMapping[RateKey, Decimal]] = None,
    ):
        self.provider = provider
        self.base_currency = base_currency.upper()
        self.cache: MutableMapping[RateKey, Decimal] = cache if cache is not None else {}

    def rate(self, from_currency: str, to_currency: str, on: Optional[date] = None) -> Decimal:
        key = (from_currency.upper(), to_currency.upper(), on.isoformat() if on else None)
        if key in self.cache:
            return self.cache[key]
        rate = self.provider.get_rate(from_currency, to_currency, on)
        self.cache[key] = rate
        return rate

    def convert(self, money: Money, on: Optional[date] = None, to_currency: Optional[str] = None) -> Money:
        target = (to_currency or self.base_currency).upper()
        if money.currency == target:
            return money
        return Money(money.value * self.rate(money.currency, target, on), target)
