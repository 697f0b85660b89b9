"""
Shared fixtures for the reconciliation test suite.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
import tenacity

from settler.eventsourcing import InMemoryEventStore
from settler.models import Money, Settlement, Transaction
from settler.reconciliation import MatchingEngine
from settler.reconciliation.rules import RuleDefaults
from settler.resilience import DeadLetterQueue
from settler.sagas import SagaOrchestrator

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"

FIXED_NOW = datetime(2024, 2, 1, 12, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return FIXED_NOW


def make_transaction(
    id: str,
    amount: str,
    currency: str = "USD",
    date: str = "2024-01-15",
    tenant_id: str = TENANT,
    **kwargs,
) -> Transaction:
    return Transaction(
        id=id,
        tenant_id=tenant_id,
        provider=kwargs.pop("provider", "stripe"),
        provider_transaction_id=kwargs.pop("provider_transaction_id", f"ext_{id}"),
        amount=Money(Decimal(amount), currency),
        timestamp=datetime.fromisoformat(date).replace(tzinfo=timezone.utc),
        **kwargs,
    )


def make_settlement(
    id: str,
    amount: str,
    currency: str = "USD",
    date: str = "2024-01-15",
    tenant_id: str = TENANT,
    **kwargs,
) -> Settlement:
    return Settlement(
        id=id,
        tenant_id=tenant_id,
        provider=kwargs.pop("provider", "quickbooks"),
        provider_transaction_id=kwargs.pop("provider_transaction_id", f"ext_{id}"),
        amount=Money(Decimal(amount), currency),
        timestamp=datetime.fromisoformat(date).replace(tzinfo=timezone.utc),
        **kwargs,
    )


@pytest.fixture
def defaults():
    return RuleDefaults(
        amount_tolerance=Decimal("0.01"),
        date_tolerance_days=3.0,
        fuzzy_threshold=0.9,
    )


@pytest.fixture
def engine(defaults):
    return MatchingEngine(clock=fixed_clock, defaults=defaults)


@pytest.fixture
def event_store():
    return InMemoryEventStore()


@pytest.fixture
def dead_letter_queue():
    return DeadLetterQueue(clock=fixed_clock)


@pytest.fixture
def orchestrator(event_store, dead_letter_queue):
    """Orchestrator with no backoff between retries."""
    return SagaOrchestrator(
        event_store,
        dead_letter_queue=dead_letter_queue,
        retry_wait=tenacity.wait_none(),
        clock=fixed_clock,
    )
