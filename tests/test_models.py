"""
Tests for models, FX conversion, the audit trail and logging setup.
"""

import json
import logging
from datetime import date, datetime, timezone
from decimal import Decimal

import httpx
import pytest
import structlog

from conftest import FIXED_NOW, TENANT, make_settlement, make_transaction
from settler.exceptions import InvalidTransitionError, RateLookupError
from settler.logging_config import setup_logging
from settler.models import AuditAction, Execution, ExecutionStatus, ExecutionSummary, Money, Settlement, Transaction
from settler.reconciliation import FXConverter, HttpRateProvider, StaticRateProvider
from settler.utils.audit_logger import AuditLogger


class TestMoney:
    def test_currency_is_upper_cased(self):
        assert Money(Decimal("1.00"), "usd").currency == "USD"

    def test_add_requires_same_currency(self):
        assert Money(Decimal("1.10"), "USD") + Money(Decimal("2.20"), "USD") == Money(Decimal("3.30"), "USD")
        with pytest.raises(ValueError):
            Money(Decimal("1"), "USD") + Money(Decimal("1"), "EUR")

    def test_records_survive_event_payloads(self):
        transaction = make_transaction("T1", "99.99", reference_id="ORD-1", metadata={"k": "v"})
        settlement = make_settlement("S1", "99.99", transaction_ids=("T1",))

        assert Transaction.from_dict(transaction.to_dict()) == transaction
        assert Settlement.from_dict(settlement.to_dict()).transaction_ids == ("T1",)

    def test_naive_timestamp_read_as_utc(self):
        data = make_transaction("T1", "10.00").to_dict()
        data["timestamp"] = "2024-01-15T00:00:00"

        restored = Transaction.from_dict(data)

        assert restored.timestamp == datetime(2024, 1, 15, tzinfo=timezone.utc)
        assert sorted([restored.timestamp, make_settlement("S1", "10.00").timestamp])


class TestExecution:
    def test_summary_accuracy(self):
        assert ExecutionSummary.compute(3, 1).accuracy == 75.0
        assert ExecutionSummary.compute(0, 0).accuracy is None

    def test_terminal_states_are_final(self):
        execution = Execution(job_id="job-1", tenant_id=TENANT)
        execution.complete(ExecutionSummary.compute(1, 0), at=FIXED_NOW)

        assert execution.status is ExecutionStatus.COMPLETED
        assert execution.completed_at == FIXED_NOW
        with pytest.raises(InvalidTransitionError):
            execution.fail("late failure")
        with pytest.raises(InvalidTransitionError):
            execution.cancel()

    def test_cancel(self):
        execution = Execution(job_id="job-1", tenant_id=TENANT)
        execution.cancel()

        assert execution.status.is_terminal


class TestStaticRates:
    def test_direct_and_inverse(self):
        provider = StaticRateProvider({"EUR/USD": "1.25"})

        assert provider.get_rate("eur", "usd") == Decimal("1.25")
        assert provider.get_rate("USD", "EUR") == Decimal("0.8")
        assert provider.get_rate("GBP", "GBP") == Decimal("1")

    def test_unknown_pair(self):
        with pytest.raises(RateLookupError):
            StaticRateProvider().get_rate("EUR", "USD")


class CountingProvider(StaticRateProvider):
    def __init__(self, rates):
        super().__init__(rates)
        self.calls = 0

    def get_rate(self, from_currency, to_currency, on=None):
        self.calls += 1
        return super().get_rate(from_currency, to_currency, on)


class TestFXConverter:
    def test_rates_cached_per_pair_and_day(self):
        provider = CountingProvider({"EUR/USD": "1.10"})
        converter = FXConverter(provider)

        converter.convert(Money(Decimal("10"), "EUR"), on=date(2024, 1, 15))
        converter.convert(Money(Decimal("20"), "EUR"), on=date(2024, 1, 15))
        converter.convert(Money(Decimal("20"), "EUR"), on=date(2024, 1, 16))

        assert provider.calls == 2

    def test_failures_are_not_cached(self):
        provider = CountingProvider({})
        cache = {}
        converter = FXConverter(provider, cache=cache)

        for _ in range(2):
            with pytest.raises(RateLookupError):
                converter.convert(Money(Decimal("10"), "GBP"))

        assert provider.calls == 2
        assert cache == {}

    def test_same_currency_untouched(self):
        money = Money(Decimal("10"), "USD")
        assert FXConverter(StaticRateProvider()).convert(money) is money


class TestHttpRateProvider:
    def provider(self, handler):
        client = httpx.Client(base_url="https://fx.test", transport=httpx.MockTransport(handler))
        return HttpRateProvider(base_url="https://fx.test", client=client)

    def test_reads_rate(self):
        seen = {}

        def handler(request):
            seen.update(request.url.params)
            return httpx.Response(200, json={"info": {"rate": 1.0842}, "result": 1.0842})

        rate = self.provider(handler).get_rate("eur", "usd", on=date(2024, 1, 15))

        assert rate == Decimal("1.0842")
        assert seen == {"from": "EUR", "to": "USD", "amount": "1", "date": "2024-01-15"}

    def test_client_error_is_lookup_error(self):
        provider = self.provider(lambda request: httpx.Response(404, json={}))

        with pytest.raises(RateLookupError):
            provider.get_rate("EUR", "USD")

    def test_missing_rate_in_body(self):
        provider = self.provider(lambda request: httpx.Response(200, json={"success": False}))

        with pytest.raises(RateLookupError):
            provider.get_rate("EUR", "USD")

    @pytest.mark.parametrize("body", [
        {"text": "<html>oops</html>"},
        {"json": [1.08]},
        {"json": {"info": "1.08"}},
    ])
    def test_unreadable_body_is_lookup_error(self, body):
        provider = self.provider(lambda request: httpx.Response(200, **body))

        with pytest.raises(RateLookupError):
            provider.get_rate("EUR", "USD")


class TestAuditLogger:
    def test_record_and_filter(self):
        audit = AuditLogger("job-1", tenant_id=TENANT)
        audit.record(AuditAction.MATCH_CREATED, "matched", record_ids=["T1", "S1"], rule="amount")
        audit.record(AuditAction.FX_CONVERSION_FAILED, "no rate", success=False, error_message="GBP")

        assert [e.tenant_id for e in audit.entries] == [TENANT, TENANT]
        assert len(audit.for_action(AuditAction.MATCH_CREATED)) == 1
        assert [e.error_message for e in audit.failures()] == ["GBP"]
        assert audit.counts() == {
            "total": 2,
            "failed": 1,
            "succeeded": 1,
            "by_action": {"match_created": 1, "fx_conversion_failed": 1},
        }

    def test_export(self, tmp_path):
        audit = AuditLogger("job-1", tenant_id=TENANT)
        audit.record(AuditAction.MATCH_CREATED, "matched", record_ids=["T1", "S1"], confidence=1.0)

        path = audit.export_to_file(tmp_path / "audit.json")

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["counts"]["total"] == 1
        assert data["entries"][0]["action"] == "match_created"
        assert data["entries"][0]["details"] == {"confidence": 1.0}


class TestLoggingSetup:
    def test_json_logs(self, capsys):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        try:
            setup_logging(level="INFO", json_logs=True)
            structlog.get_logger("settler.tests").info("rates loaded", pairs=2)
        finally:
            root.handlers = handlers
            root.setLevel(level)
            structlog.reset_defaults()

        line = capsys.readouterr().out.strip().splitlines()[-1]
        data = json.loads(line)
        assert data["event"] == "rates loaded"
        assert data["pairs"] == 2
        assert data["level"] == "info"
