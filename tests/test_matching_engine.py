"""
Tests for the Matching Engine.
"""

from decimal import Decimal

import httpx
import pytest

from conftest import OTHER_TENANT, TENANT, fixed_clock, make_settlement, make_transaction
from settler.exceptions import ConfigurationError, SecurityError, ValidationError
from settler.models import (
    AuditAction,
    ExceptionCategory,
    ExceptionSeverity,
    MatchingRulesConfig,
    MatchType,
)
from settler.reconciliation import HttpRateProvider, MatchingContext, MatchingEngine, StaticRateProvider

AMOUNT_EXACT = {"rules": [{"field": "amount", "type": "exact", "tolerance": 0.01}]}


def run(engine, transactions, settlements, rules=AMOUNT_EXACT, tenant_id=TENANT):
    return engine.match(MatchingContext(
        transactions=transactions,
        settlements=settlements,
        rules=MatchingRulesConfig.from_dict(rules),
        tenant_id=tenant_id,
        job_id="job-1",
        execution_id="exec-1",
    ))


class TestBasicScenarios:
    """The two reference scenarios for a single amount rule."""

    def test_exact_amount_match(self, engine):
        """Equal amounts on the same day produce one full-confidence match."""
        result = run(
            engine,
            [make_transaction("T1", "99.99")],
            [make_settlement("S1", "99.99")],
        )

        assert len(result.matches) == 1
        match = result.matches[0]
        assert match.transaction_ids == ("T1",)
        assert match.settlement_ids == ("S1",)
        assert match.confidence == 1.0
        assert match.match_type is MatchType.ONE_TO_ONE
        assert match.tenant_id == TENANT
        assert match.execution_id == "exec-1"
        assert result.exceptions == []

    def test_amount_outside_tolerance_raises_one_exception(self, engine):
        """99.99 against 105.00 leaves both records in a single amount_mismatch exception."""
        result = run(
            engine,
            [make_transaction("T1", "99.99")],
            [make_settlement("S1", "105.00")],
        )

        assert result.matches == []
        assert len(result.exceptions) == 1
        exception = result.exceptions[0]
        assert exception.category is ExceptionCategory.AMOUNT_MISMATCH
        assert exception.severity is ExceptionSeverity.MEDIUM
        assert exception.related_transaction_id == "T1"
        assert exception.related_settlement_id == "S1"
        assert exception.is_open

    def test_large_amount_difference_is_high_severity(self, engine):
        result = run(
            engine,
            [make_transaction("T1", "100.00")],
            [make_settlement("S1", "250.00")],
        )

        assert result.exceptions[0].category is ExceptionCategory.AMOUNT_MISMATCH
        assert result.exceptions[0].severity is ExceptionSeverity.HIGH

    def test_empty_inputs(self, engine):
        result = run(engine, [], [])

        assert result.matches == []
        assert result.exceptions == []
        assert result.stats["matches"] == 0


class TestTolerance:
    """Tolerance edges are inclusive."""

    def test_difference_equal_to_tolerance_matches(self, engine):
        result = run(
            engine,
            [make_transaction("T1", "100.00")],
            [make_settlement("S1", "100.01")],
        )

        assert len(result.matches) == 1
        assert 0.0 <= result.matches[0].confidence < 1.0

    def test_difference_just_over_tolerance_does_not_match(self, engine):
        result = run(
            engine,
            [make_transaction("T1", "100.00")],
            [make_settlement("S1", "100.0100001")],
        )

        assert result.matches == []
        assert result.exceptions[0].category is ExceptionCategory.AMOUNT_MISMATCH

    def test_exact_without_tolerance_requires_equality(self, engine):
        rules = {"rules": [{"field": "amount", "type": "exact"}]}
        result = run(
            engine,
            [make_transaction("T1", "100.00")],
            [make_settlement("S1", "100.01")],
            rules=rules,
        )

        assert result.matches == []

    def test_decimal_precision_is_exact(self, engine):
        """0.1 + 0.2 style float noise never leaks into comparisons."""
        rules = {"rules": [{"field": "amount", "type": "exact"}]}
        result = run(
            engine,
            [make_transaction("T1", "0.30")],
            [make_settlement("S1", "0.3")],
            rules=rules,
        )

        assert len(result.matches) == 1


class TestRulePriority:
    """Rules run in ascending priority; earlier rules claim records first."""

    def test_lower_priority_number_claims_first(self, engine):
        rules = {
            "rules": [
                {"name": "amount", "field": "amount", "type": "exact", "priority": 2},
                {"name": "reference", "field": "reference_id", "type": "exact", "priority": 1},
            ]
        }
        result = run(
            engine,
            [make_transaction("T1", "50.00", reference_id="INV-1")],
            [
                make_settlement("S1", "50.00", reference_id="OTHER"),
                make_settlement("S2", "49.00", reference_id="inv-1"),
            ],
            rules=rules,
        )

        assert len(result.matches) == 1
        assert result.matches[0].matched_by_rule == "reference"
        assert result.matches[0].settlement_ids == ("S2",)
        assert result.stats["rule:reference"] == 1
        assert result.stats["rule:amount"] == 0

    def test_match_records_rule_priority_in_metadata(self, engine):
        result = run(
            engine,
            [make_transaction("T1", "10.00")],
            [make_settlement("S1", "10.00")],
        )

        assert result.matches[0].metadata["rule_priority"] == 0


class TestConflictResolution:
    """Allocation when several records compete for one counterpart."""

    def test_no_settlement_is_allocated_twice(self, engine):
        transactions = [
            make_transaction("T1", "100.00", date="2024-01-14"),
            make_transaction("T2", "100.00", date="2024-01-15"),
        ]
        settlements = [make_settlement("S1", "100.00")]

        result = run(engine, transactions, settlements)

        assert len(result.matches) == 1
        allocated = [sid for m in result.matches for sid in m.settlement_ids]
        assert len(allocated) == len(set(allocated))

    def test_first_wins_takes_earliest_transaction(self, engine):
        transactions = [
            make_transaction("T2", "100.00", date="2024-01-15"),
            make_transaction("T1", "100.00", date="2024-01-14"),
        ]
        result = run(engine, transactions, [make_settlement("S1", "100.00")])

        assert result.matches[0].transaction_ids == ("T1",)
        assert result.exceptions[0].related_transaction_id == "T2"

    def test_last_wins_takes_latest_transaction(self, engine):
        rules = dict(AMOUNT_EXACT, conflict_resolution="last-wins")
        transactions = [
            make_transaction("T1", "100.00", date="2024-01-14"),
            make_transaction("T2", "100.00", date="2024-01-15"),
        ]
        result = run(engine, transactions, [make_settlement("S1", "100.00")], rules=rules)

        assert result.matches[0].transaction_ids == ("T2",)

    def test_manual_review_flags_ties(self, engine):
        """A tie is never resolved by the engine; it goes to review."""
        rules = dict(AMOUNT_EXACT, conflict_resolution="manual-review")
        result = run(
            engine,
            [make_transaction("T1", "100.00")],
            [make_settlement("S1", "100.00"), make_settlement("S2", "100.00")],
            rules=rules,
        )

        assert result.matches == []
        flagged = result.exceptions[0]
        assert flagged.category is ExceptionCategory.AMBIGUOUS_MATCH
        assert flagged.related_transaction_id == "T1"
        assert sorted(flagged.details["candidates"]) == ["S1", "S2"]
        assert result.stats["ambiguous"] == 1

        contenders = {e.related_settlement_id: e.details["contended_ids"] for e in result.exceptions[1:]}
        assert contenders == {"S1": ["T1"], "S2": ["T1"]}
        assert all(e.category is ExceptionCategory.AMBIGUOUS_MATCH for e in result.exceptions)

    def test_manual_review_contenders_are_ambiguous(self, engine):
        """Two transactions tied on one settlement are both reported as ambiguous, not missing."""
        rules = dict(AMOUNT_EXACT, conflict_resolution="manual-review")
        result = run(
            engine,
            [make_transaction("T1", "100.00"), make_transaction("T2", "100.00")],
            [make_settlement("S1", "100.00")],
            rules=rules,
        )

        assert result.matches == []
        categories = {
            (e.related_transaction_id, e.related_settlement_id): e.category for e in result.exceptions
        }
        assert categories == {
            (None, "S1"): ExceptionCategory.AMBIGUOUS_MATCH,
            ("T1", None): ExceptionCategory.AMBIGUOUS_MATCH,
            ("T2", None): ExceptionCategory.AMBIGUOUS_MATCH,
        }
        contended = [e.details["contended_ids"] for e in result.exceptions if e.related_transaction_id]
        assert contended == [["S1"], ["S1"]]
        assert result.stats["ambiguous"] == 1

    def test_manual_review_matches_unique_pairs(self, engine):
        rules = dict(AMOUNT_EXACT, conflict_resolution="manual-review")
        result = run(
            engine,
            [make_transaction("T1", "100.00"), make_transaction("T2", "200.00")],
            [make_settlement("S1", "100.00"), make_settlement("S2", "200.00")],
            rules=rules,
        )

        pairs = {(m.transaction_ids, m.settlement_ids) for m in result.matches}
        assert pairs == {(("T1",), ("S1",)), (("T2",), ("S2",))}
        assert result.exceptions == []

    def test_ambiguity_is_audited(self, engine):
        rules = dict(AMOUNT_EXACT, conflict_resolution="manual-review")
        result = run(
            engine,
            [make_transaction("T1", "100.00")],
            [make_settlement("S1", "100.00"), make_settlement("S2", "100.00")],
            rules=rules,
        )

        actions = [e.action for e in result.audit_entries]
        assert AuditAction.AMBIGUITY_DETECTED in actions


class TestRuleTypes:
    def test_fuzzy_description_match(self, engine):
        rules = {"rules": [{"field": "description", "type": "fuzzy", "threshold": 0.9}]}
        result = run(
            engine,
            [make_transaction("T1", "10.00", description="Acme Corp invoice 42")],
            [make_settlement("S1", "12.00", description="acme corp invoice 4")],
            rules=rules,
        )

        assert len(result.matches) == 1
        assert result.matches[0].confidence == pytest.approx(0.95)

    def test_fuzzy_below_threshold(self, engine):
        rules = {"rules": [{"field": "description", "type": "fuzzy", "threshold": 0.9}]}
        result = run(
            engine,
            [make_transaction("T1", "10.00", description="Acme Corp")],
            [make_settlement("S1", "10.00", description="Globex Ltd")],
            rules=rules,
        )

        assert result.matches == []

    def test_regex_extracts_comparison_key(self, engine):
        rules = {"rules": [{"field": "description", "type": "regex", "pattern": r"INV-(\d+)"}]}
        result = run(
            engine,
            [make_transaction("T1", "10.00", description="Payment for INV-0042")],
            [make_settlement("S1", "10.00", description="inv-0042 deposit")],
            rules=rules,
        )

        assert len(result.matches) == 1
        assert result.matches[0].confidence == 1.0

    def test_composite_rule_uses_weakest_condition(self, engine):
        rules = {
            "rules": [{
                "type": "composite",
                "conditions": [
                    {"field": "amount", "type": "exact", "tolerance": 0.02},
                    {"field": "date", "type": "range", "tolerance": {"days": 2}},
                ],
            }]
        }
        result = run(
            engine,
            [make_transaction("T1", "100.00", date="2024-01-15")],
            [make_settlement("S1", "100.01", date="2024-01-16")],
            rules=rules,
        )

        assert len(result.matches) == 1
        # amount: 1 - 0.5 * 0.01 / 0.02 = 0.75; date: 1 - 0.5 * 1 / 2 = 0.75
        assert result.matches[0].confidence == pytest.approx(0.75)

    def test_confidence_always_within_bounds(self, engine):
        rules = {
            "rules": [
                {"field": "reference_id", "type": "exact"},
                {"field": "amount", "type": "range", "tolerance": 5},
                {"field": "description", "type": "fuzzy", "threshold": 0.5},
            ]
        }
        transactions = [
            make_transaction("T1", "10.00", reference_id="A"),
            make_transaction("T2", "20.00", description="monthly fee"),
            make_transaction("T3", "30.00", description="something"),
        ]
        settlements = [
            make_settlement("S1", "99.00", reference_id="a"),
            make_settlement("S2", "24.99"),
            make_settlement("S3", "500.00", description="somethin"),
        ]
        result = run(engine, transactions, settlements, rules=rules)

        assert len(result.matches) == 3
        for match in result.matches:
            assert 0.0 <= match.confidence <= 1.0


class TestCardinality:
    def test_one_to_many_split_settlements(self, engine):
        rules = {
            "rules": [{
                "field": "reference_id",
                "type": "exact",
                "cardinality": "one-to-many",
                "amount_tolerance": 0.01,
            }]
        }
        result = run(
            engine,
            [make_transaction("T1", "100.00", reference_id="ORD-1")],
            [
                make_settlement("S1", "60.00", reference_id="ORD-1"),
                make_settlement("S2", "40.00", reference_id="ORD-1"),
            ],
            rules=rules,
        )

        assert len(result.matches) == 1
        match = result.matches[0]
        assert match.match_type is MatchType.ONE_TO_MANY
        assert match.transaction_ids == ("T1",)
        assert set(match.settlement_ids) == {"S1", "S2"}
        assert match.confidence == 1.0

    def test_one_to_many_group_total_must_agree(self, engine):
        rules = {"rules": [{"field": "reference_id", "type": "exact", "cardinality": "one-to-many"}]}
        result = run(
            engine,
            [make_transaction("T1", "100.00", reference_id="ORD-1")],
            [
                make_settlement("S1", "60.00", reference_id="ORD-1"),
                make_settlement("S2", "30.00", reference_id="ORD-1"),
            ],
            rules=rules,
        )

        assert result.matches == []

    def test_many_to_one_batch_payout(self, engine):
        rules = {"rules": [{"field": "amount", "type": "exact", "cardinality": "many-to-one"}]}
        transactions = [
            make_transaction("T1", "30.00", provider_transaction_id="ch_1"),
            make_transaction("T2", "70.00", provider_transaction_id="ch_2"),
        ]
        settlements = [make_settlement("S1", "100.00", transaction_ids=("ch_1", "ch_2"))]

        result = run(engine, transactions, settlements, rules=rules)

        assert len(result.matches) == 1
        match = result.matches[0]
        assert match.match_type is MatchType.MANY_TO_ONE
        assert set(match.transaction_ids) == {"T1", "T2"}
        assert match.settlement_ids == ("S1",)
        assert result.exceptions == []

    def test_many_to_one_requires_every_listed_transaction(self, engine):
        rules = {"rules": [{"field": "amount", "type": "exact", "cardinality": "many-to-one"}]}
        transactions = [make_transaction("T1", "30.00", provider_transaction_id="ch_1")]
        settlements = [make_settlement("S1", "30.00", transaction_ids=("ch_1", "ch_missing"))]

        result = run(engine, transactions, settlements, rules=rules)

        assert result.matches == []


class TestNearestMiss:
    """Leftover records are categorised by their closest counterpart."""

    def test_date_mismatch(self, engine):
        rules = {
            "rules": [{
                "type": "composite",
                "conditions": [
                    {"field": "amount", "type": "exact", "tolerance": 0.01},
                    {"field": "date", "type": "range", "tolerance": {"days": 2}},
                ],
            }]
        }
        result = run(
            engine,
            [make_transaction("T1", "100.00", date="2024-01-15")],
            [make_settlement("S1", "100.00", date="2024-01-25")],
            rules=rules,
        )

        assert len(result.exceptions) == 1
        assert result.exceptions[0].category is ExceptionCategory.DATE_MISMATCH
        assert result.exceptions[0].severity is ExceptionSeverity.LOW

    def test_reference_mismatch(self, engine):
        rules = {"rules": [{"field": "reference_id", "type": "exact"}]}
        result = run(
            engine,
            [make_transaction("T1", "100.00", reference_id="A-1")],
            [make_settlement("S1", "100.00", reference_id="B-2")],
            rules=rules,
        )

        assert result.exceptions[0].category is ExceptionCategory.REFERENCE_MISMATCH

    def test_currency_mismatch_without_fx(self, engine):
        result = run(
            engine,
            [make_transaction("T1", "100.00", currency="USD")],
            [make_settlement("S1", "100.00", currency="EUR")],
        )

        assert result.matches == []
        assert result.exceptions[0].category is ExceptionCategory.CURRENCY_MISMATCH

    def test_missing_counterpart(self, engine):
        result = run(engine, [make_transaction("T1", "100.00")], [])

        assert len(result.exceptions) == 1
        assert result.exceptions[0].category is ExceptionCategory.MISSING_COUNTERPART
        assert result.exceptions[0].related_settlement_id is None

    def test_unpaired_settlement_references_nearest_counterpart(self, engine):
        transactions = [make_transaction("T1", "100.00")]
        settlements = [make_settlement("S1", "180.00"), make_settlement("S2", "150.00")]

        result = run(engine, transactions, settlements)

        paired = [e for e in result.exceptions if e.related_transaction_id == "T1"]
        assert paired[0].related_settlement_id == "S2"
        lone = [e for e in result.exceptions if e.related_settlement_id == "S1"]
        assert lone[0].related_transaction_id is None
        assert lone[0].details["nearest_counterpart_id"] == "T1"


class TestFXConversion:
    FX_RULES = dict(AMOUNT_EXACT, fx_conversion={"enabled": True, "base_currency": "USD"})

    @pytest.fixture
    def fx_engine(self, defaults):
        return MatchingEngine(
            rate_provider=StaticRateProvider({"EUR/USD": "1.10"}),
            clock=fixed_clock,
            defaults=defaults,
        )

    def test_converted_amounts_match(self, fx_engine):
        result = run(
            fx_engine,
            [make_transaction("T1", "100.00", currency="EUR")],
            [make_settlement("S1", "110.00", currency="USD")],
            rules=self.FX_RULES,
        )

        assert len(result.matches) == 1
        fx = result.matches[0].metadata["fx"]["T1"]
        assert fx["original_currency"] == "EUR"
        assert Decimal(fx["rate"]) == Decimal("1.10")

    def test_missing_rate_raises_fx_exception(self, fx_engine):
        result = run(
            fx_engine,
            [make_transaction("T1", "100.00", currency="GBP")],
            [make_settlement("S1", "100.00", currency="USD")],
            rules=self.FX_RULES,
        )

        assert result.matches == []
        fx_failures = [e for e in result.exceptions if e.category is ExceptionCategory.FX_RATE_UNAVAILABLE]
        assert len(fx_failures) == 1
        assert fx_failures[0].related_transaction_id == "T1"
        assert fx_failures[0].severity is ExceptionSeverity.HIGH
        assert result.stats["fx_failures"] == 1

    def test_unreadable_rate_response_fails_only_that_record(self, defaults):
        client = httpx.Client(
            base_url="https://fx.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>oops</html>")),
        )
        engine = MatchingEngine(
            rate_provider=HttpRateProvider(base_url="https://fx.test", client=client),
            clock=fixed_clock,
            defaults=defaults,
        )

        result = run(
            engine,
            [make_transaction("T1", "100.00", currency="EUR"), make_transaction("T2", "50.00")],
            [make_settlement("S1", "50.00")],
            rules=self.FX_RULES,
        )

        assert result.matches[0].transaction_ids == ("T2",)
        assert [e.category for e in result.exceptions] == [ExceptionCategory.FX_RATE_UNAVAILABLE]
        assert result.exceptions[0].related_transaction_id == "T1"

    def test_rate_cache_is_injected(self, defaults):
        cache = {}
        engine = MatchingEngine(
            rate_provider=StaticRateProvider({"EUR/USD": "1.10"}),
            rate_cache=cache,
            clock=fixed_clock,
            defaults=defaults,
        )
        run(
            engine,
            [make_transaction("T1", "100.00", currency="EUR")],
            [make_settlement("S1", "110.00")],
            rules=self.FX_RULES,
        )

        assert cache[("EUR", "USD", "2024-01-15")] == Decimal("1.10")

    def test_fx_enabled_without_provider_is_configuration_error(self, engine):
        with pytest.raises(ConfigurationError):
            run(
                engine,
                [make_transaction("T1", "100.00")],
                [make_settlement("S1", "100.00")],
                rules=self.FX_RULES,
            )


class TestGuards:
    def test_cross_tenant_record_is_rejected(self, engine):
        with pytest.raises(SecurityError) as exc_info:
            run(
                engine,
                [make_transaction("T1", "100.00", tenant_id=OTHER_TENANT)],
                [make_settlement("S1", "100.00")],
            )

        assert exc_info.value.resource_tenant_id == OTHER_TENANT

    def test_duplicate_ids_rejected(self, engine):
        with pytest.raises(ValidationError):
            run(
                engine,
                [make_transaction("T1", "1.00"), make_transaction("T1", "2.00")],
                [],
            )

    def test_invalid_rule_fails_before_matching(self, engine):
        rules = {"rules": [{"field": "description", "type": "regex", "pattern": "(unclosed"}]}
        with pytest.raises(ConfigurationError) as exc_info:
            run(engine, [make_transaction("T1", "1.00")], [make_settlement("S1", "1.00")], rules=rules)

        assert exc_info.value.rule_index == 0


class TestDeterminism:
    def test_rerun_yields_identical_output(self, engine):
        transactions = [
            make_transaction("T1", "100.00"),
            make_transaction("T2", "55.50", date="2024-01-16"),
            make_transaction("T3", "12.00"),
        ]
        settlements = [
            make_settlement("S1", "100.00"),
            make_settlement("S2", "55.50", date="2024-01-17"),
            make_settlement("S3", "80.00"),
        ]

        first = run(engine, transactions, settlements)
        second = run(engine, list(reversed(transactions)), list(reversed(settlements)))

        assert [m.signature() for m in first.matches] == [m.signature() for m in second.matches]
        assert [m.id for m in first.matches] == [m.id for m in second.matches]
        assert [e.id for e in first.exceptions] == [e.id for e in second.exceptions]

    def test_audit_trail_records_matches(self, engine):
        result = run(
            engine,
            [make_transaction("T1", "99.99")],
            [make_settlement("S1", "99.99")],
        )

        created = [e for e in result.audit_entries if e.action is AuditAction.MATCH_CREATED]
        assert len(created) == 1
        assert set(created[0].record_ids) == {"T1", "S1"}
