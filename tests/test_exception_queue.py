"""
Tests for the exception review queue.
"""

import pytest

from conftest import OTHER_TENANT, TENANT, fixed_clock
from settler.exceptions import ExceptionRecordNotFoundError, InvalidTransitionError, SecurityError
from settler.models import ExceptionCategory, ExceptionRecord, ExceptionSeverity, ResolutionStatus
from settler.reconciliation import ExceptionQueue


def exception_record(id, category=ExceptionCategory.AMOUNT_MISMATCH, tenant_id=TENANT, **kwargs):
    return ExceptionRecord(
        id=id,
        tenant_id=tenant_id,
        category=category,
        severity=kwargs.pop("severity", ExceptionSeverity.MEDIUM),
        description=f"{category.value} on {id}",
        **kwargs,
    )


@pytest.fixture
def queue():
    queue = ExceptionQueue(TENANT, clock=fixed_clock)
    queue.add_many([
        exception_record("E1", related_transaction_id="T1", related_settlement_id="S1"),
        exception_record("E2", ExceptionCategory.MISSING_COUNTERPART, related_transaction_id="T2"),
        exception_record("E3", ExceptionCategory.FX_RATE_UNAVAILABLE, severity=ExceptionSeverity.HIGH),
    ])
    return queue


class TestExceptionQueue:
    def test_add_is_idempotent(self, queue):
        added = queue.add_many([exception_record("E1"), exception_record("E4")])

        assert added == 1
        assert queue.stats()["total"] == 4

    def test_cross_tenant_record_rejected(self, queue):
        with pytest.raises(SecurityError):
            queue.add(exception_record("E9", tenant_id=OTHER_TENANT))

        assert queue.stats()["total"] == 3

    def test_filters(self, queue):
        assert [e.id for e in queue.list(category=ExceptionCategory.MISSING_COUNTERPART)] == ["E2"]
        assert [e.id for e in queue.list(severity=ExceptionSeverity.HIGH)] == ["E3"]
        assert len(queue.get_open()) == 3

    def test_open_for_record(self, queue):
        assert [e.id for e in queue.open_for_record("S1")] == ["E1"]
        assert queue.open_for_record("unknown") == []

    def test_review_lifecycle(self, queue):
        queue.start_review("E1", user_id="ops-1")
        resolved = queue.resolve("E1", notes="bank fee", resolved_by="ops-1")

        assert resolved.resolution_status is ResolutionStatus.RESOLVED
        assert resolved.resolved_by == "ops-1"
        assert resolved.resolution_notes == "bank fee"
        assert [h["status"] for h in queue.history("E1")] == ["open", "in_progress", "resolved"]
        assert queue.open_for_record("S1") == []

    def test_closed_record_cannot_reopen(self, queue):
        queue.ignore("E2", notes="test data")

        with pytest.raises(InvalidTransitionError):
            queue.resolve("E2")
        with pytest.raises(InvalidTransitionError):
            queue.start_review("E2")

    def test_review_only_from_open(self, queue):
        queue.start_review("E1")

        with pytest.raises(InvalidTransitionError):
            queue.start_review("E1")

    def test_bulk_resolve_is_all_or_nothing(self, queue):
        queue.resolve("E3")

        with pytest.raises(InvalidTransitionError):
            queue.bulk_resolve(["E1", "E3"])

        assert queue.get("E1").resolution_status is ResolutionStatus.OPEN

    def test_bulk_resolve(self, queue):
        resolved = queue.bulk_resolve(["E1", "E2", "E1"], notes="batch")

        assert [e.id for e in resolved] == ["E1", "E2"]
        assert queue.stats()["resolved"] == 2
        assert queue.stats()["open"] == 1

    def test_unknown_id(self, queue):
        with pytest.raises(ExceptionRecordNotFoundError):
            queue.get("missing")
