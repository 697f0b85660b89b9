"""
End-to-end tests for the reconciliation saga.
"""

import pytest

from conftest import OTHER_TENANT, TENANT
from settler.eventsourcing import AGGREGATE_TYPE
from settler.eventsourcing import reconciliation as events
from settler.exceptions import InvalidSagaTransitionError
from settler.models import ExceptionCategory, ExecutionStatus
from settler.reconciliation import ExceptionQueue
from settler.sagas import SAGA_TYPE, ReconciliationSaga, build_input

JAN_15 = 1705276800

RULES = {"rules": [{"field": "amount", "type": "exact", "tolerance": 0.01}]}


def stripe_charges():
    return [
        {"id": "ch_1", "amount": 9999, "currency": "usd", "created": JAN_15, "status": "succeeded"},
        {"id": "ch_2", "amount": 5000, "currency": "usd", "created": JAN_15, "status": "succeeded"},
        {"id": "ch_bad", "amount": 100, "created": JAN_15},
    ]


def quickbooks_deposits():
    return [
        {"Id": "130", "TotalAmt": 99.99, "CurrencyRef": {"value": "USD"}, "TxnDate": "2024-01-15"},
        {"Id": "131", "TotalAmt": 70.00, "CurrencyRef": {"value": "USD"}, "TxnDate": "2024-01-15"},
    ]


@pytest.fixture
def saga():
    return ReconciliationSaga()


@pytest.fixture
def registered(orchestrator, saga):
    orchestrator.register_saga(saga.definition())
    return orchestrator


async def run_job(orchestrator, rules=RULES, tenant_id=TENANT):
    return await orchestrator.start_saga(
        SAGA_TYPE,
        tenant_id,
        build_input("stripe", stripe_charges(), "quickbooks", quickbooks_deposits(), rules),
        job_id="job-1",
    )


class TestReconciliationSaga:
    @pytest.mark.asyncio
    async def test_full_run_summary(self, registered):
        saga_id = await run_job(registered)

        status = registered.get_saga_status(saga_id)
        assert status["status"] == ExecutionStatus.COMPLETED.value
        assert status["completed_steps"] == [
            "normalize_records", "extract_fees", "match_records", "publish_exceptions",
        ]
        assert status["summary"] == {"matched": 1, "unmatched": 1, "errors": 1, "accuracy": 50.0}

    @pytest.mark.asyncio
    async def test_matches_and_exceptions_are_events(self, registered, event_store):
        saga_id = await run_job(registered)

        matched = event_store.get_events_by_type(events.RECORD_MATCHED, tenant_id=TENANT)
        raised = event_store.get_events_by_type(events.EXCEPTION_RAISED, tenant_id=TENANT)
        assert len(matched) == 1
        assert len(raised) == 1
        assert raised[0].data["exception"]["category"] == ExceptionCategory.AMOUNT_MISMATCH.value
        assert all(e.aggregate_id == saga_id for e in matched + raised)

    @pytest.mark.asyncio
    async def test_exceptions_published_to_tenant_queue(self, registered, saga):
        await run_job(registered)

        queue = saga.queue_for(TENANT)
        open_records = queue.get_open()
        assert len(open_records) == 1
        assert open_records[0].related_transaction_id is not None
        assert open_records[0].related_settlement_id is not None
        assert OTHER_TENANT not in saga.exception_queues

    @pytest.mark.asyncio
    async def test_rejected_records_kept_in_step_output(self, registered):
        saga_id = await run_job(registered)

        state = registered.load_state(saga_id)
        rejected = state["step_outputs"]["normalize_records"]["rejected"]
        assert rejected == [{"side": "transaction", "index": 2, "errors": rejected[0]["errors"]}]
        assert "currency is required" in rejected[0]["errors"]

    @pytest.mark.asyncio
    async def test_rerun_is_deterministic(self, registered, event_store):
        first = registered.load_state(await run_job(registered))
        second = registered.load_state(await run_job(registered))

        assert sorted(first["matches"]) == sorted(second["matches"])
        assert sorted(first["exceptions"]) == sorted(second["exceptions"])


class TestReconciliationSagaFailures:
    @pytest.mark.asyncio
    async def test_bad_rules_fail_without_retry(self, registered, dead_letter_queue, event_store):
        saga_id = await run_job(registered, rules={"rules": [{"field": "amount", "type": "telepathy"}]})

        status = registered.get_saga_status(saga_id)
        assert status["status"] == ExecutionStatus.FAILED.value
        assert status["error"]["type"] == "ConfigurationError"
        assert event_store.get_events_by_type(events.RECORD_MATCHED) == []

        entry = dead_letter_queue.get_entries_by_aggregate(saga_id)[0]
        assert entry.step == "match_records"
        assert entry.attempts == 1
        assert entry.payload["completed_steps"] == ["normalize_records", "extract_fees"]

    @pytest.mark.asyncio
    async def test_late_failure_supersedes_matches(self, orchestrator, dead_letter_queue):
        # A queue owned by another tenant makes publishing fail after matching
        saga = ReconciliationSaga(exception_queues={TENANT: ExceptionQueue(OTHER_TENANT)})
        orchestrator.register_saga(saga.definition())

        saga_id = await run_job(orchestrator)

        state = orchestrator.load_state(saga_id)
        assert state["status"] == ExecutionStatus.FAILED.value
        assert state["compensated_steps"] == ["match_records"]
        assert state["matches"]
        assert all(m["superseded"] for m in state["matches"].values())
        assert dead_letter_queue.get_entries_by_aggregate(saga_id)[0].error_type == "SecurityError"

    @pytest.mark.asyncio
    async def test_failed_run_cannot_be_retried(self, registered):
        saga_id = await run_job(registered, rules={"rules": []})

        with pytest.raises(InvalidSagaTransitionError):
            await registered.retry_saga(saga_id)

        assert registered.get_saga_status(saga_id)["version"] == len(
            registered.event_store.get_events(saga_id, AGGREGATE_TYPE)
        )
