"""
Reconciliation saga: normalize -> extract fees -> match -> publish exceptions.

Step outputs are plain dicts so that the whole run can be rebuilt from
its events.
"""

from typing import Any, Dict, List, Optional

import structlog

from ..eventsourcing import reconciliation as events
from ..fees import FeeExtractionService
from ..ingestion import Normalizer
from ..models import (
    ExceptionRecord,
    ExecutionSummary,
    MatchingRulesConfig,
    Settlement,
    Transaction,
)
from ..reconciliation import ExceptionQueue, MatchingContext, MatchingEngine
from .orchestrator import SagaContext, SagaDefinition, SagaStep, StepResult

logger = structlog.get_logger()

SAGA_TYPE = "reconciliation"

NORMALIZE_RECORDS = "normalize_records"
EXTRACT_FEES = "extract_fees"
MATCH_RECORDS = "match_records"
PUBLISH_EXCEPTIONS = "publish_exceptions"


def build_input(
    transactions_provider: str,
    transaction_payloads: List[Dict[str, Any]],
    settlements_provider: str,
    settlement_payloads: List[Dict[str, Any]],
    rules: Dict[str, Any],
) -> Dict[str, Any]:
    """Saga input for one reconciliation job."""
    return {
        "transactions": {"provider": transactions_provider, "payloads": list(transaction_payloads)},
        "settlements": {"provider": settlements_provider, "payloads": list(settlement_payloads)},
        "rules": rules,
    }


class ReconciliationSaga:
    """
    Concrete steps for one reconciliation run. Collaborators are injected;
    exception queues are kept per tenant.
    """

    def __init__(
        self,
        normalizer: Optional[Normalizer] = None,
        fee_service: Optional[FeeExtractionService] = None,
        engine: Optional[MatchingEngine] = None,
        exception_queues: Optional[Dict[str, ExceptionQueue]] = None,
    ):
        self.normalizer = normalizer or Normalizer()
        self.fee_service = fee_service or FeeExtractionService()
        self.engine = engine or MatchingEngine()
        self.exception_queues: Dict[str, ExceptionQueue] = exception_queues if exception_queues is not None else {}

    def queue_for(self, tenant_id: str) -> ExceptionQueue:
        if tenant_id not in self.exception_queues:
            self.exception_queues[tenant_id] = ExceptionQueue(tenant_id)
        return self.exception_queues[tenant_id]

    def definition(self) -> SagaDefinition:
        return SagaDefinition(
            type=SAGA_TYPE,
            steps=[
                SagaStep(NORMALIZE_RECORDS, self.normalize_records),
                SagaStep(EXTRACT_FEES, self.extract_fees),
                SagaStep(MATCH_RECORDS, self.match_records, compensate=self.supersede_matches),
                SagaStep(PUBLISH_EXCEPTIONS, self.publish_exceptions),
            ],
            summarize=self.summarize,
        )

    # Steps

    async def normalize_records(self, context: SagaContext) -> StepResult:
        tx_input = context.input["transactions"]
        st_input = context.input["settlements"]

        tx_batch = self.normalizer.normalize_batch(tx_input["payloads"], tx_input["provider"])
        st_batch = self.normalizer.normalize_batch(st_input["payloads"], st_input["provider"])

        transactions = [self.normalizer.to_transaction(r, context.tenant_id) for r in tx_batch.records]
        settlements = [self.normalizer.to_settlement(r, context.tenant_id) for r in st_batch.records]
        logger.info(
            "Records normalized",
            saga_id=context.saga_id,
            transactions=len(transactions),
            settlements=len(settlements),
            rejected=len(tx_batch.rejected) + len(st_batch.rejected),
        )

        return StepResult(output={
            "transactions": [t.to_dict() for t in transactions],
            "settlements": [s.to_dict() for s in settlements],
            "rejected": [
                {"side": side, "index": r.index, "errors": r.errors}
                for side, batch in (("transaction", tx_batch), ("settlement", st_batch))
                for r in batch.rejected
            ],
        })

    async def extract_fees(self, context: SagaContext) -> StepResult:
        transactions = [Transaction.from_dict(t) for t in context.output_of(NORMALIZE_RECORDS)["transactions"]]
        results = self.fee_service.extract_many(transactions, context.tenant_id)
        return StepResult(output={
            "fees": {tx_id: result.to_dict() for tx_id, result in results.items()},
            "fee_count": sum(len(r.fees) for r in results.values()),
        })

    async def match_records(self, context: SagaContext) -> StepResult:
        normalized = context.output_of(NORMALIZE_RECORDS)
        # Raises ConfigurationError, which is not retried
        rules = MatchingRulesConfig.from_dict(context.input["rules"])

        result = self.engine.match(MatchingContext(
            transactions=[Transaction.from_dict(t) for t in normalized["transactions"]],
            settlements=[Settlement.from_dict(s) for s in normalized["settlements"]],
            rules=rules,
            tenant_id=context.tenant_id,
            job_id=context.state.get("job_id"),
            execution_id=context.saga_id,
        ))

        meta = {"correlation_id": context.correlation_id}
        domain_events = [
            events.record_matched(context.saga_id, context.tenant_id, m.to_dict(), **meta)
            for m in result.matches
        ] + [
            events.exception_raised(context.saga_id, context.tenant_id, e.to_dict(), **meta)
            for e in result.exceptions
        ]
        return StepResult(
            output={
                "match_ids": [m.id for m in result.matches],
                "exception_ids": [e.id for e in result.exceptions],
                "stats": result.stats,
            },
            events=domain_events,
        )

    async def supersede_matches(self, context: SagaContext) -> Dict[str, Any]:
        return {"superseded_match_ids": list(context.output_of(MATCH_RECORDS).get("match_ids", []))}

    async def publish_exceptions(self, context: SagaContext) -> StepResult:
        records = [ExceptionRecord.from_dict(e) for e in context.state["exceptions"].values()]
        added = self.queue_for(context.tenant_id).add_many(records)
        logger.info("Exceptions published", saga_id=context.saga_id, added=added, total=len(records))
        return StepResult(output={"published": added, "total": len(records)})

    # Completion

    def summarize(self, state: Dict[str, Any]) -> Dict[str, Any]:
        matched = sum(1 for m in state["matches"].values() if not m.get("superseded"))
        unmatched = len(state["exceptions"])
        errors = len(state["step_outputs"].get(NORMALIZE_RECORDS, {}).get("rejected", []))
        return ExecutionSummary.compute(matched, unmatched, errors).to_dict()
