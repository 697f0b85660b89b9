"""
Saga Orchestrator - event-sourced, resumable step execution.

Saga state is never stored directly; every transition is an event and the
current state is the fold of the stream (from the latest snapshot when one
exists). Cancellation is itself an event, observed before each step.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from ..config import get_settings
from ..eventsourcing import reconciliation as events
from ..eventsourcing.envelope import EventEnvelope
from ..eventsourcing.snapshots import SnapshotService
from ..eventsourcing.store import EventStore
from ..exceptions import (
    ConfigurationError,
    InvalidSagaTransitionError,
    SagaError,
    SagaNotFoundError,
    SagaStepError,
    SecurityError,
    StepDeferred,
    ValidationError,
    VersionConflictError,
)
from ..models import ExecutionStatus, utcnow
from ..resilience.dead_letter import DeadLetterQueue

logger = structlog.get_logger()

AGGREGATE_TYPE = events.AGGREGATE_TYPE


@dataclass
class SagaContext:
    """What a step sees: identity, the saga input, earlier step outputs and the full state."""
    saga_id: str
    tenant_id: str
    correlation_id: Optional[str]
    input: Dict[str, Any]
    outputs: Dict[str, Dict[str, Any]]
    state: Dict[str, Any]
    attempt: int = 1

    def output_of(self, step: str) -> Dict[str, Any]:
        return self.outputs.get(step, {})


@dataclass
class StepResult:
    """
    Step output (stored on StepCompleted) and any domain events to append
    in the same write.
    """
    output: Dict[str, Any] = field(default_factory=dict)
    events: List[EventEnvelope] = field(default_factory=list)


StepFn = Callable[[SagaContext], Awaitable[Optional[StepResult]]]
CompensateFn = Callable[[SagaContext], Awaitable[Optional[Dict[str, Any]]]]


@dataclass
class SagaStep:
    name: str
    execute: StepFn
    compensate: Optional[CompensateFn] = None
    retryable: bool = True
    max_retries: Optional[int] = None  # Retries after the first attempt
    timeout: Optional[float] = None    # Seconds


@dataclass
class SagaDefinition:
    type: str
    steps: List[SagaStep]
    summarize: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None
    on_complete: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None
    on_failure: Optional[Callable[[Dict[str, Any], BaseException], Awaitable[None]]] = None


def is_step_error_retryable(error: BaseException) -> bool:
    """Input, config, tenant and deferral errors are final; anything else may be transient."""
    if isinstance(error, StepDeferred):
        return False
    if isinstance(error, SagaStepError):
        return error.retryable
    if isinstance(error, (ValidationError, ConfigurationError, SecurityError)):
        return False
    return isinstance(error, Exception)


class SagaOrchestrator:
    """
    Runs registered saga definitions over an event store.

    Each step is retried with exponential backoff and jitter. When a step
    fails for good, completed steps are compensated in reverse order (as
    forward events), the saga is marked failed and a dead letter entry is
    written.
    """

    def __init__(
        self,
        event_store: EventStore,
        snapshot_service: Optional[SnapshotService] = None,
        dead_letter_queue: Optional[DeadLetterQueue] = None,
        retry_wait=None,
        clock: Callable[[], datetime] = utcnow,
        max_conflict_retries: int = 5,
    ):
        self.event_store = event_store
        self.snapshot_service = snapshot_service
        self.dead_letter_queue = dead_letter_queue or DeadLetterQueue(clock=clock)
        self.settings = get_settings()
        self.retry_wait = retry_wait or wait_exponential_jitter(
            initial=self.settings.saga_retry_min_seconds,
            max=self.settings.saga_retry_max_seconds,
        )
        self.clock = clock
        self.max_conflict_retries = max_conflict_retries
        self._definitions: Dict[str, SagaDefinition] = {}

    # Registration and queries

    def register_saga(self, definition: SagaDefinition) -> None:
        names = [s.name for s in definition.steps]
        if len(names) != len(set(names)):
            raise SagaError(f"Saga {definition.type} has duplicate step names", {"steps": names})
        self._definitions[definition.type] = definition

    def get_definition(self, saga_type: str) -> SagaDefinition:
        definition = self._definitions.get(saga_type)
        if definition is None:
            raise SagaError(f"Saga type '{saga_type}' is not registered", {"saga_type": saga_type})
        return definition

    def load_state(self, saga_id: str) -> Dict[str, Any]:
        if self.snapshot_service is not None:
            state = self.snapshot_service.rebuild(saga_id, AGGREGATE_TYPE, events.initial_state(), events.apply_event)
        else:
            state = events.fold(self.event_store.get_events(saga_id, AGGREGATE_TYPE))
        if state["saga_id"] is None:
            raise SagaNotFoundError(saga_id)
        return state

    def get_saga_status(self, saga_id: str) -> Dict[str, Any]:
        state = self.load_state(saga_id)
        return {
            "saga_id": saga_id,
            "saga_type": state["saga_type"],
            "tenant_id": state["tenant_id"],
            "job_id": state["job_id"],
            "status": state["status"],
            "current_step": state["current_step"],
            "completed_steps": list(state["completed_steps"]),
            "pending_steps": events.pending_steps(state),
            "compensated_steps": list(state["compensated_steps"]),
            "deferred": state["deferred"],
            "step_history": list(state["step_history"]),
            "summary": state["summary"],
            "error": state["error"],
            "version": state["version"],
            "started_at": state["started_at"],
            "completed_at": state["completed_at"],
        }

    def list_sagas(self, tenant_id: Optional[str] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
        sagas = []
        for saga_id in self.event_store.list_aggregate_ids(AGGREGATE_TYPE):
            state = self.load_state(saga_id)
            if tenant_id is not None and state["tenant_id"] != tenant_id:
                continue
            if status is not None and state["status"] != status:
                continue
            sagas.append(self.get_saga_status(saga_id))
        return sorted(sagas, key=lambda s: (s["started_at"], s["saga_id"]))

    # Commands

    async def start_saga(
        self,
        saga_type: str,
        tenant_id: str,
        input_data: Dict[str, Any],
        job_id: Optional[str] = None,
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        saga_id: Optional[str] = None,
    ) -> str:
        """Record the start event and run the saga until it completes, fails or is suspended."""
        definition = self.get_definition(saga_type)
        saga_id = saga_id or str(uuid4())
        correlation_id = correlation_id or saga_id

        started = events.reconciliation_started(
            saga_id,
            tenant_id,
            saga_type=saga_type,
            steps=[s.name for s in definition.steps],
            input_data=input_data,
            started_at=self.clock(),
            job_id=job_id,
            user_id=user_id,
            correlation_id=correlation_id,
        )
        self.event_store.append(saga_id, AGGREGATE_TYPE, [started], expected_version=0)
        logger.info("Saga started", saga_id=saga_id, saga_type=saga_type, tenant_id=tenant_id, job_id=job_id)

        await self._run(saga_id)
        return saga_id

    async def resume_saga(self, saga_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Continue the pending steps of a non-terminal saga."""
        state = self.load_state(saga_id)
        if ExecutionStatus(state["status"]).is_terminal:
            raise InvalidSagaTransitionError(saga_id, state["status"], "resume")

        pending = events.pending_steps(state)
        appended = self._append(
            saga_id,
            lambda s: [events.saga_resumed(
                saga_id, s["tenant_id"], pending[0] if pending else None, **self._meta(s, user_id)
            )],
            guard=lambda s: not ExecutionStatus(s["status"]).is_terminal,
        )
        if appended is None:
            state = self.load_state(saga_id)
            raise InvalidSagaTransitionError(saga_id, state["status"], "resume")

        logger.info("Saga resumed", saga_id=saga_id, from_step=pending[0] if pending else None)
        await self._run(saga_id)
        return self.get_saga_status(saga_id)

    async def retry_saga(self, saga_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Same operation as resume: continue from the last completed step."""
        return await self.resume_saga(saga_id, user_id=user_id)

    async def cancel_saga(self, saga_id: str, reason: Optional[str] = None, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Record cancellation. Work already done is not rolled back; a step in
        flight finishes and the saga stops before the next one.
        """
        state = self.load_state(saga_id)
        if ExecutionStatus(state["status"]).is_terminal:
            raise InvalidSagaTransitionError(saga_id, state["status"], "cancel")

        appended = self._append(
            saga_id,
            lambda s: [events.reconciliation_cancelled(
                saga_id, s["tenant_id"], cancelled_at=self.clock(), reason=reason, **self._meta(s, user_id)
            )],
            guard=lambda s: not ExecutionStatus(s["status"]).is_terminal,
        )
        if appended is None:
            state = self.load_state(saga_id)
            raise InvalidSagaTransitionError(saga_id, state["status"], "cancel")

        logger.info("Saga cancelled", saga_id=saga_id, reason=reason, by=user_id)
        return self.get_saga_status(saga_id)

    # Execution

    async def _run(self, saga_id: str) -> Dict[str, Any]:
        state = self.load_state(saga_id)
        definition = self.get_definition(state["saga_type"])

        for step in definition.steps:
            state = self.load_state(saga_id)
            if state["status"] != ExecutionStatus.RUNNING.value:
                logger.info("Saga stopped before step", saga_id=saga_id, step=step.name, status=state["status"])
                return state
            if step.name in state["completed_steps"]:
                continue

            try:
                result = await self._execute_step(step, saga_id)
            except StepDeferred as deferred:
                self._append(
                    saga_id,
                    lambda s: [events.step_deferred(
                        saga_id, s["tenant_id"], step.name, deferred.reason, **self._meta(s)
                    )],
                )
                logger.info("Saga suspended", saga_id=saga_id, step=step.name, reason=deferred.reason)
                return self.load_state(saga_id)
            except Exception as error:
                await self._fail(definition, step, saga_id, error)
                return self.load_state(saga_id)

            self._append(
                saga_id,
                lambda s: list(result.events) + [
                    events.step_completed(saga_id, s["tenant_id"], step.name, result.output, **self._meta(s))
                ],
            )
            logger.info("Saga step completed", saga_id=saga_id, step=step.name)

        state = self.load_state(saga_id)
        summary = definition.summarize(state) if definition.summarize else {}
        completed = self._append(
            saga_id,
            lambda s: [events.reconciliation_completed(
                saga_id, s["tenant_id"], summary, completed_at=self.clock(), **self._meta(s)
            )],
            guard=lambda s: s["status"] == ExecutionStatus.RUNNING.value,
        )
        state = self.load_state(saga_id)
        if completed is not None:
            logger.info("Saga completed", saga_id=saga_id, summary=summary)
            if definition.on_complete:
                await definition.on_complete(state)
        return state

    async def _execute_step(self, step: SagaStep, saga_id: str) -> StepResult:
        max_retries = step.max_retries if step.max_retries is not None else self.settings.saga_max_retries
        attempts_allowed = max_retries + 1 if step.retryable else 1

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts_allowed),
            wait=self.retry_wait,
            retry=retry_if_exception(is_step_error_retryable),
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                number = attempt.retry_state.attempt_number
                state = self._append(
                    saga_id,
                    lambda s: [events.step_started(saga_id, s["tenant_id"], step.name, number, **self._meta(s))],
                )
                context = SagaContext(
                    saga_id=saga_id,
                    tenant_id=state["tenant_id"],
                    correlation_id=state["correlation_id"],
                    input=state["input"],
                    outputs=state["step_outputs"],
                    state=state,
                    attempt=number,
                )
                try:
                    if step.timeout:
                        result = await asyncio.wait_for(step.execute(context), timeout=step.timeout)
                    else:
                        result = await step.execute(context)
                except StepDeferred:
                    raise
                except Exception as error:
                    will_retry = is_step_error_retryable(error) and number < attempts_allowed
                    self._append(
                        saga_id,
                        lambda s: [events.step_failed(
                            saga_id,
                            s["tenant_id"],
                            step.name,
                            error=str(error) or type(error).__name__,
                            error_type=type(error).__name__,
                            retryable=will_retry,
                            attempts=number,
                            **self._meta(s),
                        )],
                    )
                    logger.warning(
                        "Saga step attempt failed",
                        saga_id=saga_id,
                        step=step.name,
                        attempt=number,
                        will_retry=will_retry,
                        error=str(error),
                    )
                    raise
                return result or StepResult()

        raise SagaError(f"Step {step.name} produced no result", {"step": step.name})

    async def _fail(self, definition: SagaDefinition, failed_step: SagaStep, saga_id: str, error: BaseException) -> None:
        state = self.load_state(saga_id)
        compensation_errors = await self._compensate(definition, failed_step, saga_id)

        retryable = is_step_error_retryable(error)
        attempts = sum(
            1 for h in state["step_history"]
            if h["step"] == failed_step.name and h["status"] == "failed"
        )
        failed = self._append(
            saga_id,
            lambda s: [events.reconciliation_failed(
                saga_id,
                s["tenant_id"],
                error_type=type(error).__name__,
                message=str(error) or type(error).__name__,
                failed_at=self.clock(),
                step=failed_step.name,
                retryable=retryable,
                **self._meta(s),
            )],
            guard=lambda s: s["status"] == ExecutionStatus.RUNNING.value,
        )

        self.dead_letter_queue.add_entry(
            tenant_id=state["tenant_id"],
            aggregate_id=saga_id,
            aggregate_type=AGGREGATE_TYPE,
            error=str(error) or type(error).__name__,
            error_type=type(error).__name__,
            step=failed_step.name,
            attempts=attempts,
            payload={
                "saga_type": definition.type,
                "job_id": state["job_id"],
                "correlation_id": state["correlation_id"],
                "input": state["input"],
                "completed_steps": list(state["completed_steps"]),
                "compensation_errors": compensation_errors,
            },
        )
        logger.error(
            "Saga failed",
            saga_id=saga_id,
            step=failed_step.name,
            error_type=type(error).__name__,
            error=str(error),
        )

        if failed is not None and definition.on_failure:
            await definition.on_failure(self.load_state(saga_id), error)

    async def _compensate(self, definition: SagaDefinition, failed_step: SagaStep, saga_id: str) -> List[Dict[str, str]]:
        """Compensate completed steps before the failed one, last first. Returns compensation failures."""
        state = self.load_state(saga_id)
        index = [s.name for s in definition.steps].index(failed_step.name)
        errors = []

        for step in reversed(definition.steps[:index]):
            if step.compensate is None:
                continue
            if step.name not in state["completed_steps"] or step.name in state["compensated_steps"]:
                continue
            context = SagaContext(
                saga_id=saga_id,
                tenant_id=state["tenant_id"],
                correlation_id=state["correlation_id"],
                input=state["input"],
                outputs=state["step_outputs"],
                state=state,
            )
            try:
                details = await step.compensate(context)
            except Exception as e:
                logger.exception("Compensation failed", saga_id=saga_id, step=step.name)
                errors.append({"step": step.name, "error": str(e)})
                continue
            state = self._append(
                saga_id,
                lambda s: [events.step_compensated(saga_id, s["tenant_id"], step.name, details, **self._meta(s))],
            )
            logger.info("Saga step compensated", saga_id=saga_id, step=step.name)
        return errors

    # Event plumbing

    def _meta(self, state: Dict[str, Any], user_id: Optional[str] = None) -> Dict[str, Any]:
        return {"correlation_id": state["correlation_id"], "user_id": user_id}

    def _append(
        self,
        saga_id: str,
        build: Callable[[Dict[str, Any]], List[EventEnvelope]],
        guard: Optional[Callable[[Dict[str, Any]], bool]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Append events built from the freshest state. On a version conflict
        the state is re-read and the append retried. Returns the new state,
        or None when `guard` rejects the current state.
        """
        for _ in range(self.max_conflict_retries):
            state = self.load_state(saga_id)
            if guard is not None and not guard(state):
                return None
            new_events = build(state)
            try:
                self.event_store.append(saga_id, AGGREGATE_TYPE, new_events, expected_version=state["version"])
            except VersionConflictError:
                logger.warning("Saga append conflict, retrying", saga_id=saga_id, expected_version=state["version"])
                continue
            for event in new_events:
                state = events.apply_event(state, event.with_sequence(state["version"] + 1))
            self._maybe_snapshot(saga_id)
            return state

        raise VersionConflictError(
            saga_id, AGGREGATE_TYPE, state["version"], self.event_store.get_version(saga_id, AGGREGATE_TYPE)
        )

    def _maybe_snapshot(self, saga_id: str) -> None:
        if self.snapshot_service is None:
            return
        try:
            self.snapshot_service.maybe_snapshot(saga_id, AGGREGATE_TYPE, events.initial_state(), events.apply_event)
        except VersionConflictError:
            # Another writer snapshotted first
            logger.info("Snapshot skipped", saga_id=saga_id)
