"""
Reconciliation saga events and the state reducer.

State is a plain dict derived only from the event stream (optionally
starting from a snapshot of the same dict). apply_event never mutates its
input.
"""

import copy
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models import Execution, ExecutionStatus, ExecutionSummary, StepStatus
from .envelope import EventEnvelope, create_event

AGGREGATE_TYPE = "reconciliation"

RECONCILIATION_STARTED = "ReconciliationStarted"
STEP_STARTED = "StepStarted"
STEP_COMPLETED = "StepCompleted"
STEP_FAILED = "StepFailed"
STEP_DEFERRED = "StepDeferred"
STEP_COMPENSATED = "StepCompensated"
RECORD_MATCHED = "RecordMatched"
EXCEPTION_RAISED = "ExceptionRaised"
SAGA_RESUMED = "SagaResumed"
RECONCILIATION_COMPLETED = "ReconciliationCompleted"
RECONCILIATION_FAILED = "ReconciliationFailed"
RECONCILIATION_CANCELLED = "ReconciliationCancelled"


def initial_state() -> Dict[str, Any]:
    return {
        "saga_id": None,
        "saga_type": None,
        "tenant_id": None,
        "job_id": None,
        "correlation_id": None,
        "status": None,
        "steps": [],
        "current_step": None,
        "completed_steps": [],
        "compensated_steps": [],
        "step_outputs": {},
        "step_history": [],
        "deferred": None,
        "input": {},
        "matches": {},
        "exceptions": {},
        "summary": None,
        "error": None,
        "started_at": None,
        "completed_at": None,
        "version": 0,
    }


def pending_steps(state: Dict[str, Any]) -> List[str]:
    """Steps not yet completed, in definition order."""
    done = set(state["completed_steps"])
    return [s for s in state["steps"] if s not in done]


def _history(state: Dict[str, Any], event: EventEnvelope, status: StepStatus, **extra) -> None:
    entry = {
        "step": event.data["step"],
        "status": status.value,
        "at": event.metadata.timestamp.isoformat(),
        "sequence": event.sequence,
    }
    entry.update(extra)
    state["step_history"].append(entry)


def apply_event(state: Dict[str, Any], event: EventEnvelope) -> Dict[str, Any]:
    """Fold one event into a new state dict. Unknown event types only advance the version."""
    new = copy.deepcopy(state)
    data = event.data
    kind = event.event_type

    if kind == RECONCILIATION_STARTED:
        new.update({
            "saga_id": event.aggregate_id,
            "saga_type": data["saga_type"],
            "tenant_id": event.metadata.tenant_id,
            "job_id": data.get("job_id"),
            "correlation_id": event.metadata.correlation_id,
            "status": ExecutionStatus.RUNNING.value,
            "steps": list(data["steps"]),
            "input": copy.deepcopy(data.get("input") or {}),
            "started_at": data["started_at"],
        })
    elif kind == STEP_STARTED:
        new["current_step"] = data["step"]
        new["deferred"] = None
        _history(new, event, StepStatus.STARTED, attempt=data.get("attempt", 1))
    elif kind == STEP_COMPLETED:
        step = data["step"]
        if step not in new["completed_steps"]:
            new["completed_steps"].append(step)
        new["step_outputs"][step] = copy.deepcopy(data.get("output") or {})
        new["current_step"] = None
        _history(new, event, StepStatus.COMPLETED)
    elif kind == STEP_FAILED:
        _history(
            new, event, StepStatus.FAILED,
            error=data.get("error"), attempts=data.get("attempts"), retryable=data.get("retryable"),
        )
    elif kind == STEP_DEFERRED:
        new["deferred"] = {"step": data["step"], "reason": data.get("reason", "")}
        new["current_step"] = None
        _history(new, event, StepStatus.DEFERRED, reason=data.get("reason", ""))
    elif kind == STEP_COMPENSATED:
        step = data["step"]
        if step not in new["compensated_steps"]:
            new["compensated_steps"].append(step)
        # Compensation supersedes, it never deletes
        for match_id in data.get("superseded_match_ids") or []:
            if match_id in new["matches"]:
                new["matches"][match_id]["superseded"] = True
        _history(new, event, StepStatus.COMPENSATED)
    elif kind == RECORD_MATCHED:
        match = data["match"]
        new["matches"][match["id"]] = copy.deepcopy(match)
    elif kind == EXCEPTION_RAISED:
        exception = data["exception"]
        new["exceptions"][exception["id"]] = copy.deepcopy(exception)
    elif kind == SAGA_RESUMED:
        new["deferred"] = None
    elif kind == RECONCILIATION_COMPLETED:
        new["status"] = ExecutionStatus.COMPLETED.value
        new["summary"] = copy.deepcopy(data.get("summary"))
        new["completed_at"] = data["completed_at"]
        new["current_step"] = None
    elif kind == RECONCILIATION_FAILED:
        new["status"] = ExecutionStatus.FAILED.value
        new["error"] = copy.deepcopy(data.get("error"))
        new["completed_at"] = data["failed_at"]
        new["current_step"] = None
    elif kind == RECONCILIATION_CANCELLED:
        new["status"] = ExecutionStatus.CANCELLED.value
        new["error"] = {"type": "Cancelled", "message": data.get("reason") or "cancelled"}
        new["completed_at"] = data["cancelled_at"]
        new["current_step"] = None

    new["version"] = event.sequence
    return new


def fold(events: List[EventEnvelope], state: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Fold a list of events from `state` (or the initial state)."""
    current = state if state is not None else initial_state()
    for event in events:
        current = apply_event(current, event)
    return current


def project_execution(state: Dict[str, Any]) -> Execution:
    """Execution view of a saga state."""
    summary = ExecutionSummary(**state["summary"]) if state.get("summary") else None
    error = state.get("error")
    return Execution(
        id=state["saga_id"],
        job_id=state.get("job_id") or state["saga_id"],
        tenant_id=state["tenant_id"],
        status=ExecutionStatus(state["status"]),
        started_at=datetime.fromisoformat(state["started_at"]),
        completed_at=datetime.fromisoformat(state["completed_at"]) if state.get("completed_at") else None,
        error=error.get("message") if isinstance(error, dict) else error,
        summary=summary,
    )


# Event factories


def _event(saga_id: str, event_type: str, data: Dict[str, Any], tenant_id: str, **meta) -> EventEnvelope:
    return create_event(saga_id, AGGREGATE_TYPE, event_type, data, tenant_id, **meta)


def reconciliation_started(
    saga_id: str,
    tenant_id: str,
    saga_type: str,
    steps: List[str],
    input_data: Dict[str, Any],
    started_at: datetime,
    job_id: Optional[str] = None,
    user_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> EventEnvelope:
    return _event(
        saga_id,
        RECONCILIATION_STARTED,
        {
            "saga_type": saga_type,
            "steps": list(steps),
            "input": input_data,
            "job_id": job_id,
            "started_at": started_at.isoformat(),
        },
        tenant_id,
        user_id=user_id,
        correlation_id=correlation_id,
    )


def step_started(saga_id: str, tenant_id: str, step: str, attempt: int = 1, **meta) -> EventEnvelope:
    return _event(saga_id, STEP_STARTED, {"step": step, "attempt": attempt}, tenant_id, **meta)


def step_completed(saga_id: str, tenant_id: str, step: str, output: Optional[Dict[str, Any]] = None, **meta) -> EventEnvelope:
    return _event(saga_id, STEP_COMPLETED, {"step": step, "output": output or {}}, tenant_id, **meta)


def step_failed(
    saga_id: str,
    tenant_id: str,
    step: str,
    error: str,
    error_type: str,
    retryable: bool,
    attempts: int,
    **meta,
) -> EventEnvelope:
    return _event(
        saga_id,
        STEP_FAILED,
        {"step": step, "error": error, "error_type": error_type, "retryable": retryable, "attempts": attempts},
        tenant_id,
        **meta,
    )


def step_deferred(saga_id: str, tenant_id: str, step: str, reason: str = "", **meta) -> EventEnvelope:
    return _event(saga_id, STEP_DEFERRED, {"step": step, "reason": reason}, tenant_id, **meta)


def step_compensated(
    saga_id: str,
    tenant_id: str,
    step: str,
    details: Optional[Dict[str, Any]] = None,
    **meta,
) -> EventEnvelope:
    data = dict(details or {})
    data["step"] = step
    return _event(saga_id, STEP_COMPENSATED, data, tenant_id, **meta)


def record_matched(saga_id: str, tenant_id: str, match: Dict[str, Any], **meta) -> EventEnvelope:
    return _event(saga_id, RECORD_MATCHED, {"match": match}, tenant_id, **meta)


def exception_raised(saga_id: str, tenant_id: str, exception: Dict[str, Any], **meta) -> EventEnvelope:
    return _event(saga_id, EXCEPTION_RAISED, {"exception": exception}, tenant_id, **meta)


def saga_resumed(saga_id: str, tenant_id: str, from_step: Optional[str], **meta) -> EventEnvelope:
    return _event(saga_id, SAGA_RESUMED, {"from_step": from_step}, tenant_id, **meta)


def reconciliation_completed(
    saga_id: str,
    tenant_id: str,
    summary: Dict[str, Any],
    completed_at: datetime,
    **meta,
) -> EventEnvelope:
    return _event(
        saga_id,
        RECONCILIATION_COMPLETED,
        {"summary": summary, "completed_at": completed_at.isoformat()},
        tenant_id,
        **meta,
    )


def reconciliation_failed(
    saga_id: str,
    tenant_id: str,
    error_type: str,
    message: str,
    failed_at: datetime,
    step: Optional[str] = None,
    retryable: bool = False,
    **meta,
) -> EventEnvelope:
    return _event(
        saga_id,
        RECONCILIATION_FAILED,
        {
            "error": {"type": error_type, "message": message},
            "step": step,
            "retryable": retryable,
            "failed_at": failed_at.isoformat(),
        },
        tenant_id,
        **meta,
    )


def reconciliation_cancelled(
    saga_id: str,
    tenant_id: str,
    cancelled_at: datetime,
    reason: Optional[str] = None,
    **meta,
) -> EventEnvelope:
    return _event(
        saga_id,
        RECONCILIATION_CANCELLED,
        {"reason": reason, "cancelled_at": cancelled_at.isoformat()},
        tenant_id,
        **meta,
    )
