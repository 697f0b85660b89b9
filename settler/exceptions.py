"""
Error taxonomy for the reconciliation core.

Unmatched records produced by the matcher are data (ExceptionRecord), not
errors; nothing in this module is raised for them.
"""

from typing import Any, Dict, List, Optional


class SettlerError(Exception):
    """Base error with structured context for operators."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(SettlerError):
    """Malformed input record. Recoverable: the batch continues without it."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Any = None,
        errors: Optional[List[str]] = None,
    ):
        super().__init__(message, {"field": field, "value": value, "errors": errors or []})
        self.field = field
        self.value = value
        self.errors = errors or [message]


class ConfigurationError(SettlerError):
    """Malformed rule set. Fatal: no matching is attempted."""

    def __init__(
        self,
        message: str,
        rule_index: Optional[int] = None,
        field: Optional[str] = None,
        value: Any = None,
    ):
        super().__init__(message, {"rule_index": rule_index, "field": field, "value": value})
        self.rule_index = rule_index
        self.field = field
        self.value = value


class SecurityError(SettlerError):
    """Cross-tenant access attempt. Fatal, nothing is processed."""

    def __init__(
        self,
        message: str,
        tenant_id: Optional[str] = None,
        resource_tenant_id: Optional[str] = None,
    ):
        super().__init__(
            message,
            {"tenant_id": tenant_id, "resource_tenant_id": resource_tenant_id},
        )
        self.tenant_id = tenant_id
        self.resource_tenant_id = resource_tenant_id


class VersionConflictError(SettlerError):
    """Optimistic concurrency failure on event append; re-read and retry."""

    def __init__(self, aggregate_id: str, aggregate_type: str, expected: int, actual: int):
        super().__init__(
            f"Version conflict on {aggregate_type}/{aggregate_id}: expected {expected}, found {actual}",
            {
                "aggregate_id": aggregate_id,
                "aggregate_type": aggregate_type,
                "expected_version": expected,
                "actual_version": actual,
            },
        )
        self.aggregate_id = aggregate_id
        self.aggregate_type = aggregate_type
        self.expected = expected
        self.actual = actual


class RateLookupError(SettlerError):
    """FX rate could not be obtained for a currency pair."""

    def __init__(self, from_currency: str, to_currency: str, reason: str = ""):
        super().__init__(
            f"No FX rate for {from_currency}->{to_currency}" + (f": {reason}" if reason else ""),
            {"from_currency": from_currency, "to_currency": to_currency, "reason": reason},
        )
        self.from_currency = from_currency
        self.to_currency = to_currency


class InvalidTransitionError(SettlerError):
    """State machine transition out of a terminal state."""

    def __init__(self, entity_id: str, status: str, operation: str, entity: str = "execution"):
        super().__init__(
            f"Cannot {operation} {entity} {entity_id} in status '{status}'",
            {f"{entity}_id": entity_id, "status": status, "operation": operation},
        )
        self.entity_id = entity_id
        self.status = status
        self.operation = operation


class SagaError(SettlerError):
    """Base class for saga orchestration errors."""


class SagaNotFoundError(SagaError):
    def __init__(self, saga_id: str):
        super().__init__(f"Saga {saga_id} not found", {"saga_id": saga_id})
        self.saga_id = saga_id


class InvalidSagaTransitionError(InvalidTransitionError, SagaError):
    """Operation not allowed from the saga's current status."""

    def __init__(self, saga_id: str, status: str, operation: str):
        super().__init__(saga_id, status, operation, entity="saga")
        self.saga_id = saga_id


class SagaStepError(SagaError):
    """A saga step failed. `retryable` controls whether the orchestrator retries it."""

    def __init__(self, step: str, message: str, retryable: bool = True):
        super().__init__(message, {"step": step, "retryable": retryable})
        self.step = step
        self.retryable = retryable


class StepDeferred(SagaError):
    """Raised by a step to suspend the saga until it is resumed."""

    def __init__(self, step: str, reason: str = ""):
        super().__init__(f"Step {step} deferred" + (f": {reason}" if reason else ""), {"step": step})
        self.step = step
        self.reason = reason


class DeadLetterEntryNotFoundError(SettlerError):
    def __init__(self, entry_id: str):
        super().__init__(f"Dead letter entry {entry_id} not found", {"entry_id": entry_id})
        self.entry_id = entry_id


class ExceptionRecordNotFoundError(SettlerError):
    def __init__(self, exception_id: str):
        super().__init__(f"Exception {exception_id} not found", {"exception_id": exception_id})
        self.exception_id = exception_id
