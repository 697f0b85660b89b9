"""Saga orchestration."""

from .orchestrator import (
    SagaContext,
    SagaDefinition,
    SagaOrchestrator,
    SagaStep,
    StepResult,
    is_step_error_retryable,
)
from .reconciliation_saga import SAGA_TYPE, ReconciliationSaga, build_input

__all__ = [
    "SagaOrchestrator",
    "SagaDefinition",
    "SagaStep",
    "SagaContext",
    "StepResult",
    "is_step_error_retryable",
    "ReconciliationSaga",
    "SAGA_TYPE",
    "build_input",
]
