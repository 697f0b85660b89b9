"""Retry policy and dead letter queue."""

from .dead_letter import DeadLetterEntry, DeadLetterQueue
from .retry import RETRYABLE_STATUS_CODES, collaborator_retry, is_retryable_error

__all__ = [
    "DeadLetterEntry",
    "DeadLetterQueue",
    "RETRYABLE_STATUS_CODES",
    "collaborator_retry",
    "is_retryable_error",
]
