"""
Retry policy for calls to external collaborators (FX rates, provider APIs).
"""

import asyncio
from typing import Optional

import httpx
import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from ..config import get_settings
from ..exceptions import ConfigurationError, SecurityError, ValidationError

logger = structlog.get_logger()

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def is_retryable_error(error: BaseException) -> bool:
    """Transient failures only: timeouts, dropped connections, throttling, 5xx."""
    if isinstance(error, (ValidationError, ConfigurationError, SecurityError)):
        return False
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    return False


def log_before_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Retrying collaborator call",
        call=getattr(retry_state.fn, "__qualname__", str(retry_state.fn)),
        attempt=retry_state.attempt_number,
        error=str(error) if error else None,
    )


def collaborator_retry(
    max_attempts: Optional[int] = None,
    initial_wait: float = 0.5,
    max_wait: float = 10.0,
):
    """
    Decorator: exponential backoff with jitter on transient errors.

    Works on both sync and async callables. The last error is re-raised
    once attempts are exhausted.
    """
    attempts = max_attempts or get_settings().fx_max_retries
    return retry(
        retry=retry_if_exception(is_retryable_error),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential_jitter(initial=initial_wait, max=max_wait),
        before_sleep=log_before_retry,
        reraise=True,
    )
