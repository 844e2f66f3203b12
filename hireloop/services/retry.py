"""
Retry with exponential backoff for outbound calls.

Every collaborator call (Linear, Polar, Resend, LLM, document downloads)
goes through `with_retry`. Only errors classified as retryable are retried;
validation errors and 4xx responses fail on the first attempt.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from hireloop.services.errors import CollaboratorError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_DELAY_MS = 10_000


def is_retryable_error(exc: BaseException) -> bool:
    """Classify an exception as transient (retry) or fatal (give up)."""
    if isinstance(exc, CollaboratorError):
        return exc.retryable
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status == 429
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError)):
        return True
    return False


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay_ms: int = 1000,
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    label: str = "",
) -> T:
    """
    Await `fn()` until it succeeds or attempts run out.

    The delay doubles after every failed attempt, capped at MAX_DELAY_MS.
    The last exception is re-raised unchanged.
    """
    should_retry = should_retry or is_retryable_error
    name = label or getattr(fn, "__qualname__", "call")
    delay_ms = initial_delay_ms

    for attempt in range(1, max_attempts + 1):
        try:
            return await fn()
        except Exception as exc:
            if attempt == max_attempts or not should_retry(exc):
                if attempt > 1:
                    logger.error("%s failed after %d attempts: %s", name, attempt, exc)
                raise
            logger.warning(
                "%s attempt %d/%d failed (%s), retrying in %dms",
                name,
                attempt,
                max_attempts,
                exc,
                delay_ms,
            )
            await asyncio.sleep(delay_ms / 1000)
            delay_ms = min(delay_ms * 2, MAX_DELAY_MS)

    raise RuntimeError("unreachable")  # pragma: no cover


def raise_for_status(service: str, response: Any) -> None:
    """Turn a non-2xx httpx response into a CollaboratorError."""
    if response.status_code >= 400:
        raise CollaboratorError(
            service,
            detail=response.text[:500],
            status_code=response.status_code,
        )
