"""Retry wrapper for transient LLM failures.

Retries rate limits, 5xx responses and network errors with exponential
backoff plus jitter. Cancellation and the adapter's own deadline are never
retried here: the orchestrator owns the timeout policy.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from codeagent.agent import constants
from codeagent.agent.cancellation import CancellationToken
from codeagent.agent.errors import UserCancelled, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base: float, maximum: float, jitter: float = 0.0) -> float:
    """Exponential delay for the given 1-based attempt, capped at ``maximum``."""
    delay = min(base * (2 ** (attempt - 1)), maximum)
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


async def cancellable_sleep(delay: float, token: CancellationToken | None) -> None:
    if token is None:
        await asyncio.sleep(delay)
        return
    token.raise_if_cancelled()
    try:
        await asyncio.wait_for(token.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise UserCancelled()


async def with_retry(
    call: Callable[[], Awaitable[T]],
    *,
    cancel_token: CancellationToken | None = None,
    max_attempts: int | None = None,
    label: str = "LLM request",
) -> T:
    attempts = max_attempts or constants.LLM_MAX_RETRIES
    for attempt in range(1, attempts + 1):
        try:
            return await call()
        except Exception as exc:
            if attempt < attempts and is_retryable(exc):
                delay = backoff_delay(
                    attempt,
                    constants.LLM_RETRY_BASE_DELAY_SECONDS,
                    constants.LLM_RETRY_MAX_DELAY_SECONDS,
                    constants.LLM_RETRY_JITTER_SECONDS,
                )
                logger.warning(
                    "%s attempt %d/%d failed (%s), retrying in %.1fs",
                    label,
                    attempt,
                    attempts,
                    exc,
                    delay,
                )
                await cancellable_sleep(delay, cancel_token)
            else:
                raise
    raise AssertionError("unreachable")
