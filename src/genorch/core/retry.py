"""Retry with truncated exponential backoff and full jitter.

Every network-facing component wraps its remote calls with
:func:`with_retry` (directly or through :class:`RetryPolicy`).

Classification
--------------
An error's numeric status is read from, in order:

- a ``status`` attribute (``RemoteCallError``, ``ProblemError``)
- ``response.status_code`` on ``httpx.HTTPStatusError``

Client errors (``400 <= status < 500`` other than 429) fail immediately.
Everything else, including errors without a status and
``httpx.TimeoutException``, is retried.

Backoff
-------
After the failure of attempt ``n`` (0-based) the policy sleeps a uniformly
random duration in ``[0, min(base * 2**n, cap))`` milliseconds.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

import httpx

if TYPE_CHECKING:
    from .config import GenOrchConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_DELAY_MS = 30000


def error_status(exc: BaseException) -> int | None:
    """Numeric HTTP-like status carried by *exc*, if any."""
    status = getattr(exc, "status", None)
    if isinstance(status, int):
        return status
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    return None


def is_retryable(exc: BaseException) -> bool:
    """True unless *exc* is a client error other than 429."""
    if isinstance(exc, httpx.TimeoutException):
        return True
    status = error_status(exc)
    if status is not None and 400 <= status < 500 and status != 429:
        return False
    return True


def backoff_delay_ms(attempt: int, base_delay_ms: float, max_delay_ms: float) -> float:
    """Upper bound of the jittered sleep after failed attempt *attempt*."""
    return min(base_delay_ms * 2**attempt, max_delay_ms)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    name: str = "operation",
    *,
    max_attempts: int = 3,
    base_delay_ms: float = 1000,
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    """Call *operation* until it succeeds or the policy gives up.

    Args:
        operation: Zero-argument coroutine function to call.
        name: Operation name used in log lines and in the note attached to
            the final error.
        max_attempts: Total attempts, including the first.
        base_delay_ms: Backoff base.
        max_delay_ms: Backoff cap.
        sleep: Awaitable sleep taking seconds (injected by tests).
        rng: Source of uniform floats in ``[0, 1)``.

    Returns:
        Whatever *operation* returns.

    Raises:
        Exception: The first non-retryable error, or the last error once
            attempts are exhausted (annotated with the operation name).
    """
    max_attempts = max(1, max_attempts)
    for attempt in range(max_attempts):
        try:
            return await operation()
        except Exception as exc:
            if not is_retryable(exc):
                logger.debug("Non-retryable error op=%s status=%s", name, error_status(exc))
                raise
            if attempt + 1 >= max_attempts:
                exc.add_note(f"{name} failed after {max_attempts} attempts")
                logger.warning(
                    "Retries exhausted op=%s attempts=%d error=%s", name, max_attempts, exc
                )
                raise
            delay = backoff_delay_ms(attempt, base_delay_ms, max_delay_ms)
            jitter = rng() * delay
            logger.info(
                "Retrying op=%s attempt=%d/%d status=%s jitter_ms=%.0f",
                name,
                attempt + 1,
                max_attempts,
                error_status(exc),
                jitter,
            )
            await sleep(jitter / 1000.0)
    raise AssertionError("unreachable")  # pragma: no cover


@dataclass(frozen=True)
class RetryPolicy:
    """Retry parameters bundled for injection into components."""

    max_attempts: int = 3
    base_delay_ms: float = 1000
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    rng: Callable[[], float] = random.random

    @classmethod
    def from_config(cls, config: GenOrchConfig, **overrides) -> RetryPolicy:
        values = {
            "max_attempts": config.retry_max_attempts,
            "base_delay_ms": config.retry_base_delay_ms,
            "max_delay_ms": config.retry_max_delay_ms,
        }
        values.update(overrides)
        return cls(**values)

    async def run(self, operation: Callable[[], Awaitable[T]], name: str = "operation") -> T:
        return await with_retry(
            operation,
            name,
            max_attempts=self.max_attempts,
            base_delay_ms=self.base_delay_ms,
            max_delay_ms=self.max_delay_ms,
            sleep=self.sleep,
            rng=self.rng,
        )
