"""Bounded worker pool and cooperative cancellation.

All concurrent loops in genorch (reference processing in preflight and the
synchronous render loop) go through :func:`run_bounded`.  The pool keeps a
set of in-flight tasks, suspends on "first one finished" when the set is
full, and drains completely before returning.  Nothing here runs in
parallel: the pool only overlaps I/O latency on the running event loop.

Cancellation is cooperative.  A :class:`CancellationToken` is checked before
each new item starts; work already in flight runs to completion.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class OperationCancelled(Exception):
    """Raised when work is attempted after its token was cancelled."""


class CancellationToken:
    """Flag shared between a caller and the loops it started."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str | None = None) -> None:
        if not self._cancelled:
            logger.info("Cancellation requested reason=%s", reason)
        self._cancelled = True
        self.reason = reason

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled(self.reason or "operation cancelled")


class BoundedRunResult(list):
    """Results of :func:`run_bounded` in input order.

    Items that never started because the token was cancelled hold ``None``;
    their indices are listed in :attr:`not_run`.
    """

    def __init__(self, results: list, not_run: list[int]) -> None:
        super().__init__(results)
        self.not_run = not_run

    @property
    def cancelled(self) -> bool:
        return bool(self.not_run)


async def run_bounded(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    limit: int,
    token: CancellationToken | None = None,
) -> BoundedRunResult:
    """Run *worker* over *items* with at most *limit* in flight.

    Args:
        items: Work items; results come back in the same order.
        worker: Coroutine function applied to each item.
        limit: Maximum concurrent workers (at least 1).
        token: Optional cancellation token checked before each item starts.

    Returns:
        BoundedRunResult with one result per item.

    Raises:
        Exception: The first worker exception.  Remaining in-flight workers
            are cancelled before it propagates.
    """
    limit = max(1, limit)
    results: list = [None] * len(items)
    not_run: list[int] = []
    in_flight: dict[asyncio.Task, int] = {}

    async def _drain(return_when: str) -> None:
        done, _ = await asyncio.wait(in_flight, return_when=return_when)
        for task in done:
            index = in_flight.pop(task)
            # Raises the worker's exception, if any.
            results[index] = task.result()

    try:
        for index, item in enumerate(items):
            if len(in_flight) >= limit:
                await _drain(asyncio.FIRST_COMPLETED)
            if token is not None and token.cancelled:
                not_run.extend(range(index, len(items)))
                logger.info(
                    "Bounded run stopped early started=%d skipped=%d",
                    index,
                    len(not_run),
                )
                break
            in_flight[asyncio.ensure_future(worker(item))] = index
        while in_flight:
            await _drain(asyncio.FIRST_COMPLETED)
    except BaseException:
        for task in in_flight:
            task.cancel()
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)
        raise

    return BoundedRunResult(results, not_run)
