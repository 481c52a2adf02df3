"""Bounded worker pool and timeout helper for per-sheet fan-out."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

from takeoffcalc.core.cancellation import CancellationToken
from takeoffcalc.errors import JobCancelledError, StageTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class ItemOutcome(Generic[R]):
    index: int
    value: R | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def with_timeout(awaitable: Awaitable[R], seconds: float | None, stage: str, what: str = "call") -> R:
    """Race an awaitable against a timer; losing raises StageTimeoutError."""
    if not seconds or seconds <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise StageTimeoutError(stage, f"{what} timed out after {seconds:g}s") from e


async def run_bounded(
    items: Sequence[T],
    handler: Callable[[T], Awaitable[R]],
    concurrency: int,
    token: CancellationToken,
) -> list[ItemOutcome[R]]:
    """Process items with at most ``concurrency`` in flight.

    Workers share one cursor and claim the next index until none remain.
    The token is checked before each claim and after each item; once it is
    cancelled no new item starts, in-flight items finish, and
    JobCancelledError is raised after every worker has stopped.

    Returns outcomes for every item that was started, ordered by index.
    """
    outcomes: dict[int, ItemOutcome[R]] = {}
    cursor = 0

    async def worker() -> None:
        nonlocal cursor
        while not token.cancelled and cursor < len(items):
            index = cursor
            cursor += 1
            try:
                outcomes[index] = ItemOutcome(index, value=await handler(items[index]))
            except JobCancelledError:
                raise
            except Exception as e:
                outcomes[index] = ItemOutcome(index, error=e)

    workers = max(1, min(concurrency, len(items)))
    results = await asyncio.gather(*(worker() for _ in range(workers)), return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException) and not isinstance(result, JobCancelledError):
            raise result
    token.raise_if_cancelled()
    for result in results:
        if isinstance(result, JobCancelledError):
            raise result
    return [outcomes[i] for i in sorted(outcomes)]
