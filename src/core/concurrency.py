"""Bounded fan-out over asyncio tasks."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def bounded_gather(
    limit: int,
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
) -> list[R]:
    """
    Run ``worker`` over ``items`` with at most ``limit`` calls in flight.

    Results keep input order. The first exception cancels the remaining
    workers and is re-raised.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def run(item: T) -> R:
        async with semaphore:
            return await worker(item)

    tasks = [asyncio.ensure_future(run(item)) for item in items]
    if not tasks:
        return []
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
