"""
BookGen V1.0 - Parallel Batch Runner
====================================
Runs a list of zero-argument coroutine factories with at most ``concurrency``
in flight. Results land in pre-sized slots at each task's submission index.
The first failure stops new claims; in-flight tasks finish, then it is raised.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Sequence, TypeVar

T = TypeVar("T")


async def run_batch(
    tasks: Sequence[Callable[[], Awaitable[T]]],
    concurrency: int,
) -> list[T]:
    total = len(tasks)
    results: list = [None] * total
    if total == 0:
        return results

    next_index = 0
    failures: list[BaseException] = []

    async def worker():
        nonlocal next_index
        while not failures:
            if next_index >= total:
                return
            index = next_index
            next_index += 1
            try:
                results[index] = await tasks[index]()
            except Exception as exc:
                failures.append(exc)
                return
            # yield so sibling workers interleave even when tasks don't suspend
            await asyncio.sleep(0)

    workers = max(1, min(concurrency, total))
    await asyncio.gather(*(worker() for _ in range(workers)))

    if failures:
        raise failures[0]
    return results
