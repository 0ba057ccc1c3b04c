"""
Unit tests for the bounded-concurrency batch runner.
"""
import asyncio

import pytest

from bookgen.batch import run_batch


def test_results_keep_submission_order():
    async def make(i):
        # later tasks finish first
        await asyncio.sleep(0.001 * (5 - i))
        return i * 10

    tasks = [lambda i=i: make(i) for i in range(5)]
    assert asyncio.run(run_batch(tasks, concurrency=3)) == [0, 10, 20, 30, 40]


def test_concurrency_cap_is_respected():
    in_flight = 0
    peak = 0

    async def task():
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.001)
        in_flight -= 1

    asyncio.run(run_batch([task] * 9, concurrency=2))
    assert peak == 2


def test_empty_batch():
    assert asyncio.run(run_batch([], concurrency=3)) == []


def test_first_failure_stops_new_claims():
    started = []

    async def ok(i):
        started.append(i)
        await asyncio.sleep(0.001)
        return i

    async def boom():
        started.append("boom")
        raise RuntimeError("task failed")

    tasks = [boom] + [lambda i=i: ok(i) for i in range(1, 8)]
    with pytest.raises(RuntimeError, match="task failed"):
        asyncio.run(run_batch(tasks, concurrency=1))
    assert started == ["boom"]


def test_in_flight_tasks_finish_before_raise():
    finished = []

    async def slow():
        await asyncio.sleep(0.01)
        finished.append("slow")

    async def boom():
        raise ValueError("bad")

    with pytest.raises(ValueError):
        asyncio.run(run_batch([slow, boom], concurrency=2))
    assert finished == ["slow"]
