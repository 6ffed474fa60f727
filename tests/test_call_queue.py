"""
Signer Call Queue Tests
Ordering, retry, capacity and timeout behaviour of the single-flight queue.
"""

from __future__ import annotations

import asyncio

import pytest

from ballot.call_queue import SignerCallQueue
from ballot.errors import QueueFullError, SignerError


def fast_queue(**kwargs) -> SignerCallQueue:
    params = {"retry_delay": 0, "pacing_delay": 0, "call_timeout": 1.0}
    params.update(kwargs)
    return SignerCallQueue(**params)


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------

async def test_calls_run_one_at_a_time_in_fifo_order():
    queue = fast_queue()
    running = 0
    max_running = 0
    order: list[int] = []

    def make_call(n: int):
        async def call():
            nonlocal running, max_running
            running += 1
            max_running = max(max_running, running)
            await asyncio.sleep(0.01)
            order.append(n)
            running -= 1
            return n
        return call

    results = await asyncio.gather(*(queue.enqueue(make_call(n)) for n in range(5)))

    assert results == [0, 1, 2, 3, 4]
    assert order == [0, 1, 2, 3, 4]
    assert max_running == 1
    assert queue.status().queue_length == 0
    assert queue.status().is_processing is False


async def test_status_reports_processing_while_draining():
    queue = fast_queue()
    release = asyncio.Event()

    async def slow():
        await release.wait()
        return "done"

    first = asyncio.create_task(queue.enqueue(slow))
    second = asyncio.create_task(queue.enqueue(slow))
    await asyncio.sleep(0.01)

    status = queue.status()
    assert status.is_processing is True
    assert status.queue_length == 1

    release.set()
    assert await first == "done"
    assert await second == "done"


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

async def test_transient_failure_is_retried_twice_then_fails():
    queue = fast_queue()
    attempts = 0

    async def flaky():
        nonlocal attempts
        attempts += 1
        raise SignerError("Signer connection error: reset by peer")

    with pytest.raises(SignerError):
        await queue.enqueue(flaky)
    assert attempts == 3


async def test_transient_failure_recovers_on_retry():
    queue = fast_queue()
    attempts = 0

    async def flaky():
        nonlocal attempts
        attempts += 1
        if attempts < 2:
            raise SignerError("invalid nonce")
        return "ok"

    assert await queue.enqueue(flaky) == "ok"
    assert attempts == 2


async def test_permanent_failure_is_not_retried():
    queue = fast_queue()
    attempts = 0

    async def broken():
        nonlocal attempts
        attempts += 1
        raise SignerError("Smart contract panicked: already voted")

    with pytest.raises(SignerError, match="already voted"):
        await queue.enqueue(broken)
    assert attempts == 1


async def test_retried_call_keeps_its_place_at_the_head():
    queue = fast_queue()
    order: list[str] = []
    failed = False

    async def first():
        nonlocal failed
        order.append("first")
        if not failed:
            failed = True
            raise SignerError("network unreachable")
        return "first"

    async def second():
        order.append("second")
        return "second"

    await asyncio.gather(queue.enqueue(first), queue.enqueue(second))
    assert order == ["first", "first", "second"]


# ---------------------------------------------------------------------------
# Capacity and timeout
# ---------------------------------------------------------------------------

async def test_enqueue_fails_fast_when_full():
    queue = fast_queue(max_size=1)
    release = asyncio.Event()

    async def blocker():
        await release.wait()

    running = asyncio.create_task(queue.enqueue(blocker))
    await asyncio.sleep(0.01)  # first item leaves the queue and starts running
    waiting = asyncio.create_task(queue.enqueue(blocker))
    await asyncio.sleep(0)

    with pytest.raises(QueueFullError):
        await queue.enqueue(blocker)

    release.set()
    await asyncio.gather(running, waiting)


async def test_timed_out_call_fails_and_late_result_is_discarded():
    queue = fast_queue(call_timeout=0.05, max_retries=0)
    finished = asyncio.Event()

    async def slow():
        await asyncio.sleep(0.1)
        finished.set()
        return "late"

    with pytest.raises(TimeoutError, match="timeout"):
        await queue.enqueue(slow)

    async def quick():
        return "next"

    # the queue keeps serving and the late value never leaks into this caller
    assert await queue.enqueue(quick) == "next"
    await asyncio.wait_for(finished.wait(), 1.0)


async def test_shutdown_fails_pending_calls():
    queue = fast_queue()
    release = asyncio.Event()

    async def blocker():
        await release.wait()

    first = asyncio.create_task(queue.enqueue(blocker))
    second = asyncio.create_task(queue.enqueue(blocker))
    await asyncio.sleep(0.01)

    await queue.shutdown()

    for task in (first, second):
        with pytest.raises(RuntimeError, match="shut down"):
            await task
    assert queue.status().queue_length == 0
    release.set()


async def test_three_calls_complete_in_order_when_middle_one_is_flaky():
    queue = fast_queue()
    log: list[str] = []
    middle_attempts = 0

    async def steady(name: str):
        log.append(name)
        return name

    async def flaky():
        nonlocal middle_attempts
        middle_attempts += 1
        log.append("second")
        if middle_attempts < 3:
            raise SignerError("network timeout")
        return "second"

    results = await asyncio.gather(
        queue.enqueue(lambda: steady("first")),
        queue.enqueue(flaky),
        queue.enqueue(lambda: steady("third")),
    )

    assert results == ["first", "second", "third"]
    assert middle_attempts == 3
    assert log == ["first", "second", "second", "second", "third"]
