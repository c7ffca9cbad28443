# tests/client/test_queue.py
import asyncio
import time

import pytest

from market_alerts.client.queue import RequestQueue


async def test_tasks_run_in_fifo_order():
    queue = RequestQueue(min_delay_ms=0, max_random_delay_ms=0)
    order: list[int] = []

    async def job(n: int) -> int:
        order.append(n)
        return n

    results = await asyncio.gather(*(queue.add(lambda n=n: job(n)) for n in range(5)))

    assert results == [0, 1, 2, 3, 4]
    assert order == [0, 1, 2, 3, 4]


async def test_tasks_never_overlap():
    queue = RequestQueue(min_delay_ms=0, max_random_delay_ms=0)
    running = 0
    peak = 0

    async def job() -> None:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1

    await asyncio.gather(*(queue.add(job) for _ in range(4)))

    assert peak == 1


async def test_spacing_between_tasks():
    queue = RequestQueue(min_delay_ms=50, max_random_delay_ms=20)
    finished: list[float] = []
    started: list[float] = []

    async def job() -> None:
        started.append(time.monotonic())
        finished.append(time.monotonic())

    await asyncio.gather(*(queue.add(job) for _ in range(3)))

    for prev_end, next_start in zip(finished, started[1:]):
        assert (next_start - prev_end) * 1000 >= 45


async def test_failure_only_rejects_its_own_task():
    queue = RequestQueue(min_delay_ms=0, max_random_delay_ms=0)

    async def ok() -> str:
        return "ok"

    async def boom() -> str:
        raise ValueError("boom")

    results = await asyncio.gather(
        queue.add(ok), queue.add(boom), queue.add(ok), return_exceptions=True
    )

    assert results[0] == "ok"
    assert isinstance(results[1], ValueError)
    assert results[2] == "ok"


async def test_queue_restarts_after_draining():
    queue = RequestQueue(min_delay_ms=0, max_random_delay_ms=0)

    async def job() -> int:
        return 1

    assert await queue.add(job) == 1
    await asyncio.sleep(0)
    assert await queue.add(job) == 1
    assert len(queue) == 0


def test_next_delay_range():
    queue = RequestQueue(min_delay_ms=1000, max_random_delay_ms=5000)
    for _ in range(50):
        assert 1000 <= queue.next_delay_ms() <= 6000


@pytest.mark.parametrize("min_delay,max_random", [(0, 0), (10, 0)])
def test_next_delay_without_random_part(min_delay, max_random):
    queue = RequestQueue(min_delay_ms=min_delay, max_random_delay_ms=max_random)
    assert queue.next_delay_ms() == min_delay
