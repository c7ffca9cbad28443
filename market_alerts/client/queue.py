"""串行请求队列：逐个执行，任务之间插入固定 + 随机延迟，避免触发交易所限频"""

import asyncio
import logging
import random
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestQueue:
    def __init__(self, min_delay_ms: int = 1000, max_random_delay_ms: int = 5000):
        self.min_delay_ms = min_delay_ms
        self.max_random_delay_ms = max_random_delay_ms
        self._pending: deque[tuple[Callable[[], Awaitable[Any]], asyncio.Future[Any]]] = deque()
        self._worker: asyncio.Task[None] | None = None
        self._last_finished: float | None = None

    def __len__(self) -> int:
        return len(self._pending)

    def next_delay_ms(self) -> float:
        return self.min_delay_ms + random.uniform(0, self.max_random_delay_ms)

    async def add(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Queue ``fn`` and wait for its result; its exception is re-raised here only."""
        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._pending.append((fn, future))
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain())
        return await future

    async def _drain(self) -> None:
        while self._pending:
            fn, future = self._pending.popleft()
            if future.cancelled():
                continue

            if self._last_finished is not None:
                elapsed_ms = (time.monotonic() - self._last_finished) * 1000
                wait_ms = self.next_delay_ms() - elapsed_ms
                if wait_ms > 0:
                    await asyncio.sleep(wait_ms / 1000)

            try:
                result = await fn()
            except Exception as e:
                if not future.cancelled():
                    future.set_exception(e)
            else:
                if not future.cancelled():
                    future.set_result(result)
            finally:
                self._last_finished = time.monotonic()
