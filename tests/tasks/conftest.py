# tests/tasks/conftest.py
from typing import Any

import pytest

from market_alerts.exceptions import NotifyError, StorageError
from market_alerts.storage.kv import MemoryKeyValueStore

NOW = 1_700_000_000_000


class FakeNotifier:
    """记录发送内容；fail_on 中的调用序号 (从 1 开始) 抛出 NotifyError"""

    def __init__(self, fail_on: tuple[int, ...] = ()):
        self.sent: list[tuple[str | None, str]] = []
        self.fail_on = set(fail_on)
        self.calls = 0

    def channel_for(self, task_name: str) -> str:
        return f"chat:{task_name}"

    async def send_message(self, text: str, chat_id: str | None = None) -> int:
        self.calls += 1
        if self.calls in self.fail_on:
            raise NotifyError("Telegram send failed: boom")
        self.sent.append((chat_id, text))
        return self.calls


class RecordingStore(MemoryKeyValueStore):
    """记录读写的 key；fail_writes 中的 key 写入时抛出 StorageError"""

    def __init__(self, fail_writes: tuple[str, ...] = ()):
        super().__init__()
        self.reads: list[str] = []
        self.writes: list[str] = []
        self.fail_writes = set(fail_writes)

    async def get_item(self, key: str) -> Any:
        self.reads.append(key)
        return await super().get_item(key)

    async def set_item(self, key: str, value: Any) -> None:
        if key in self.fail_writes:
            raise StorageError(f"Failed to write {key}: disk full")
        self.writes.append(key)
        await super().set_item(key, value)


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()
