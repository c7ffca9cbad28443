# market_alerts/storage/kv.py
import json
import time
from typing import Any, Protocol

import aiosqlite

from market_alerts.exceptions import StorageError


class KeyValueStorage(Protocol):
    async def get_item(self, key: str) -> Any: ...

    async def set_item(self, key: str, value: Any) -> None: ...


class SQLiteKeyValueStore:
    """JSON 值的键值存储，落在 SQLite 单表中"""

    def __init__(self, path: str):
        self.path = path
        self.conn: aiosqlite.Connection | None = None

    async def init(self) -> None:
        self.conn = await aiosqlite.connect(self.path)
        await self._create_tables()

    async def close(self) -> None:
        if self.conn:
            await self.conn.close()
            self.conn = None

    async def _create_tables(self) -> None:
        assert self.conn is not None
        await self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            );
        """)
        await self.conn.commit()

    async def get_item(self, key: str) -> Any:
        if self.conn is None:
            raise StorageError("Store not initialized. Call init() first.")
        try:
            cursor = await self.conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
            row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to read {key}: {e}") from e
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupted value for {key}: {e}") from e

    async def set_item(self, key: str, value: Any) -> None:
        if self.conn is None:
            raise StorageError("Store not initialized. Call init() first.")
        try:
            await self.conn.execute(
                """INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                                  updated_at = excluded.updated_at""",
                (key, json.dumps(value, ensure_ascii=False), int(time.time() * 1000)),
            )
            await self.conn.commit()
        except (aiosqlite.Error, TypeError, ValueError) as e:
            raise StorageError(f"Failed to write {key}: {e}") from e


class MemoryKeyValueStore:
    """进程内存储，值经 JSON 往返以保持与 SQLite 相同的语义"""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def init(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def get_item(self, key: str) -> Any:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    async def set_item(self, key: str, value: Any) -> None:
        try:
            self._data[key] = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Failed to write {key}: {e}") from e
