"""HistoryStore

统一管理各监控任务产生的短期通知历史，用于：
  - 指纹去重 (fingerprint)
  - 过期裁剪 (retention_ms)
  - 批量新增后一次性保存，减少存储 IO

存储中的值是记录字典组成的 JSON 数组。persist 前会重新读取远端并合并
远端独有且仍未过期的记录，以减轻并发写覆盖（不是严格的并发安全）。
同一个 key 只应由一个任务实例写入。
"""

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from market_alerts.exceptions import StorageError
from market_alerts.storage.kv import KeyValueStorage
from market_alerts.storage.models import HistoryRecord

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=HistoryRecord)
T = TypeVar("T")


def build_fingerprint(fields: Iterable[Any]) -> str:
    return "_".join("" if v is None else str(v) for v in fields)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class FilterNewResult(Generic[T, R]):
    new_inputs: list[T]
    duplicate_inputs: list[T]
    new_records: list[R]


class HistoryStore(Generic[R]):
    def __init__(
        self,
        storage: KeyValueStorage,
        key: str,
        record_type: type[R],
        retention_ms: int,
        fingerprint: Callable[[R], str],
        now: Callable[[], int] = now_ms,
    ):
        self.storage = storage
        self.key = key
        self.record_type = record_type
        self.retention_ms = retention_ms
        self.fingerprint = fingerprint
        self.now = now
        self._records: dict[str, R] = {}
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    def __len__(self) -> int:
        return len(self._records)

    def _safe_fingerprint(self, record: R) -> str | None:
        try:
            return self.fingerprint(record)
        except Exception as e:
            logger.warning(f"[{self.key}] fingerprint failed for {record!r}: {e}")
            return None

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            raise RuntimeError(f"HistoryStore {self.key} not loaded. Call load() first.")

    def _decode(self, raw: Any) -> R | None:
        if not isinstance(raw, dict):
            return None
        try:
            record = self.record_type.from_dict(raw)
        except TypeError:
            return None
        if not isinstance(record.notified_at, int | float):
            return None
        return record

    async def _read_remote(self) -> list[R]:
        try:
            raw = await self.storage.get_item(self.key)
        except StorageError as e:
            logger.warning(f"[{self.key}] read failed, treating as empty: {e}")
            return []
        if not isinstance(raw, list):
            if raw is not None:
                logger.warning(f"[{self.key}] unexpected stored value {type(raw).__name__}, ignored")
            return []
        return [r for r in (self._decode(item) for item in raw) if r is not None]

    async def load(self) -> None:
        """懒加载（幂等），加载后立即裁剪过期记录"""
        if self._loaded:
            return
        self._records = {}
        for record in await self._read_remote():
            fp = self._safe_fingerprint(record)
            if fp is not None:
                self._records[fp] = record
        self._loaded = True
        self.prune()
        logger.debug(f"[{self.key}] loaded {len(self._records)} records")

    def get_all(self) -> list[R]:
        self._ensure_loaded()
        return list(self._records.values())

    def has(self, record: R) -> bool:
        self._ensure_loaded()
        fp = self._safe_fingerprint(record)
        return fp is not None and fp in self._records

    def add_records(self, records: Iterable[R]) -> int:
        """只写内存；同指纹后写覆盖"""
        self._ensure_loaded()
        added = 0
        for record in records:
            fp = self._safe_fingerprint(record)
            if fp is None:
                continue
            self._records[fp] = record
            added += 1
        return added

    def discard(self, records: Iterable[R]) -> int:
        self._ensure_loaded()
        removed = 0
        for record in records:
            fp = self._safe_fingerprint(record)
            if fp is not None and self._records.get(fp) is record:
                del self._records[fp]
                removed += 1
        return removed

    async def filter_new(self, inputs: Iterable[T], to_record: Callable[[T], R]) -> FilterNewResult[T, R]:
        """Split ``inputs`` into new and already-recorded items.

        New records are registered in memory right away, so two inputs of the
        same batch with equal fingerprints keep only the first. An input whose
        fingerprint cannot be computed is always new and never registered.
        """
        await self.load()
        result: FilterNewResult[T, R] = FilterNewResult([], [], [])
        for item in inputs:
            record = to_record(item)
            fp = self._safe_fingerprint(record)
            if fp is None:
                result.new_inputs.append(item)
                result.new_records.append(record)
                continue
            if fp in self._records:
                result.duplicate_inputs.append(item)
            else:
                self._records[fp] = record
                result.new_inputs.append(item)
                result.new_records.append(record)
        logger.debug(
            f"[{self.key}] filter_new new={len(result.new_records)} dup={len(result.duplicate_inputs)}"
        )
        return result

    def _is_live(self, record: R, cutoff: int) -> bool:
        return bool(record.notified_at) and record.notified_at > cutoff

    def prune(self) -> int:
        self._ensure_loaded()
        cutoff = self.now() - self.retention_ms
        expired = [fp for fp, r in self._records.items() if not self._is_live(r, cutoff)]
        for fp in expired:
            del self._records[fp]
        if expired:
            logger.debug(f"[{self.key}] pruned {len(expired)}, remain {len(self._records)}")
        return len(expired)

    async def persist(self) -> int:
        """裁剪、合并远端、整体写回；写入失败抛出 StorageError"""
        await self.load()
        self.prune()

        cutoff = self.now() - self.retention_ms
        merged = 0
        for record in await self._read_remote():
            fp = self._safe_fingerprint(record)
            if fp is None or fp in self._records:
                continue
            if self._is_live(record, cutoff):
                self._records[fp] = record
                merged += 1
        if merged:
            logger.info(f"[{self.key}] merged {merged} remote records")

        await self.storage.set_item(self.key, [r.to_dict() for r in self._records.values()])
        logger.debug(f"[{self.key}] persisted {len(self._records)} records")
        return len(self._records)

    async def clear_all(self) -> None:
        await self.load()
        self._records.clear()
        await self.storage.set_item(self.key, [])
