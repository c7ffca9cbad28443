# market_alerts/tasks/base.py
"""监控任务编排

一次运行的流水线：
    load monitors → fetch (经 RequestQueue) → compute → threshold
    → fingerprint 去重 (HistoryStore) → 容差去重 → notify → persist

每次运行产出一个 TaskResult，不持久化，只供调度器 /status 与日志使用。
"""

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from market_alerts.alert.dedupe import DedupeOptions, DedupeRecord, DedupeResult, filter_duplicates
from market_alerts.client.binance import BinanceClient
from market_alerts.client.bybit import BybitClient
from market_alerts.client.coingecko import CoinGeckoClient
from market_alerts.client.queue import RequestQueue
from market_alerts.config import MonitorConfig, TaskConfig, ThresholdsConfig, parse_monitors
from market_alerts.exceptions import FetchError, StorageError
from market_alerts.notifier.formatter import (
    TELEGRAM_LIMIT,
    build_header,
    format_task_failure,
    pack_entries,
)
from market_alerts.notifier.telegram import Notifier
from market_alerts.storage.history import HistoryStore, now_ms
from market_alerts.storage.kv import KeyValueStorage
from market_alerts.storage.models import HistoryRecord

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=MonitorConfig)
T = TypeVar("T")
R = TypeVar("R", bound=HistoryRecord)


class RunStatus(str, Enum):
    OK = "ok"
    PARTIAL = "partial"
    ERROR = "error"


@dataclass
class RunCounts:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    filtered: int = 0
    new_alerts: int = 0
    duplicates: int = 0
    history_records: int = 0


@dataclass
class SymbolFailure:
    symbol: str
    error: str


@dataclass
class TaskResult:
    task: str
    result: RunStatus
    execution_time_ms: int
    counts: RunCounts = field(default_factory=RunCounts)
    message: str | None = None
    error: str | None = None
    failures: list[SymbolFailure] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["result"] = self.result.value
        return data


@dataclass
class FetchOutcome(Generic[T]):
    """单个标的的抓取结果：item 与 error 二选一"""

    symbol: str
    item: T | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class TaskContext:
    """任务共享的协作者，由 MarketAlertService 创建一次后注入"""

    storage: KeyValueStorage
    notifier: Notifier
    bybit: BybitClient | None = None
    binance: BinanceClient | None = None
    coingecko: CoinGeckoClient | None = None
    thresholds: ThresholdsConfig = field(default_factory=ThresholdsConfig)
    message_limit: int = TELEGRAM_LIMIT
    now: Callable[[], int] = now_ms


class MonitorTask(ABC, Generic[M, T, R]):
    name: str = ""
    title: str = ""
    monitor_model: type[M]
    record_type: type[R]
    default_config_key: str = ""
    default_history_key: str = ""

    def __init__(self, context: TaskContext, settings: TaskConfig, queue: RequestQueue | None = None):
        self.context = context
        self.settings = settings
        self.queue = queue or RequestQueue(
            min_delay_ms=settings.queue.min_delay_ms,
            max_random_delay_ms=settings.queue.max_random_delay_ms,
        )

    @property
    def config_key(self) -> str:
        return self.settings.config_key or self.default_config_key

    @property
    def history_key(self) -> str:
        return self.settings.history_key or self.default_history_key

    @property
    def thresholds(self) -> ThresholdsConfig:
        return self.context.thresholds

    # ---- hooks ----

    @property
    @abstractmethod
    def retention_ms(self) -> int: ...

    @abstractmethod
    def fingerprint(self, record: R) -> str: ...

    @abstractmethod
    async def fetch(self, monitor: M) -> T | None:
        """返回 None 表示数据不足（不是错误），该标的本轮跳过"""

    @abstractmethod
    def passes_threshold(self, item: T) -> bool: ...

    @abstractmethod
    def to_record(self, item: T, notified_at: int) -> R: ...

    @abstractmethod
    def format_entry(self, item: T) -> str: ...

    async def compute(self, items: list[T], history: HistoryStore[R]) -> list[T]:
        return items

    def dedupe_options(self) -> DedupeOptions | None:
        return None

    def to_dedupe_record(self, item: T, now: int) -> DedupeRecord:
        raise NotImplementedError

    def history_to_dedupe(self, record: R) -> DedupeRecord:
        raise NotImplementedError

    def filter_near_duplicates(self, candidates: list[T], previous: list[R], now: int) -> DedupeResult[T]:
        options = self.dedupe_options()
        if options is None:
            return DedupeResult(fresh=list(candidates), duplicates=[])
        return filter_duplicates(
            candidates,
            lambda item: self.to_dedupe_record(item, now),
            [self.history_to_dedupe(r) for r in previous],
            options,
            now=now,
        )

    def is_baseline_run(self, previous: list[R]) -> bool:
        return False

    def baseline_records(self, items: list[T], now: int) -> list[R]:
        """基线运行时额外记录（不通知）的记录"""
        return []

    def format_entries(self, items: list[T]) -> list[tuple[str, list[T]]]:
        """(文本, 该文本承载的条目) 列表；不对应条目的说明行传空列表"""
        return [(self.format_entry(item), [item]) for item in items]

    def format_parts(self, items: list[T]) -> list[tuple[str, list[T]]]:
        return pack_entries(build_header(self.title), self.format_entries(items), self.context.message_limit)

    # ---- pipeline ----

    def create_history(self) -> HistoryStore[R]:
        return HistoryStore(
            self.context.storage,
            self.history_key,
            self.record_type,
            self.retention_ms,
            self.fingerprint,
            now=self.context.now,
        )

    async def seed_monitors(self) -> None:
        """配置文件里给出 monitors 时写入存储，供运行时读取"""
        if self.settings.monitors is None:
            return
        await self.context.storage.set_item(self.config_key, self.settings.monitors)
        logger.info(f"[{self.name}] seeded {len(self.settings.monitors)} monitors into {self.config_key}")

    async def load_monitors(self) -> list[M]:
        raw = await self.context.storage.get_item(self.config_key)
        return parse_monitors(raw, self.monitor_model)

    async def _fetch_one(self, monitor: M) -> FetchOutcome[T]:
        try:
            item = await self.queue.add(lambda: self.fetch(monitor))
        except FetchError as e:
            logger.warning(f"[{self.name}] {monitor.symbol} fetch failed: {e}")
            return FetchOutcome(monitor.symbol, error=str(e))
        except Exception as e:
            logger.error(f"[{self.name}] {monitor.symbol} unexpected error: {e}")
            return FetchOutcome(monitor.symbol, error=str(e) or type(e).__name__)
        return FetchOutcome(monitor.symbol, item=item)

    async def collect(self, monitors: Sequence[M]) -> list[FetchOutcome[T]]:
        # 每个标的排队串行抓取，错误只记录到对应结果
        return [await self._fetch_one(monitor) for monitor in monitors]

    async def _notify(self, parts: list[tuple[str, list[T]]], delivered: list[str], attempted: list[T]) -> None:
        """按顺序发送分段

        发送前把该段的条目追加到 attempted，送达后把该段追加到 delivered。
        """
        chat_id = self.context.notifier.channel_for(self.name)
        for text, items in parts:
            attempted.extend(items)
            await self.context.notifier.send_message(text, chat_id)
            delivered.append(text)

    async def _notify_failure(self, error: str) -> None:
        try:
            await self.context.notifier.send_message(
                format_task_failure(self.title, error), self.context.notifier.channel_for(self.name)
            )
        except Exception as e:
            logger.error(f"[{self.name}] failure notice not sent: {e}")

    async def _persist(self, history: HistoryStore[R], counts: RunCounts) -> str | None:
        try:
            counts.history_records = await history.persist()
        except StorageError as e:
            logger.error(f"[{self.name}] history persist failed: {e}")
            counts.history_records = len(history)
            return f"history not saved: {e}"
        return None

    def _result(
        self,
        started: float,
        status: RunStatus,
        counts: RunCounts,
        message: str | None = None,
        error: str | None = None,
        failures: list[SymbolFailure] | None = None,
    ) -> TaskResult:
        return TaskResult(
            task=self.name,
            result=status,
            execution_time_ms=int((time.monotonic() - started) * 1000),
            counts=counts,
            message=message,
            error=error,
            failures=failures or [],
        )

    async def run(self) -> TaskResult:
        started = time.monotonic()
        counts = RunCounts()
        failures: list[SymbolFailure] = []
        try:
            monitors = await self.load_monitors()
            if not monitors:
                logger.info(f"[{self.name}] no monitors configured under {self.config_key}")
                return self._result(started, RunStatus.OK, counts, message="nothing to monitor")

            counts.processed = len(monitors)
            outcomes = await self.collect(monitors)
            items: list[T] = []
            for outcome in outcomes:
                if outcome.ok:
                    counts.successful += 1
                    if outcome.item is not None:
                        items.append(outcome.item)
                else:
                    counts.failed += 1
                    failures.append(SymbolFailure(outcome.symbol, outcome.error or "unknown error"))

            if counts.successful == 0:
                return self._result(
                    started,
                    RunStatus.ERROR,
                    counts,
                    error="all fetches failed",
                    failures=failures,
                )
            status = RunStatus.PARTIAL if counts.failed else RunStatus.OK

            history = self.create_history()
            computed = await self.compute(items, history)
            candidates = [item for item in computed if self.passes_threshold(item)]
            counts.filtered = len(candidates)
            if not candidates:
                logger.info(f"[{self.name}] no signal above threshold")
                return self._result(started, status, counts, message="no candidates", failures=failures)

            await history.load()
            previous = history.get_all()
            now = self.context.now()
            checked = await history.filter_new(candidates, lambda item: self.to_record(item, now))
            records = dict(zip(map(id, checked.new_inputs), checked.new_records, strict=True))
            counts.duplicates = len(checked.duplicate_inputs)

            if self.is_baseline_run(previous):
                history.add_records(self.baseline_records(computed, now))
                note = await self._persist(history, counts)
                logger.info(f"[{self.name}] baseline recorded ({len(checked.new_records)} records)")
                return self._result(
                    started, status, counts, message=note or "baseline recorded", failures=failures
                )

            near = self.filter_near_duplicates(checked.new_inputs, previous, now)
            if near.duplicates:
                history.discard(records[id(item)] for item in near.duplicates)
                counts.duplicates += len(near.duplicates)
            fresh = near.fresh
            counts.new_alerts = len(fresh)

            if not fresh:
                logger.info(f"[{self.name}] all {len(candidates)} candidates were duplicates")
                counts.history_records = len(history)
                return self._result(started, status, counts, message="all duplicates", failures=failures)

            parts = self.format_parts(fresh)
            delivered: list[str] = []
            attempted: list[T] = []
            try:
                await self._notify(parts, delivered, attempted)
            except Exception as e:
                logger.error(f"[{self.name}] notify failed after {len(delivered)}/{len(parts)} parts: {e}")
                if delivered:
                    # 从未尝试发送的条目不记入历史，下一轮重新发送
                    sent_ids = {id(item) for item in attempted}
                    history.discard(records[id(item)] for item in fresh if id(item) not in sent_ids)
                    await self._persist(history, counts)
                await self._notify_failure(str(e))
                return self._result(
                    started,
                    RunStatus.ERROR,
                    counts,
                    error=f"notify failed: {e}",
                    failures=failures,
                )

            note = await self._persist(history, counts)
            logger.info(f"[{self.name}] sent {counts.new_alerts} alerts")
            return self._result(
                started,
                status,
                counts,
                message=note or f"sent {counts.new_alerts} alerts",
                failures=failures,
            )
        except Exception as e:
            logger.exception(f"[{self.name}] run failed")
            await self._notify_failure(str(e))
            return self._result(started, RunStatus.ERROR, counts, error=str(e), failures=failures)

