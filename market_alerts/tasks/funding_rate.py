# market_alerts/tasks/funding_rate.py
"""资金费率时间窗口监控 (funding:rate)

每次运行为每个标的追加一个资金费率样本，对窗口内样本做分析：
  - |变化量| > 阈值
  - 波动 > volatility_multiplier × 阈值（默认 1.5）
  - 正负翻转且 |变化量| > direction_change_multiplier × 阈值（默认 0.5）

倍数设为 None 即关闭对应条件。
"""

import logging
from dataclasses import dataclass

from market_alerts.aggregator.window import SeriesBook, WindowAnalysis
from market_alerts.alert.dedupe import DedupeOptions, DedupeRecord, DedupeResult, direction_of
from market_alerts.alert.trend import filter_repeated_trend
from market_alerts.client.models import Ticker
from market_alerts.client.queue import RequestQueue
from market_alerts.config import FundingRateMonitor, FundingRateTaskConfig
from market_alerts.exceptions import StorageError, UpstreamError
from market_alerts.notifier.formatter import change_icon, escape, format_datetime, format_number
from market_alerts.storage.history import HistoryStore, build_fingerprint
from market_alerts.storage.models import FundingRateHistoryRecord
from market_alerts.tasks.base import MonitorTask, TaskContext

logger = logging.getLogger(__name__)


@dataclass
class FundingRateSignal:
    monitor: FundingRateMonitor
    ticker: Ticker
    sampled_at: int
    analysis: WindowAnalysis | None = None
    reasons: tuple[str, ...] = ()

    @property
    def symbol(self) -> str:
        return self.monitor.symbol


class FundingRateTask(MonitorTask[FundingRateMonitor, FundingRateSignal, FundingRateHistoryRecord]):
    name = "funding:rate"
    title = "💰 资金费率监控报告"
    monitor_model = FundingRateMonitor
    record_type = FundingRateHistoryRecord
    default_config_key = "telegram:ol"
    default_history_key = "telegram:funding_rate_history"

    settings: FundingRateTaskConfig

    def __init__(
        self, context: TaskContext, settings: FundingRateTaskConfig, queue: RequestQueue | None = None
    ):
        super().__init__(context, settings, queue)
        self.series = SeriesBook(self.settings.window_minutes)
        self._series_loaded = False

    @property
    def series_key(self) -> str:
        return f"{self.history_key}:series"

    @property
    def retention_ms(self) -> int:
        return self.thresholds.retention.short_window_ms

    def fingerprint(self, record: FundingRateHistoryRecord) -> str:
        return build_fingerprint(
            [
                record.symbol,
                record.window_minutes,
                f"{record.funding_rate:.6f}",
                f"{record.change_rate:.6f}",
                record.next_funding_time,
            ]
        )

    def window_for(self, monitor: FundingRateMonitor) -> int:
        return monitor.window_minutes or self.settings.window_minutes

    def threshold_for(self, monitor: FundingRateMonitor) -> float:
        if monitor.threshold is not None:
            return monitor.threshold
        return self.thresholds.funding_rate_window_change

    async def fetch(self, monitor: FundingRateMonitor) -> FundingRateSignal | None:
        if self.context.bybit is None:
            raise UpstreamError("Bybit client not configured")
        ticker = await self.context.bybit.get_ticker(monitor.symbol, monitor.category)
        return FundingRateSignal(monitor=monitor, ticker=ticker, sampled_at=self.context.now())

    async def _load_series(self) -> None:
        if self._series_loaded or not self.settings.persist_series:
            return
        try:
            rows = await self.context.storage.get_item(self.series_key)
        except StorageError as e:
            logger.warning(f"[{self.name}] series read failed, using memory only: {e}")
            rows = None
        restored = self.series.load_list(rows, self.context.now())
        self._series_loaded = True
        logger.info(f"[{self.name}] restored {restored} funding rate samples")

    async def _save_series(self) -> None:
        if not self.settings.persist_series:
            return
        try:
            await self.context.storage.set_item(self.series_key, self.series.to_list())
        except StorageError as e:
            logger.warning(f"[{self.name}] series save failed: {e}")

    async def compute(
        self, items: list[FundingRateSignal], history: HistoryStore[FundingRateHistoryRecord]
    ) -> list[FundingRateSignal]:
        await self._load_series()
        analysed = []
        for item in items:
            item.analysis = self.series.record(
                item.symbol,
                item.ticker.funding_rate,
                item.sampled_at,
                self.window_for(item.monitor),
            )
            if item.analysis is None:
                logger.debug(f"[{self.name}] {item.symbol} 数据不足")
                continue
            item.reasons = self.trigger_reasons(item)
            analysed.append(item)
        self.series.prune_all(self.context.now())
        await self._save_series()
        return analysed

    def trigger_reasons(self, item: FundingRateSignal) -> tuple[str, ...]:
        analysis = item.analysis
        if analysis is None:
            return ()
        threshold = self.threshold_for(item.monitor)
        reasons = []
        if abs(analysis.change_rate) > threshold:
            reasons.append("绝对变化")
        multiplier = item.monitor.volatility_multiplier
        if multiplier is not None and analysis.volatility > threshold * multiplier:
            reasons.append("高波动")
        multiplier = item.monitor.direction_change_multiplier
        if (
            multiplier is not None
            and analysis.is_direction_change
            and abs(analysis.change_rate) > threshold * multiplier
        ):
            reasons.append("正负转换")
        return tuple(reasons)

    def passes_threshold(self, item: FundingRateSignal) -> bool:
        if item.reasons:
            logger.info(f"[{self.name}] {item.symbol} 触发: {', '.join(item.reasons)}")
        return bool(item.reasons)

    def to_record(self, item: FundingRateSignal, notified_at: int) -> FundingRateHistoryRecord:
        change = item.analysis.change_rate if item.analysis else 0.0
        return FundingRateHistoryRecord(
            notified_at=notified_at,
            symbol=item.symbol,
            funding_rate=item.ticker.funding_rate,
            change_rate=change,
            next_funding_time=item.ticker.next_funding_time,
            window_minutes=self.window_for(item.monitor),
            direction=direction_of(change),
        )

    def dedupe_options(self) -> DedupeOptions:
        return DedupeOptions(
            lookback_ms=self.thresholds.duplicate_lookback.funding_rate_ms,
            tolerance_abs=self.settings.duplicate_tolerance,
            direction_sensitive=False,
            same_event=self.same_funding_event,
        )

    def to_dedupe_record(self, item: FundingRateSignal, now: int) -> DedupeRecord:
        change = item.analysis.change_rate if item.analysis else 0.0
        return DedupeRecord(
            item.symbol,
            item.ticker.funding_rate,
            now,
            direction_of(change),
            extra={
                "change_rate": change,
                "next_funding_time": item.ticker.next_funding_time,
                "window_minutes": self.window_for(item.monitor),
            },
        )

    def history_to_dedupe(self, record: FundingRateHistoryRecord) -> DedupeRecord:
        return DedupeRecord(
            record.symbol,
            record.funding_rate,
            record.notified_at,
            record.direction,  # type: ignore[arg-type]
            extra={
                "change_rate": record.change_rate,
                "next_funding_time": record.next_funding_time,
                "window_minutes": record.window_minutes,
            },
        )

    def same_funding_event(self, record: DedupeRecord, previous: DedupeRecord) -> bool:
        """同一窗口、变化量相近且属于同一结算周期"""
        a, b = record.extra, previous.extra
        return (
            a["window_minutes"] == b["window_minutes"]
            and abs(a["change_rate"] - b["change_rate"]) <= self.settings.duplicate_tolerance
            and abs(a["next_funding_time"] - b["next_funding_time"]) <= self.settings.funding_time_tolerance_ms
        )

    def filter_near_duplicates(
        self, candidates: list[FundingRateSignal], previous: list[FundingRateHistoryRecord], now: int
    ) -> DedupeResult[FundingRateSignal]:
        result = super().filter_near_duplicates(candidates, previous, now)
        if not self.settings.trend_filter or not result.fresh:
            return result

        def trend_record(item: FundingRateSignal) -> DedupeRecord:
            change = item.analysis.change_rate if item.analysis else 0.0
            return DedupeRecord(item.symbol, change, now, direction_of(change))

        trend = filter_repeated_trend(
            result.fresh,
            trend_record,
            [
                DedupeRecord(r.symbol, r.change_rate, r.notified_at, r.direction)  # type: ignore[arg-type]
                for r in previous
            ],
            lookback_ms=self.settings.trend_lookback_ms,
            growth_factor=self.settings.trend_growth_factor,
            now=now,
        )
        for item in trend.duplicates:
            logger.info(f"[{self.name}] {item.symbol} 重复趋势已过滤")
        return DedupeResult(fresh=trend.fresh, duplicates=result.duplicates + trend.duplicates)

    def format_entry(self, item: FundingRateSignal) -> str:
        a = item.analysis
        if a is None:
            return ""
        rate_percent = item.ticker.funding_rate * 100
        lines = [
            f"{change_icon(a.change_rate)} <b>{escape(item.monitor.label)}</b> {'🔴' if rate_percent > 0 else '🟢'}",
            f"   当前费率: {rate_percent:.4f}%",
            f"   {a.window_minutes}分钟前: {a.oldest_value * 100:.4f}%",
            f"   变化: {a.change_rate * 100:+.4f}%",
        ]
        if a.is_direction_change:
            lines.append(f"   ⚠️ 正负转换 ({'正→负' if a.oldest_value >= 0 else '负→正'})")
        lines += [
            f"   波动性: {a.volatility * 100:.4f}%",
            f"   最高/最低: {a.max_value * 100:.4f}% / {a.min_value * 100:.4f}%",
            f"   数据点: {a.record_count}个",
            f"   下次结算: {format_datetime(item.ticker.next_funding_time)}",
            f"   价格: ${format_number(item.ticker.last_price)}",
        ]
        return "\n".join(lines)
