# market_alerts/tasks/market_cap_ratio.py
"""持仓价值 / 市值 (OL/MC) 监控 (ol:mc)

ratio = openInterestValue / marketCap × 100%，变化量相对该标的最近一次通知的 ratio 计算。
任一条件进入候选：
  1) ratio ≥ ratio_threshold_percent（阈值为 0 时不启用）
  2) |ratio 变化| > change_threshold_percent
与上次通知相比变化不超过容差的直接过滤。
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from market_alerts.alert.dedupe import DedupeOptions, DedupeRecord, direction_of
from market_alerts.client.queue import RequestQueue
from market_alerts.config import MarketCapRatioMonitor, MarketCapRatioTaskConfig
from market_alerts.exceptions import FetchError, UpstreamError
from market_alerts.notifier.formatter import escape, format_datetime, format_number, format_signed
from market_alerts.storage.history import HistoryStore, build_fingerprint
from market_alerts.storage.models import RatioHistoryRecord
from market_alerts.tasks.base import FetchOutcome, MonitorTask, TaskContext

logger = logging.getLogger(__name__)


class SignalLevel(str, Enum):
    OVERHEATED = "overheated"
    SURGE_UP = "surge_up"
    SURGE_DOWN = "surge_down"
    ELEVATED = "elevated"
    NEUTRAL = "neutral"


SIGNAL_TEXT = {
    SignalLevel.OVERHEATED: ("🔥", "过热上行", "杠杆集中且继续放大, 警惕挤仓/回撤风险"),
    SignalLevel.SURGE_UP: ("⚡️", "快速放大", "短期资金迅速堆积, 波动风险上升"),
    SignalLevel.SURGE_DOWN: ("💨", "快速去杠杆", "强制/主动减仓, 留意是否进入修复段"),
    SignalLevel.ELEVATED: ("📈", "杠杆升高", "杠杆结构走高, 注意过度堆积迹象"),
    SignalLevel.NEUTRAL: ("➡️", "中性", "暂无显著结构信号"),
}


@dataclass
class MarketCapRatio:
    monitor: MarketCapRatioMonitor
    open_interest_value: float
    market_cap: float
    ratio_percent: float
    timestamp: int
    change_percent: float = 0.0
    previous_ratio: float | None = None

    @property
    def symbol(self) -> str:
        return self.monitor.symbol


def classify_signal(item: MarketCapRatio) -> SignalLevel:
    """优先级：过热 > 快速放大 > 快速去杠杆 > 升高 > 中性"""
    cfg = item.monitor
    ratio, change = item.ratio_percent, item.change_percent
    if ratio >= cfg.ratio_overheated_percent and change >= 0:
        return SignalLevel.OVERHEATED
    if change >= cfg.change_surge_up_percent:
        return SignalLevel.SURGE_UP
    if change <= cfg.change_surge_down_percent:
        return SignalLevel.SURGE_DOWN
    if ratio >= cfg.ratio_elevated_percent and change >= 0:
        return SignalLevel.ELEVATED
    return SignalLevel.NEUTRAL


class MarketCapRatioTask(MonitorTask[MarketCapRatioMonitor, MarketCapRatio, RatioHistoryRecord]):
    name = "ol:mc"
    title = "📊 OL/MC 指标监控"
    monitor_model = MarketCapRatioMonitor
    record_type = RatioHistoryRecord
    default_config_key = "telegram:olmc"
    default_history_key = "telegram:olmc_history"

    settings: MarketCapRatioTaskConfig

    def __init__(
        self, context: TaskContext, settings: MarketCapRatioTaskConfig, queue: RequestQueue | None = None
    ):
        super().__init__(context, settings, queue)
        self._market_caps: dict[str, float] = {}

    @property
    def retention_ms(self) -> int:
        return self.thresholds.retention.short_window_ms

    def fingerprint(self, record: RatioHistoryRecord) -> str:
        # 不含 timestamp：同 symbol 同一归一化 ratio 视为同一条
        return build_fingerprint([record.symbol, round(record.ratio_percent, 2)])

    async def collect(self, monitors: Sequence[MarketCapRatioMonitor]) -> list[FetchOutcome[MarketCapRatio]]:
        self._market_caps = {}
        if self.context.coingecko is not None:
            try:
                self._market_caps = await self.context.coingecko.get_market_caps([m.cg_id for m in monitors])
            except FetchError as e:
                logger.warning(f"[{self.name}] CoinGecko market caps unavailable: {e}")
        return await super().collect(monitors)

    async def fetch(self, monitor: MarketCapRatioMonitor) -> MarketCapRatio | None:
        if self.context.bybit is None:
            raise UpstreamError("Bybit client not configured")
        ticker = await self.context.bybit.get_ticker(monitor.symbol, monitor.category)
        if not ticker.open_interest_value:
            raise UpstreamError("openInterestValue 缺失或为 0")
        market_cap = self._market_caps.get(monitor.cg_id, 0.0)
        if not market_cap:
            raise UpstreamError(f"未获取到市值: {monitor.cg_id}")
        return MarketCapRatio(
            monitor=monitor,
            open_interest_value=round(ticker.open_interest_value, 2),
            market_cap=round(market_cap, 2),
            ratio_percent=round(ticker.open_interest_value / market_cap * 100, 4),
            timestamp=self.context.now(),
        )

    async def compute(
        self, items: list[MarketCapRatio], history: HistoryStore[RatioHistoryRecord]
    ) -> list[MarketCapRatio]:
        await history.load()
        latest: dict[str, RatioHistoryRecord] = {}
        for record in history.get_all():
            prev = latest.get(record.symbol)
            if prev is None or record.notified_at > prev.notified_at:
                latest[record.symbol] = record
        for item in items:
            prev = latest.get(item.symbol)
            if prev is not None:
                item.previous_ratio = prev.ratio_percent
                item.change_percent = round(item.ratio_percent - prev.ratio_percent, 4)
        return items

    def passes_threshold(self, item: MarketCapRatio) -> bool:
        cfg = item.monitor
        if item.previous_ratio is not None and abs(item.change_percent) <= self.settings.duplicate_tolerance_percent:
            return False
        hit_ratio = cfg.ratio_threshold_percent > 0 and item.ratio_percent >= cfg.ratio_threshold_percent
        hit_change = abs(item.change_percent) > cfg.change_threshold_percent
        return hit_ratio or hit_change

    def to_record(self, item: MarketCapRatio, notified_at: int) -> RatioHistoryRecord:
        return RatioHistoryRecord(
            notified_at=notified_at,
            symbol=item.symbol,
            ratio_percent=item.ratio_percent,
            timestamp=item.timestamp,
            direction=direction_of(item.change_percent),
        )

    def dedupe_options(self) -> DedupeOptions:
        return DedupeOptions(
            lookback_ms=self.thresholds.duplicate_lookback.market_cap_ratio_ms,
            tolerance_abs=self.settings.duplicate_tolerance_percent,
        )

    def to_dedupe_record(self, item: MarketCapRatio, now: int) -> DedupeRecord:
        return DedupeRecord(item.symbol, round(item.ratio_percent, 2), item.timestamp, direction_of(item.change_percent))

    def history_to_dedupe(self, record: RatioHistoryRecord) -> DedupeRecord:
        return DedupeRecord(
            record.symbol,
            round(record.ratio_percent, 2),
            record.notified_at,
            record.direction or "flat",  # type: ignore[arg-type]
        )

    def format_entry(self, item: MarketCapRatio) -> str:
        icon, label, note = SIGNAL_TEXT[classify_signal(item)]
        return "\n".join(
            [
                f"{icon} <b>{escape(item.monitor.label)}</b> ({escape(item.symbol)})",
                f"  Ratio: {item.ratio_percent:.4f}% ({format_signed(item.change_percent, 4)})",
                f"  Signal: {label} | {note}",
                f"  OI: {format_number(item.open_interest_value)}  MC: {format_number(item.market_cap)}",
                f"  时间: {format_datetime(item.timestamp)}",
            ]
        )
