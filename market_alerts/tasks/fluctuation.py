# market_alerts/tasks/fluctuation.py
import logging
from dataclasses import dataclass

from market_alerts.aggregator.window import percent_change
from market_alerts.alert.dedupe import DedupeOptions, DedupeRecord, direction_of
from market_alerts.client.models import Kline
from market_alerts.config import FluctuationMonitor, FluctuationTaskConfig
from market_alerts.exceptions import UpstreamError
from market_alerts.notifier.formatter import (
    change_icon,
    escape,
    format_datetime,
    format_number,
    format_signed,
)
from market_alerts.storage.history import build_fingerprint
from market_alerts.storage.models import FluctuationHistoryRecord
from market_alerts.tasks.base import MonitorTask

logger = logging.getLogger(__name__)


@dataclass
class PriceMove:
    monitor: FluctuationMonitor
    latest: Kline
    previous_price: float
    change_rate: float  # percent

    @property
    def symbol(self) -> str:
        return self.monitor.symbol

    @property
    def is_significant(self) -> bool:
        return abs(self.change_rate) > self.monitor.significant_change_threshold


class FluctuationTask(MonitorTask[FluctuationMonitor, PriceMove, FluctuationHistoryRecord]):
    """K 线价格波动监控 (market:fluctuation)，重大异动单独置顶"""

    name = "market:fluctuation"
    title = "📊 多币种价格波动监控"
    monitor_model = FluctuationMonitor
    record_type = FluctuationHistoryRecord
    default_config_key = "telegram:fluctuation"
    default_history_key = "telegram:fluctuation_history"

    settings: FluctuationTaskConfig

    @property
    def retention_ms(self) -> int:
        return self.thresholds.retention.short_window_ms

    def fingerprint(self, record: FluctuationHistoryRecord) -> str:
        return build_fingerprint([record.symbol, record.timestamp, f"{record.change_rate:.2f}"])

    async def fetch(self, monitor: FluctuationMonitor) -> PriceMove | None:
        if self.context.bybit is None:
            raise UpstreamError("Bybit client not configured")
        klines = await self.context.bybit.get_klines(
            monitor.symbol, self.settings.kline_interval, limit=2, category=monitor.category
        )
        latest = klines[0]
        if len(klines) < 2:
            return PriceMove(monitor, latest, latest.close, 0.0)
        previous = klines[1].close
        change = round(percent_change(previous, latest.close), 4)
        logger.info(f"[{self.name}] {monitor.symbol}: {latest.close} ({change:+.2f}%)")
        return PriceMove(monitor, latest, previous, change)

    def passes_threshold(self, item: PriceMove) -> bool:
        return abs(item.change_rate) > item.monitor.price_change_threshold

    def to_record(self, item: PriceMove, notified_at: int) -> FluctuationHistoryRecord:
        return FluctuationHistoryRecord(
            notified_at=notified_at,
            symbol=item.symbol,
            timestamp=item.latest.start_time,
            price=item.latest.close,
            change_rate=item.change_rate,
            direction=direction_of(item.change_rate),
        )

    def dedupe_options(self) -> DedupeOptions:
        return DedupeOptions(
            lookback_ms=self.thresholds.duplicate_lookback.fluctuation_ms,
            tolerance_percent=self.thresholds.fluctuation_duplicate_tolerance_percent,
        )

    def to_dedupe_record(self, item: PriceMove, now: int) -> DedupeRecord:
        return DedupeRecord(item.symbol, item.change_rate, now, direction_of(item.change_rate))

    def history_to_dedupe(self, record: FluctuationHistoryRecord) -> DedupeRecord:
        return DedupeRecord(record.symbol, record.change_rate, record.notified_at, record.direction)  # type: ignore[arg-type]

    def format_significant(self, item: PriceMove) -> str:
        alert = "🚀🚀🚀" if item.change_rate > 0 else "💥💥💥"
        k = item.latest
        return "\n".join(
            [
                f"{alert} <b>{escape(item.monitor.label)}</b> 重大异动 {alert}",
                f"{change_icon(item.change_rate)} {escape(item.symbol)}",
                f"💰 当前价格: ${format_number(k.close)}",
                f"📊 变化幅度: {format_signed(item.change_rate)}",
                f"📈 最高价: ${format_number(k.high)}",
                f"📉 最低价: ${format_number(k.low)}",
                f"⏰ 时间: {format_datetime(k.start_time)}",
            ]
        )

    def format_entry(self, item: PriceMove) -> str:
        return "\n".join(
            [
                f"{change_icon(item.change_rate)} <b>{escape(item.monitor.label)}</b> ({escape(item.symbol)})",
                f"💰 价格: ${format_number(item.latest.close)}",
                f"📊 变化: {format_signed(item.change_rate)}",
                f"⏰ {format_datetime(item.latest.start_time)}",
            ]
        )

    def format_entries(self, items: list[PriceMove]) -> list[tuple[str, list[PriceMove]]]:
        significant = [i for i in items if i.is_significant]
        entries = [(self.format_entry(i), [i]) for i in items if not i.is_significant]
        if significant:
            entries = [("🚨 重大异动警报 🚨", []), *[(self.format_significant(i), [i]) for i in significant], *entries]
        return entries
