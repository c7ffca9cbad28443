# market_alerts/tasks/long_short_ratio.py
import logging
import math
from dataclasses import dataclass

from market_alerts.aggregator.window import percent_change
from market_alerts.alert.dedupe import DedupeOptions, DedupeRecord, direction_of
from market_alerts.client.models import LongShortRatio
from market_alerts.config import ChangeRateMonitor, LongShortRatioTaskConfig
from market_alerts.exceptions import UpstreamError
from market_alerts.notifier.formatter import change_icon, escape, format_datetime, format_signed
from market_alerts.storage.history import build_fingerprint
from market_alerts.storage.models import LongShortRatioHistoryRecord
from market_alerts.tasks.base import MonitorTask

logger = logging.getLogger(__name__)

_PERIOD_MINUTES = {"m": 1, "h": 60, "d": 1440}


def period_minutes(period: str) -> int:
    """'5m' -> 5, '1h' -> 60"""
    try:
        return int(period[:-1]) * _PERIOD_MINUTES[period[-1]]
    except (KeyError, ValueError, IndexError):
        raise ValueError(f"Unsupported period: {period!r}") from None


@dataclass
class LongShortRatioChange:
    monitor: ChangeRateMonitor
    latest: LongShortRatio
    previous_ratio: float | None
    change_rate: float  # percent

    @property
    def symbol(self) -> str:
        return self.monitor.symbol


class LongShortRatioTask(MonitorTask[ChangeRateMonitor, LongShortRatioChange, LongShortRatioHistoryRecord]):
    """大户账户多空比变化监控 (account:ratio)"""

    name = "account:ratio"
    title = "📊 大户多空账户数比值监控报告"
    monitor_model = ChangeRateMonitor
    record_type = LongShortRatioHistoryRecord
    default_config_key = "telegram:ol"
    default_history_key = "telegram:longShortRatio_alarm_history"

    settings: LongShortRatioTaskConfig

    @property
    def retention_ms(self) -> int:
        return self.thresholds.retention.short_window_ms

    @property
    def lookback_points(self) -> int:
        return math.ceil(self.settings.monitoring_interval_minutes / period_minutes(self.settings.period))

    def fingerprint(self, record: LongShortRatioHistoryRecord) -> str:
        return build_fingerprint(
            [record.symbol, record.timestamp, math.floor(record.long_short_ratio * 10000)]
        )

    async def fetch(self, monitor: ChangeRateMonitor) -> LongShortRatioChange | None:
        if self.context.binance is None:
            raise UpstreamError("Binance client not configured")
        target = self.lookback_points
        rows = await self.context.binance.get_top_long_short_account_ratio(
            monitor.symbol, self.settings.period, limit=target + 1
        )
        latest = rows[0]
        if len(rows) <= target:
            return LongShortRatioChange(monitor, latest, None, 0.0)
        previous = rows[target].long_short_ratio
        change = round(percent_change(previous, latest.long_short_ratio), 4)
        logger.info(f"[{self.name}] {monitor.symbol}: 多空比 {latest.long_short_ratio:.4f}, 变化 {change:+.2f}%")
        return LongShortRatioChange(monitor, latest, previous, change)

    def passes_threshold(self, item: LongShortRatioChange) -> bool:
        threshold = item.monitor.change_threshold_percent
        if threshold is None:
            threshold = self.thresholds.long_short_ratio_change_percent
        return abs(item.change_rate) > threshold

    def to_record(self, item: LongShortRatioChange, notified_at: int) -> LongShortRatioHistoryRecord:
        return LongShortRatioHistoryRecord(
            notified_at=notified_at,
            symbol=item.symbol,
            timestamp=item.latest.timestamp,
            long_short_ratio=item.latest.long_short_ratio,
            change_rate=item.change_rate,
            direction=direction_of(item.change_rate),
        )

    def dedupe_options(self) -> DedupeOptions:
        return DedupeOptions(
            lookback_ms=self.thresholds.duplicate_lookback.ratio_ms,
            tolerance_abs=self.settings.duplicate_tolerance_percent_points,
        )

    def to_dedupe_record(self, item: LongShortRatioChange, now: int) -> DedupeRecord:
        return DedupeRecord(item.symbol, item.change_rate, now, direction_of(item.change_rate))

    def history_to_dedupe(self, record: LongShortRatioHistoryRecord) -> DedupeRecord:
        return DedupeRecord(record.symbol, record.change_rate, record.notified_at, record.direction)  # type: ignore[arg-type]

    def format_entry(self, item: LongShortRatioChange) -> str:
        latest = item.latest
        if item.change_rate > 0:
            trend = "多头占优增强"
        elif item.change_rate < 0:
            trend = "空头占优增强"
        else:
            trend = "持平"
        lines = [
            f"{change_icon(item.change_rate)} <b>{escape(item.monitor.label)}</b> - {trend}",
            f"   多空比: {latest.long_short_ratio:.4f}",
            f"   多仓比: {latest.long_account * 100:.2f}%",
            f"   空仓比: {latest.short_account * 100:.2f}%",
            f"   变化率: {format_signed(item.change_rate)}",
        ]
        if item.previous_ratio is not None:
            delta = latest.long_short_ratio - item.previous_ratio
            lines.append(f"   比值变化: {item.previous_ratio:.4f} → {latest.long_short_ratio:.4f} ({delta:+.4f})")
        lines.append(f"   时间: {format_datetime(latest.timestamp)}")
        return "\n".join(lines)
