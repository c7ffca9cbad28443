# market_alerts/tasks/open_interest.py
import logging
from dataclasses import dataclass

from market_alerts.aggregator.window import percent_change
from market_alerts.alert.dedupe import DedupeOptions, DedupeRecord, direction_of
from market_alerts.client.models import OpenInterest
from market_alerts.config import ChangeRateMonitor, OpenInterestTaskConfig
from market_alerts.exceptions import UpstreamError
from market_alerts.notifier.formatter import change_icon, escape, format_datetime, format_number, format_signed
from market_alerts.storage.history import build_fingerprint
from market_alerts.storage.models import OpenInterestHistoryRecord
from market_alerts.tasks.base import MonitorTask

logger = logging.getLogger(__name__)


@dataclass
class OpenInterestChange:
    monitor: ChangeRateMonitor
    latest: OpenInterest
    previous: float
    change_rate: float  # percent

    @property
    def symbol(self) -> str:
        return self.monitor.symbol


class OpenInterestTask(MonitorTask[ChangeRateMonitor, OpenInterestChange, OpenInterestHistoryRecord]):
    """未平仓合约变化监控 (ol:alarm)"""

    name = "ol:alarm"
    title = "📊 未平仓合约监控报告"
    monitor_model = ChangeRateMonitor
    record_type = OpenInterestHistoryRecord
    default_config_key = "telegram:ol"
    default_history_key = "telegram:ol_alarm_history"

    settings: OpenInterestTaskConfig

    @property
    def retention_ms(self) -> int:
        return self.thresholds.retention.short_window_ms

    def fingerprint(self, record: OpenInterestHistoryRecord) -> str:
        return build_fingerprint([record.symbol, record.timestamp, f"{record.open_interest:.4f}"])

    async def fetch(self, monitor: ChangeRateMonitor) -> OpenInterestChange | None:
        if self.context.bybit is None:
            raise UpstreamError("Bybit client not configured")
        rows = await self.context.bybit.get_open_interest(
            monitor.symbol, self.settings.interval_time, limit=2, category=monitor.category
        )
        latest = rows[0]
        if len(rows) < 2:
            return OpenInterestChange(monitor, latest, latest.open_interest, 0.0)
        previous = rows[1].open_interest
        change = round(percent_change(previous, latest.open_interest), 4)
        logger.info(f"[{self.name}] {monitor.symbol}: 持仓 {latest.open_interest}, 变化 {change:+.2f}%")
        return OpenInterestChange(monitor, latest, previous, change)

    def passes_threshold(self, item: OpenInterestChange) -> bool:
        threshold = item.monitor.change_threshold_percent
        if threshold is None:
            threshold = self.thresholds.open_interest_change_percent
        return abs(item.change_rate) > threshold

    def to_record(self, item: OpenInterestChange, notified_at: int) -> OpenInterestHistoryRecord:
        return OpenInterestHistoryRecord(
            notified_at=notified_at,
            symbol=item.symbol,
            timestamp=item.latest.timestamp,
            open_interest=item.latest.open_interest,
            change_rate=item.change_rate,
            direction=direction_of(item.change_rate),
        )

    def dedupe_options(self) -> DedupeOptions:
        return DedupeOptions(
            lookback_ms=self.thresholds.duplicate_lookback.open_interest_ms,
            tolerance_abs=self.settings.duplicate_tolerance_percent_points,
        )

    def to_dedupe_record(self, item: OpenInterestChange, now: int) -> DedupeRecord:
        return DedupeRecord(item.symbol, item.change_rate, now, direction_of(item.change_rate))

    def history_to_dedupe(self, record: OpenInterestHistoryRecord) -> DedupeRecord:
        return DedupeRecord(record.symbol, record.change_rate, record.notified_at, record.direction)  # type: ignore[arg-type]

    def format_entry(self, item: OpenInterestChange) -> str:
        return "\n".join(
            [
                f"{change_icon(item.change_rate)} <b>{escape(item.monitor.label)}</b>",
                f"   持仓: {format_number(item.latest.open_interest)}",
                f"   变化: {format_signed(item.change_rate)}",
                f"   时间: {format_datetime(item.latest.timestamp)}",
            ]
        )
