# market_alerts/tasks/announcement.py
"""Bybit 新币公告监控 (market:announcement)

首次运行（历史为空）只记录当前公告作为基线，不发送通知。
"""

import logging
from typing import Any

from market_alerts.client.models import Announcement
from market_alerts.config import AnnouncementTaskConfig, MonitorConfig
from market_alerts.exceptions import UpstreamError
from market_alerts.notifier.formatter import escape, format_datetime, truncate
from market_alerts.storage.history import HistoryStore, build_fingerprint
from market_alerts.storage.models import AnnouncementHistoryRecord
from market_alerts.tasks.base import MonitorTask

logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000


class AnnouncementTask(MonitorTask[MonitorConfig, Announcement, AnnouncementHistoryRecord]):
    name = "market:announcement"
    title = "📢 Bybit 新币公告监控"
    monitor_model = MonitorConfig
    record_type = AnnouncementHistoryRecord
    default_history_key = "telegram:announcement_history"

    settings: AnnouncementTaskConfig

    @property
    def retention_ms(self) -> int:
        return self.thresholds.retention.announcement_ms

    def fingerprint(self, record: AnnouncementHistoryRecord) -> str:
        return build_fingerprint([record.url, record.publish_time])

    async def load_monitors(self) -> list[MonitorConfig]:
        # 公告源只有一个，不读存储中的标的列表
        return [MonitorConfig(symbol=f"{self.settings.announcement_type}@{self.settings.locale}")]

    async def fetch(self, monitor: MonitorConfig) -> Any:
        if self.context.bybit is None:
            raise UpstreamError("Bybit client not configured")
        return await self.context.bybit.get_announcements(
            self.settings.locale, self.settings.announcement_type, self.settings.limit
        )

    async def compute(
        self, items: list[Any], history: HistoryStore[AnnouncementHistoryRecord]
    ) -> list[Announcement]:
        feed: list[Announcement] = [a for batch in items for a in batch]
        logger.info(f"[{self.name}] fetched {len(feed)} announcements")
        return feed

    def passes_threshold(self, item: Announcement) -> bool:
        return item.publish_time > self.context.now() - self.settings.recent_hours * HOUR_MS

    def to_record(self, item: Announcement, notified_at: int) -> AnnouncementHistoryRecord:
        return AnnouncementHistoryRecord(notified_at=notified_at, url=item.url, publish_time=item.publish_time)

    def is_baseline_run(self, previous: list[AnnouncementHistoryRecord]) -> bool:
        return not previous

    def baseline_records(self, items: list[Announcement], now: int) -> list[AnnouncementHistoryRecord]:
        # 基线包含 24 小时之外的旧公告
        return [self.to_record(item, now) for item in items]

    def format_entry(self, item: Announcement) -> str:
        return (
            f"【{escape(item.type_title)}】{escape(truncate(item.title, 120))}\n"
            f"{escape(truncate(item.description, 260))}\n"
            f"🔗 {escape(item.url)}\n"
            f"🕒 {format_datetime(item.publish_time)}"
        )

    def format_entries(self, items: list[Announcement]) -> list[tuple[str, list[Announcement]]]:
        limit = self.settings.max_entries
        entries = [(self.format_entry(item), [item]) for item in items[:limit]]
        if len(items) > limit:
            # 省略的公告随说明行一起记入历史
            entries.append((f"… 其余 {len(items) - limit} 条公告已省略", items[limit:]))
        return entries
