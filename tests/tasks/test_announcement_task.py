# tests/tasks/test_announcement_task.py
from unittest.mock import AsyncMock, MagicMock

from market_alerts.client.models import Announcement
from market_alerts.client.queue import RequestQueue
from market_alerts.config import AnnouncementTaskConfig
from market_alerts.tasks.announcement import AnnouncementTask
from market_alerts.tasks.base import RunStatus, TaskContext

NOW = 1_700_000_000_000
HOUR = 3_600_000
HISTORY_KEY = "telegram:announcement_history"


def announcement(n: int, hours_ago: float) -> Announcement:
    return Announcement(
        title=f"Bybit 上线 COIN{n}",
        description=f"COIN{n}USDT 永续合约 <即将> 上线",
        type_title="新币上线",
        url=f"https://announcements.bybit.com/article/coin{n}",
        publish_time=int(NOW - hours_ago * HOUR),
    )


def make_task(store, notifier, feed: list[Announcement], **settings):
    bybit = MagicMock()
    bybit.get_announcements = AsyncMock(return_value=feed)
    context = TaskContext(storage=store, notifier=notifier, bybit=bybit, now=lambda: NOW)
    return AnnouncementTask(context, AnnouncementTaskConfig(**settings), RequestQueue(0, 0))


async def test_first_run_records_baseline_without_notifying(store, notifier):
    feed = [announcement(1, 1), announcement(2, 48)]
    task = make_task(store, notifier, feed)

    result = await task.run()

    assert result.result == RunStatus.OK
    assert result.message == "baseline recorded"
    assert notifier.sent == []
    stored = await store.get_item(HISTORY_KEY)
    assert {r["url"] for r in stored} == {a.url for a in feed}


async def test_new_announcement_after_baseline(store, notifier):
    feed = [announcement(1, 1), announcement(2, 48)]
    await make_task(store, notifier, feed).run()

    feed = [announcement(3, 0.5)] + feed
    result = await make_task(store, notifier, feed).run()

    assert result.counts.filtered == 2
    assert result.counts.duplicates == 1
    assert result.counts.new_alerts == 1
    text = notifier.sent[0][1]
    assert "COIN3" in text
    assert "COIN1" not in text
    assert "&lt;即将&gt;" in text
    assert notifier.sent[0][0] == "chat:market:announcement"


async def test_old_announcements_are_ignored(store, notifier):
    task = make_task(store, notifier, [announcement(1, 30)])

    result = await task.run()

    assert result.counts.filtered == 0
    assert result.message == "no candidates"
    assert HISTORY_KEY not in store.writes


async def test_message_lists_at_most_max_entries(store, notifier):
    await make_task(store, notifier, [announcement(0, 2)]).run()

    feed = [announcement(n, 1) for n in range(1, 8)]
    result = await make_task(store, notifier, feed, max_entries=5).run()

    assert result.counts.new_alerts == 7
    text = notifier.sent[0][1]
    assert "COIN5" in text
    assert "COIN6" not in text
    assert "其余 2 条公告已省略" in text


async def test_fetch_uses_configured_feed(store, notifier):
    task = make_task(store, notifier, [], locale="en-US", announcement_type="latest_activities", limit=20)

    await task.run()

    task.context.bybit.get_announcements.assert_called_once_with("en-US", "latest_activities", 20)
