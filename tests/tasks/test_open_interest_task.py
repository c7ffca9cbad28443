# tests/tasks/test_open_interest_task.py
from unittest.mock import AsyncMock, MagicMock

from market_alerts.client.models import OpenInterest
from market_alerts.client.queue import RequestQueue
from market_alerts.config import OpenInterestTaskConfig, ThresholdsConfig
from market_alerts.tasks.base import TaskContext
from market_alerts.tasks.open_interest import OpenInterestTask

NOW = 1_700_000_000_000
HISTORY_KEY = "telegram:ol_alarm_history"


def make_task(store, notifier, values: dict[str, list[float]], thresholds: ThresholdsConfig | None = None):
    bybit = MagicMock()

    async def get_open_interest(symbol, interval_time="5min", limit=2, category="linear"):
        return [
            OpenInterest(symbol=symbol, open_interest=v, timestamp=NOW - i * 300_000)
            for i, v in enumerate(values[symbol])
        ][:limit]

    bybit.get_open_interest = AsyncMock(side_effect=get_open_interest)
    context = TaskContext(
        storage=store,
        notifier=notifier,
        bybit=bybit,
        thresholds=thresholds or ThresholdsConfig(),
        now=lambda: NOW,
    )
    return OpenInterestTask(context, OpenInterestTaskConfig(), RequestQueue(0, 0))


async def test_open_interest_change_alert(store, notifier):
    await store.set_item("telegram:ol", ["BTCUSDT", "ETHUSDT"])
    task = make_task(store, notifier, {"BTCUSDT": [54_000, 50_000], "ETHUSDT": [100_000, 99_000]})

    result = await task.run()

    assert result.counts.new_alerts == 1
    text = notifier.sent[0][1]
    assert "BTCUSDT" in text
    assert "+8.00%" in text
    assert "ETHUSDT" not in text
    stored = await store.get_item(HISTORY_KEY)
    assert stored[0]["open_interest"] == 54_000
    assert stored[0]["timestamp"] == NOW


async def test_global_threshold_from_config(store, notifier):
    await store.set_item("telegram:ol", ["BTCUSDT"])
    task = make_task(
        store,
        notifier,
        {"BTCUSDT": [54_000, 50_000]},
        thresholds=ThresholdsConfig(open_interest_change_percent=10),
    )

    result = await task.run()

    assert result.counts.filtered == 0


async def test_single_point_has_no_change(store, notifier):
    await store.set_item("telegram:ol", ["BTCUSDT"])
    task = make_task(store, notifier, {"BTCUSDT": [54_000]})

    result = await task.run()

    assert result.counts.filtered == 0


async def test_same_snapshot_not_sent_twice(store, notifier):
    await store.set_item("telegram:ol", ["BTCUSDT"])
    values = {"BTCUSDT": [54_000, 50_000]}

    await make_task(store, notifier, values).run()
    result = await make_task(store, notifier, values).run()

    assert result.counts.duplicates == 1
    assert len(notifier.sent) == 1
