# market_alerts/alert/trend.py
import time
from collections.abc import Callable, Iterable
from typing import TypeVar

from market_alerts.alert.dedupe import DedupeRecord, DedupeResult

T = TypeVar("T")


def filter_repeated_trend(
    inputs: Iterable[T],
    to_record: Callable[[T], DedupeRecord],
    history: Iterable[DedupeRecord],
    lookback_ms: int = 60 * 60 * 1000,
    growth_factor: float = 1.5,
    now: int | None = None,
) -> DedupeResult[T]:
    """过滤重复趋势

    同一 symbol 在 lookback 内已有同方向提醒时，只有当前幅度超过最近一次
    提醒幅度的 growth_factor 倍才视为新提醒。
    """
    current = now if now is not None else int(time.time() * 1000)
    cutoff = current - lookback_ms
    recent = [h for h in history if h.timestamp >= cutoff]

    result: DedupeResult[T] = DedupeResult(fresh=[], duplicates=[])
    for item in inputs:
        record = to_record(item)
        same_direction = [
            h
            for h in recent
            if h.symbol == record.symbol and h.direction is not None and h.direction == record.direction
        ]
        if not same_direction:
            result.fresh.append(item)
            continue

        latest = max(same_direction, key=lambda h: h.timestamp)
        if abs(record.value) > abs(latest.value) * growth_factor:
            result.fresh.append(item)
        else:
            result.duplicates.append(item)
    return result
