# market_alerts/alert/dedupe.py
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Generic, Literal, TypeVar

T = TypeVar("T")

Direction = Literal["up", "down", "flat"]


def direction_of(change: float, epsilon: float = 0.0) -> Direction:
    if change > epsilon:
        return "up"
    if change < -epsilon:
        return "down"
    return "flat"


@dataclass
class DedupeRecord:
    symbol: str
    value: float
    timestamp: int  # ms
    direction: Direction | None = None
    # 任务自定义的比较字段，供 same_event 使用
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class DedupeOptions:
    lookback_ms: int
    tolerance_abs: float | None = None
    tolerance_percent: float | None = None
    direction_sensitive: bool = True
    # 额外条件：返回 False 时两条记录不视为重复
    same_event: Callable[[DedupeRecord, DedupeRecord], bool] | None = None


@dataclass
class DedupeResult(Generic[T]):
    fresh: list[T]
    duplicates: list[T]


def is_near_duplicate(record: DedupeRecord, previous: DedupeRecord, options: DedupeOptions) -> bool:
    """同 symbol、（可选）同方向，且数值差在绝对容差或百分比容差之内"""
    if record.symbol != previous.symbol:
        return False
    if (
        options.direction_sensitive
        and record.direction is not None
        and previous.direction is not None
        and record.direction != previous.direction
    ):
        return False
    if options.same_event is not None and not options.same_event(record, previous):
        return False

    abs_diff = abs(record.value - previous.value)
    if options.tolerance_abs is None and options.tolerance_percent is None:
        return abs_diff == 0

    if options.tolerance_abs is not None and abs_diff <= options.tolerance_abs:
        return True
    if options.tolerance_percent is not None:
        base = abs(previous.value) or 1.0
        if abs_diff / base * 100 <= options.tolerance_percent:
            return True
    return False


def filter_duplicates(
    inputs: Iterable[T],
    to_record: Callable[[T], DedupeRecord],
    history: Iterable[DedupeRecord],
    options: DedupeOptions,
    now: int | None = None,
) -> DedupeResult[T]:
    """Drop inputs that restate an alert already sent within the lookback window.

    Comparison is only against ``history``; inputs of the same batch are not
    compared with each other (the fingerprint layer handles exact repeats).
    """
    current = now if now is not None else int(time.time() * 1000)
    cutoff = current - options.lookback_ms
    recent = [h for h in history if h.timestamp >= cutoff]

    result: DedupeResult[T] = DedupeResult(fresh=[], duplicates=[])
    for item in inputs:
        record = to_record(item)
        if any(is_near_duplicate(record, h, options) for h in recent):
            result.duplicates.append(item)
        else:
            result.fresh.append(item)
    return result
