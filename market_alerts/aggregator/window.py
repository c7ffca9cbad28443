# market_alerts/aggregator/window.py
from dataclasses import dataclass, field
from typing import Any


@dataclass
class Sample:
    value: float
    timestamp: int  # ms


@dataclass
class WindowAnalysis:
    window_minutes: int
    oldest_value: float
    newest_value: float
    change_rate: float
    max_value: float
    min_value: float
    volatility: float
    record_count: int
    is_direction_change: bool

    @property
    def change_rate_percent(self) -> float:
        return abs(self.change_rate) * 100

    @property
    def change_direction(self) -> str:
        return "increase" if self.change_rate > 0 else "decrease"


def analyze(samples: list[Sample], window_minutes: int) -> WindowAnalysis | None:
    """比较窗口内最早与最新两个样本

    调用方负责追加新样本并剔除窗口外样本。少于 2 个样本返回 None（数据不足）。

    Returns:
        变化量 (newest - oldest)、窗口内最大最小差 (波动)、正负是否翻转
    """
    if len(samples) < 2:
        return None

    ordered = sorted(samples, key=lambda s: s.timestamp)
    oldest, newest = ordered[0], ordered[-1]
    values = [s.value for s in ordered]
    max_value = max(values)
    min_value = min(values)

    return WindowAnalysis(
        window_minutes=window_minutes,
        oldest_value=oldest.value,
        newest_value=newest.value,
        change_rate=newest.value - oldest.value,
        max_value=max_value,
        min_value=min_value,
        volatility=max_value - min_value,
        record_count=len(ordered),
        # 0 视为正值
        is_direction_change=(oldest.value >= 0) != (newest.value >= 0),
    )


@dataclass
class WindowSeries:
    """单个 key 的滑动窗口样本序列"""

    key: str
    window_minutes: int
    samples: list[Sample] = field(default_factory=list)

    @property
    def window_ms(self) -> int:
        return self.window_minutes * 60_000

    def prune(self, now: int) -> None:
        cutoff = now - self.window_ms
        self.samples = sorted(
            (s for s in self.samples if s.timestamp > cutoff), key=lambda s: s.timestamp
        )

    def append(self, value: float, timestamp: int) -> None:
        self.samples.append(Sample(value=value, timestamp=timestamp))
        self.prune(timestamp)

    def analyze(self) -> WindowAnalysis | None:
        return analyze(self.samples, self.window_minutes)


class SeriesBook:
    """按 key 维护多个 WindowSeries，可序列化后存入键值存储"""

    def __init__(self, window_minutes: int):
        self.window_minutes = window_minutes
        self._series: dict[str, WindowSeries] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._series

    def __len__(self) -> int:
        return sum(len(s.samples) for s in self._series.values())

    def series(self, key: str, window_minutes: int | None = None) -> WindowSeries:
        window = window_minutes or self.window_minutes
        existing = self._series.get(key)
        if existing is None:
            existing = self._series[key] = WindowSeries(key=key, window_minutes=window)
        else:
            existing.window_minutes = window
        return existing

    def record(
        self, key: str, value: float, timestamp: int, window_minutes: int | None = None
    ) -> WindowAnalysis | None:
        """追加样本、剔除过期样本并分析"""
        series = self.series(key, window_minutes)
        series.append(value, timestamp)
        return series.analyze()

    def prune_all(self, now: int) -> None:
        for key in list(self._series):
            series = self._series[key]
            series.prune(now)
            if not series.samples:
                del self._series[key]

    def to_list(self) -> list[dict[str, Any]]:
        return [
            {"key": s.key, "value": sample.value, "timestamp": sample.timestamp}
            for s in self._series.values()
            for sample in s.samples
        ]

    def load_list(self, rows: Any, now: int) -> int:
        """从存储值恢复样本，忽略格式不对的行；返回恢复的样本数"""
        if not isinstance(rows, list):
            return 0
        restored = 0
        for row in rows:
            if not isinstance(row, dict):
                continue
            try:
                key = str(row["key"])
                value = float(row["value"])
                timestamp = int(row["timestamp"])
            except (KeyError, TypeError, ValueError):
                continue
            self.series(key).samples.append(Sample(value=value, timestamp=timestamp))
            restored += 1
        self.prune_all(now)
        return restored


def percent_change(previous: float, current: float) -> float:
    """两点间百分比变化；previous 为 0 时返回 0"""
    if previous == 0:
        return 0.0
    return (current - previous) / previous * 100
