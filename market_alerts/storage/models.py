# market_alerts/storage/models.py
from dataclasses import asdict, dataclass, fields
from typing import Any, Self


@dataclass
class HistoryRecord:
    """已通知记录的基类；notified_at (ms) 决定过期裁剪"""

    notified_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        # 字段只增不删：忽略未知字段，缺失字段取默认值
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class FundingRateHistoryRecord(HistoryRecord):
    symbol: str = ""
    funding_rate: float = 0.0
    change_rate: float = 0.0
    next_funding_time: int = 0
    window_minutes: int = 0
    direction: str | None = None


@dataclass
class LongShortRatioHistoryRecord(HistoryRecord):
    symbol: str = ""
    timestamp: int = 0
    long_short_ratio: float = 0.0
    change_rate: float = 0.0
    direction: str | None = None


@dataclass
class OpenInterestHistoryRecord(HistoryRecord):
    symbol: str = ""
    timestamp: int = 0
    open_interest: float = 0.0
    change_rate: float = 0.0
    direction: str | None = None


@dataclass
class FluctuationHistoryRecord(HistoryRecord):
    symbol: str = ""
    timestamp: int = 0
    price: float = 0.0
    change_rate: float = 0.0
    direction: str | None = None


@dataclass
class AnnouncementHistoryRecord(HistoryRecord):
    url: str = ""
    publish_time: int = 0


@dataclass
class RatioHistoryRecord(HistoryRecord):
    """持仓价值 / 市值 比值记录"""

    symbol: str = ""
    ratio_percent: float = 0.0
    timestamp: int = 0
    direction: str | None = None
