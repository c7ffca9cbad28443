"""交易所 / 行情 API 数据模型"""

from dataclasses import dataclass, field


@dataclass
class Ticker:
    """Bybit 合约行情"""

    symbol: str
    last_price: float
    mark_price: float
    funding_rate: float
    next_funding_time: int
    open_interest: float
    open_interest_value: float
    volume_24h: float


@dataclass
class Kline:
    """K 线数据"""

    start_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    turnover: float


@dataclass
class OpenInterest:
    """持仓量数据"""

    symbol: str
    open_interest: float
    timestamp: int


@dataclass
class LongShortRatio:
    """大户账户多空比"""

    symbol: str
    long_short_ratio: float
    long_account: float
    short_account: float
    timestamp: int


@dataclass
class Announcement:
    """Bybit 公告"""

    title: str
    description: str
    type_title: str
    url: str
    publish_time: int
    tags: list[str] = field(default_factory=list)
