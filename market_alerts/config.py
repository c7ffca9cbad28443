# market_alerts/config.py
import logging
from pathlib import Path
from typing import Any, Literal, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from market_alerts.client.http import RetryOptions

logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000
MINUTE_MS = 60 * 1000


class TelegramConfig(BaseModel):
    bot_token: str
    chat_id: str
    channels: dict[str, str] = {}
    message_limit: int = 4000
    polling: bool = True


class StorageConfig(BaseModel):
    driver: Literal["sqlite", "memory"] = "sqlite"
    path: str = "data/market_alerts.db"


class RetryConfig(BaseModel):
    retries: int = 2
    timeout_ms: int = 8000
    base_delay_ms: int = 400
    max_delay_ms: int = 4000
    jitter: bool = True

    def to_options(self) -> RetryOptions:
        return RetryOptions(
            retries=self.retries,
            timeout_ms=self.timeout_ms,
            base_delay_ms=self.base_delay_ms,
            max_delay_ms=self.max_delay_ms,
            jitter=self.jitter,
        )


class HttpConfig(BaseModel):
    bybit_api_url: str = "https://api.bybit.com"
    binance_api_url: str = "https://fapi.binance.com"
    coingecko_api_url: str = "https://api.coingecko.com"
    retry: RetryConfig = RetryConfig()


class RetentionConfig(BaseModel):
    short_window_ms: int = 2 * HOUR_MS
    announcement_ms: int = 7 * 24 * HOUR_MS


class DuplicateLookbackConfig(BaseModel):
    funding_rate_ms: int = 30 * MINUTE_MS
    fluctuation_ms: int = 30 * MINUTE_MS
    ratio_ms: int = 30 * MINUTE_MS
    open_interest_ms: int = 30 * MINUTE_MS
    market_cap_ratio_ms: int = 10 * MINUTE_MS


class ThresholdsConfig(BaseModel):
    """集中的告警阈值与保留窗口"""

    long_short_ratio_change_percent: float = 20
    open_interest_change_percent: float = 5
    funding_rate_window_change: float = 0.003  # 0.003 => 0.3%
    fluctuation_duplicate_tolerance_percent: float = 2
    retention: RetentionConfig = RetentionConfig()
    duplicate_lookback: DuplicateLookbackConfig = DuplicateLookbackConfig()


class QueueConfig(BaseModel):
    min_delay_ms: int = 1000
    max_random_delay_ms: int = 5000


class TaskConfig(BaseModel):
    enabled: bool = True
    interval_seconds: int = 60
    queue: QueueConfig = QueueConfig()
    config_key: str | None = None
    history_key: str | None = None
    # 写入存储的监控列表（留空则沿用存储中已有配置）
    monitors: list[Any] | None = None


class FundingRateTaskConfig(TaskConfig):
    window_minutes: int = 10
    duplicate_tolerance: float = 0.0001
    # 同一结算周期：下次结算时间相差不超过该值
    funding_time_tolerance_ms: int = HOUR_MS
    trend_filter: bool = True
    trend_lookback_ms: int = HOUR_MS
    trend_growth_factor: float = 1.5
    persist_series: bool = True


class LongShortRatioTaskConfig(TaskConfig):
    period: str = "5m"
    monitoring_interval_minutes: int = 5
    duplicate_tolerance_percent_points: float = 1.0


class OpenInterestTaskConfig(TaskConfig):
    interval_time: str = "5min"
    duplicate_tolerance_percent_points: float = 0.5


class FluctuationTaskConfig(TaskConfig):
    queue: QueueConfig = QueueConfig(min_delay_ms=500, max_random_delay_ms=1000)
    kline_interval: str = "1"


class AnnouncementTaskConfig(TaskConfig):
    locale: str = "zh-TW"
    announcement_type: str = "new_crypto"
    limit: int = 50
    recent_hours: int = 24
    max_entries: int = 5


class MarketCapRatioTaskConfig(TaskConfig):
    queue: QueueConfig = QueueConfig(min_delay_ms=400, max_random_delay_ms=1000)
    duplicate_tolerance_percent: float = 0.2


class TasksConfig(BaseModel):
    funding_rate: FundingRateTaskConfig = FundingRateTaskConfig()
    long_short_ratio: LongShortRatioTaskConfig = LongShortRatioTaskConfig()
    open_interest: OpenInterestTaskConfig = OpenInterestTaskConfig()
    fluctuation: FluctuationTaskConfig = FluctuationTaskConfig()
    announcement: AnnouncementTaskConfig = AnnouncementTaskConfig(interval_seconds=300)
    market_cap_ratio: MarketCapRatioTaskConfig = MarketCapRatioTaskConfig()


class Config(BaseModel):
    telegram: TelegramConfig
    storage: StorageConfig = StorageConfig()
    http: HttpConfig = HttpConfig()
    thresholds: ThresholdsConfig = ThresholdsConfig()
    tasks: TasksConfig = TasksConfig()
    log_level: str = "INFO"


def load_config(path: Path) -> Config:
    with open(path) as f:
        data = yaml.safe_load(f)
    return Config(**data)


# ---- 每个标的的监控配置（存于键值存储，运维可随时修改） ----


class MonitorConfig(BaseModel):
    symbol: str
    display_name: str | None = None
    category: str = "linear"

    @property
    def label(self) -> str:
        return self.display_name or self.symbol


class FundingRateMonitor(MonitorConfig):
    threshold: float | None = None
    window_minutes: int | None = None
    # 设为 null 关闭对应触发条件
    volatility_multiplier: float | None = 1.5
    direction_change_multiplier: float | None = 0.5


class ChangeRateMonitor(MonitorConfig):
    """多空比 / 持仓量：百分比变化阈值"""

    change_threshold_percent: float | None = None


class FluctuationMonitor(MonitorConfig):
    price_change_threshold: float = 3.0
    significant_change_threshold: float = 10.0


class MarketCapRatioMonitor(MonitorConfig):
    cg_id: str
    ratio_threshold_percent: float = 0
    change_threshold_percent: float = 3
    ratio_overheated_percent: float = 1.2
    ratio_elevated_percent: float = 0.8
    change_surge_up_percent: float = 5
    change_surge_down_percent: float = -5


M = TypeVar("M", bound=MonitorConfig)


def parse_monitors(raw: Any, model: type[M]) -> list[M]:
    """解析存储中的监控列表；字符串视为只有 symbol 的配置，非法项跳过"""
    if not isinstance(raw, list):
        return []
    monitors: list[M] = []
    for entry in raw:
        data = {"symbol": entry} if isinstance(entry, str) else entry
        if not isinstance(data, dict):
            logger.warning(f"Skip monitor entry of type {type(entry).__name__}")
            continue
        try:
            monitors.append(model(**data))
        except ValidationError as e:
            logger.warning(f"Skip invalid monitor entry {entry!r}: {e.error_count()} errors")
    return monitors
