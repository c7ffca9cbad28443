"""Bybit V5 公共行情 API 客户端"""

from dataclasses import dataclass, field
from typing import Any

import aiohttp

from market_alerts.client.http import RetryOptions, fetch_with_retry
from market_alerts.client.models import Announcement, Kline, OpenInterest, Ticker
from market_alerts.exceptions import UpstreamError


def _float(value: Any, default: float = 0.0) -> float:
    if value in (None, ""):
        return default
    return float(value)


@dataclass
class BybitClient:
    """Bybit V5 API 客户端"""

    session: aiohttp.ClientSession
    base_url: str = "https://api.bybit.com"
    retry: RetryOptions = field(default_factory=RetryOptions)

    async def _request(self, endpoint: str, params: dict[str, Any]) -> Any:
        url = f"{self.base_url}{endpoint}"
        response = await fetch_with_retry(
            self.session,
            url,
            params=params,
            headers={"Content-Type": "application/json"},
            options=self.retry,
        )
        response.raise_for_status()

        data = response.json()
        if not isinstance(data, dict) or "retCode" not in data:
            raise UpstreamError(f"Unexpected payload from {endpoint}")
        if data["retCode"] != 0:
            raise UpstreamError(f"Bybit API error {data['retCode']}: {data.get('retMsg', '')}")
        return data.get("result") or {}

    @staticmethod
    def _require_list(result: dict[str, Any], what: str) -> list[Any]:
        items = result.get("list") or []
        if not items:
            raise UpstreamError(f"No {what} data available")
        return items

    async def get_ticker(self, symbol: str, category: str = "linear") -> Ticker:
        """获取合约行情（含资金费率与持仓价值）"""
        result = await self._request("/v5/market/tickers", {"category": category, "symbol": symbol})
        t = self._require_list(result, "ticker")[0]
        return Ticker(
            symbol=t["symbol"],
            last_price=_float(t.get("lastPrice")),
            mark_price=_float(t.get("markPrice")),
            funding_rate=_float(t.get("fundingRate")),
            next_funding_time=int(t.get("nextFundingTime") or 0),
            open_interest=_float(t.get("openInterest")),
            open_interest_value=_float(t.get("openInterestValue")),
            volume_24h=_float(t.get("volume24h")),
        )

    async def get_klines(
        self,
        symbol: str,
        interval: str = "1",
        limit: int = 2,
        category: str = "linear",
    ) -> list[Kline]:
        """获取 K 线，按时间倒序（最新在前）"""
        result = await self._request(
            "/v5/market/kline",
            {"category": category, "symbol": symbol, "interval": interval, "limit": limit},
        )
        rows = self._require_list(result, "kline")
        klines = [
            Kline(
                start_time=int(k[0]),
                open=float(k[1]),
                high=float(k[2]),
                low=float(k[3]),
                close=float(k[4]),
                volume=float(k[5]),
                turnover=float(k[6]),
            )
            for k in rows
        ]
        return sorted(klines, key=lambda k: k.start_time, reverse=True)

    async def get_open_interest(
        self,
        symbol: str,
        interval_time: str = "5min",
        limit: int = 2,
        category: str = "linear",
    ) -> list[OpenInterest]:
        """获取持仓量历史，按时间倒序（最新在前）"""
        result = await self._request(
            "/v5/market/open-interest",
            {"category": category, "symbol": symbol, "intervalTime": interval_time, "limit": limit},
        )
        rows = self._require_list(result, "open interest")
        items = [
            OpenInterest(
                symbol=result.get("symbol", symbol),
                open_interest=float(d["openInterest"]),
                timestamp=int(d["timestamp"]),
            )
            for d in rows
        ]
        return sorted(items, key=lambda d: d.timestamp, reverse=True)

    async def get_announcements(
        self,
        locale: str = "zh-TW",
        announcement_type: str = "new_crypto",
        limit: int = 50,
    ) -> list[Announcement]:
        result = await self._request(
            "/v5/announcements/index",
            {"locale": locale, "type": announcement_type, "limit": limit},
        )
        return [
            Announcement(
                title=a.get("title", ""),
                description=a.get("description") or "",
                type_title=(a.get("type") or {}).get("title", ""),
                url=a["url"],
                publish_time=int(a["publishTime"]),
                tags=list(a.get("tags") or []),
            )
            for a in result.get("list") or []
        ]
