"""Binance Futures API 客户端"""

from dataclasses import dataclass, field
from typing import Any

import aiohttp

from market_alerts.client.http import RetryOptions, fetch_with_retry
from market_alerts.client.models import LongShortRatio
from market_alerts.exceptions import UpstreamError


class BinanceAPIError(UpstreamError):
    """Binance API 错误"""

    def __init__(self, code: int, message: str, status: int | None = None):
        self.code = code
        self.message = message
        super().__init__(message, status=status)


@dataclass
class BinanceClient:
    """Binance Futures API 客户端"""

    session: aiohttp.ClientSession
    base_url: str = "https://fapi.binance.com"
    retry: RetryOptions = field(default_factory=RetryOptions)

    async def _request(self, endpoint: str, params: dict[str, Any] | None = None) -> Any:
        url = f"{self.base_url}{endpoint}"
        response = await fetch_with_retry(self.session, url, params=params, options=self.retry)

        if response.status != 200:
            try:
                error_data = response.json()
            except UpstreamError:
                raise BinanceAPIError(
                    -1, response.body.decode(errors="replace"), response.status
                ) from None
            if isinstance(error_data, dict):
                raise BinanceAPIError(
                    error_data.get("code", -1), error_data.get("msg", str(error_data)), response.status
                )
            raise BinanceAPIError(-1, str(error_data), response.status)

        return response.json()

    async def get_top_long_short_account_ratio(
        self,
        symbol: str,
        period: str = "5m",
        limit: int = 2,
    ) -> list[LongShortRatio]:
        """获取大户账户多空比，按时间倒序（最新在前）"""
        data = await self._request(
            "/futures/data/topLongShortAccountRatio",
            {"symbol": symbol, "period": period, "limit": limit},
        )
        if not data:
            raise UpstreamError(f"No long/short ratio data for {symbol}")
        items = [
            LongShortRatio(
                symbol=d["symbol"],
                long_short_ratio=float(d["longShortRatio"]),
                long_account=float(d["longAccount"]),
                short_account=float(d["shortAccount"]),
                timestamp=int(d["timestamp"]),
            )
            for d in data
        ]
        return sorted(items, key=lambda d: d.timestamp, reverse=True)
