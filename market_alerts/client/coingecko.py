from dataclasses import dataclass, field

import aiohttp

from market_alerts.client.http import RetryOptions, fetch_with_retry
from market_alerts.exceptions import UpstreamError


@dataclass
class CoinGeckoClient:
    session: aiohttp.ClientSession
    base_url: str = "https://api.coingecko.com"
    retry: RetryOptions = field(default_factory=lambda: RetryOptions(retries=1))

    async def get_market_caps(self, coin_ids: list[str]) -> dict[str, float]:
        """Return ``{coin_id: usd_market_cap}`` for ids with a positive market cap."""
        ids = sorted({c for c in coin_ids if c})
        if not ids:
            return {}

        response = await fetch_with_retry(
            self.session,
            f"{self.base_url}/api/v3/simple/price",
            params={"ids": ",".join(ids), "vs_currencies": "usd", "include_market_cap": "true"},
            options=self.retry,
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise UpstreamError(f"Unexpected payload from {response.url}", status=response.status)

        caps: dict[str, float] = {}
        for coin_id in ids:
            entry = data.get(coin_id)
            if not isinstance(entry, dict):
                continue
            mc = entry.get("usd_market_cap")
            if isinstance(mc, int | float) and mc > 0:
                caps[coin_id] = float(mc)
        return caps
