# tests/client/test_bybit.py
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from market_alerts.client.bybit import BybitClient
from market_alerts.client.http import RetryOptions
from market_alerts.client.models import Kline, Ticker
from market_alerts.exceptions import UpstreamError


def mock_session(payload, status: int = 200):
    response = MagicMock()
    response.status = status
    response.headers = {}
    response.read = AsyncMock(return_value=json.dumps(payload).encode())
    response.release = MagicMock()

    session = MagicMock()
    session.request = AsyncMock(return_value=response)
    return session


def make_client(session) -> BybitClient:
    return BybitClient(session, retry=RetryOptions(retries=0, base_delay_ms=1))


async def test_get_ticker():
    session = mock_session(
        {
            "retCode": 0,
            "retMsg": "OK",
            "result": {
                "category": "linear",
                "list": [
                    {
                        "symbol": "BTCUSDT",
                        "lastPrice": "65000.5",
                        "markPrice": "65001",
                        "fundingRate": "0.0001",
                        "nextFundingTime": "1718000000000",
                        "openInterest": "50000",
                        "openInterestValue": "3250000000",
                        "volume24h": "12345",
                    }
                ],
            },
        }
    )
    client = make_client(session)

    ticker = await client.get_ticker("BTCUSDT")

    assert isinstance(ticker, Ticker)
    assert ticker.funding_rate == 0.0001
    assert ticker.next_funding_time == 1718000000000
    assert ticker.open_interest_value == 3250000000.0
    _, kwargs = session.request.call_args
    assert kwargs["params"] == {"category": "linear", "symbol": "BTCUSDT"}


async def test_get_klines_sorted_newest_first():
    session = mock_session(
        {
            "retCode": 0,
            "result": {
                "list": [
                    ["1000", "1", "2", "0.5", "1.5", "10", "15"],
                    ["2000", "1.5", "3", "1", "2.5", "20", "50"],
                ]
            },
        }
    )
    client = make_client(session)

    klines = await client.get_klines("BTCUSDT", limit=2)

    assert all(isinstance(k, Kline) for k in klines)
    assert [k.start_time for k in klines] == [2000, 1000]
    assert klines[0].close == 2.5


async def test_get_open_interest_sorted_newest_first():
    session = mock_session(
        {
            "retCode": 0,
            "result": {
                "symbol": "ETHUSDT",
                "list": [
                    {"openInterest": "100", "timestamp": "1000"},
                    {"openInterest": "110", "timestamp": "2000"},
                ],
            },
        }
    )
    client = make_client(session)

    items = await client.get_open_interest("ETHUSDT")

    assert [i.open_interest for i in items] == [110.0, 100.0]
    assert items[0].symbol == "ETHUSDT"


async def test_get_announcements():
    session = mock_session(
        {
            "retCode": 0,
            "result": {
                "total": 1,
                "list": [
                    {
                        "title": "New listing: ABC",
                        "description": "ABC perpetual",
                        "type": {"title": "New Listings", "key": "new_crypto"},
                        "tags": ["Derivatives"],
                        "url": "https://announcements.bybit.com/abc",
                        "publishTime": 1718000000000,
                    }
                ],
            },
        }
    )
    client = make_client(session)

    items = await client.get_announcements()

    assert len(items) == 1
    assert items[0].type_title == "New Listings"
    assert items[0].publish_time == 1718000000000


async def test_error_ret_code_raises():
    session = mock_session({"retCode": 10001, "retMsg": "params error", "result": {}})
    client = make_client(session)

    with pytest.raises(UpstreamError, match="params error"):
        await client.get_ticker("NOPE")


async def test_empty_list_raises():
    session = mock_session({"retCode": 0, "result": {"list": []}})
    client = make_client(session)

    with pytest.raises(UpstreamError, match="No ticker data"):
        await client.get_ticker("BTCUSDT")


async def test_http_error_raises_without_retry():
    session = mock_session({"retCode": 0}, status=403)
    client = BybitClient(session, retry=RetryOptions(retries=2, base_delay_ms=1))

    with pytest.raises(UpstreamError, match="HTTP 403"):
        await client.get_ticker("BTCUSDT")
    assert session.request.call_count == 1
