"""带超时、指数退避与抖动的 HTTP 重试封装"""

import asyncio
import json
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from market_alerts.exceptions import RetryExhaustedError, UpstreamError

logger = logging.getLogger(__name__)


@dataclass
class FetchResponse:
    """Fully read response body, detached from the aiohttp connection."""

    url: str
    status: int
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        try:
            return json.loads(self.body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise UpstreamError(f"Malformed JSON from {self.url}: {e}", status=self.status) from e

    def raise_for_status(self) -> None:
        if not self.ok:
            raise UpstreamError(f"HTTP {self.status} from {self.url}", status=self.status)


RetryPredicate = Callable[[FetchResponse | None, BaseException | None], bool]


def default_retry_predicate(response: FetchResponse | None, error: BaseException | None) -> bool:
    """网络错误、5xx、429 重试；其余 4xx 直接返回"""
    if error is not None or response is None:
        return True
    return response.status >= 500 or response.status == 429


@dataclass
class RetryOptions:
    retries: int = 2
    timeout_ms: int = 8000
    base_delay_ms: int = 400
    max_delay_ms: int = 4000
    jitter: bool = True
    retry_predicate: RetryPredicate = default_retry_predicate


def backoff_delay_ms(attempt: int, options: RetryOptions) -> float:
    delay = min(options.base_delay_ms * 2**attempt, options.max_delay_ms)
    if options.jitter:
        delay *= random.uniform(0.5, 1.0)
    return delay


async def _attempt(
    session: aiohttp.ClientSession,
    method: str,
    url: str,
    params: dict[str, Any] | None,
    headers: dict[str, str] | None,
    json_body: Any,
) -> FetchResponse:
    response = await session.request(method, url, params=params, headers=headers, json=json_body)
    try:
        body = await response.read()
        return FetchResponse(
            url=url,
            status=response.status,
            body=body,
            headers=dict(response.headers),
        )
    finally:
        response.release()


async def fetch_with_retry(
    session: aiohttp.ClientSession,
    url: str,
    *,
    method: str = "GET",
    params: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    json_body: Any = None,
    options: RetryOptions | None = None,
) -> FetchResponse:
    """Perform one logical request with up to ``retries + 1`` attempts.

    Each attempt is bounded by ``timeout_ms``; a timeout cancels the attempt and
    counts as a retryable error. A response the predicate does not want retried
    is returned as-is, even when it is a 4xx, so the caller decides what a
    terminal status means. When the attempts run out, RetryExhaustedError
    carries the last error or status.
    """
    opts = options or RetryOptions()
    last_error: BaseException | None = None
    last_status: int | None = None

    for attempt in range(opts.retries + 1):
        try:
            response = await asyncio.wait_for(
                _attempt(session, method, url, params, headers, json_body),
                timeout=opts.timeout_ms / 1000,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            last_error = e
            last_status = None
            if not opts.retry_predicate(None, e):
                raise
            logger.warning(f"Request {method} {url} attempt {attempt + 1} failed: {e!r}")
        else:
            if not opts.retry_predicate(response, None):
                return response
            last_error = None
            last_status = response.status
            logger.warning(f"Request {method} {url} attempt {attempt + 1} got HTTP {response.status}")

        if attempt == opts.retries:
            break
        await asyncio.sleep(backoff_delay_ms(attempt, opts) / 1000)

    raise RetryExhaustedError(url, opts.retries + 1, last_error=last_error, last_status=last_status)
