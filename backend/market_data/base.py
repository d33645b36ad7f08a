"""
Provider interface and shared HTTP kline machinery.

KlineHttpSource owns status classification, retry with backoff, the
per-attempt timeout and throttling between pages. Concrete sources only
build request parameters, parse payloads and decide how to paginate.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from candles import Candle
from errors import (
    ProviderBlocked,
    ProviderClientError,
    ProviderError,
    ProviderRateLimited,
    ProviderTransient,
)

logger = logging.getLogger(__name__)

BACKOFF_STEPS_SECONDS = (1.0, 2.0, 4.0, 8.0, 16.0, 30.0)
MAX_RETRIES = 5
REQUEST_TIMEOUT_SECONDS = 15.0
THROTTLE_SECONDS = 0.25


class MarketDataSource(ABC):
    """A source of historical candles for one exchange."""

    name = "unknown"

    @abstractmethod
    async def fetch_candles(self, symbol: str, timeframe: str, start_ms: int, end_ms: int) -> List[Candle]:
        """
        Fetch candles with ts in [start_ms, end_ms).

        Raises:
            ProviderError: On a failure the caller should report as a gap
        """


def classify_status(response: httpx.Response, provider: str):
    """
    Raise the provider error matching an HTTP error status.

    Raises:
        ProviderRateLimited: 429
        ProviderBlocked: 451
        ProviderClientError: any other 4xx
        ProviderTransient: 5xx
    """
    status = response.status_code
    if status < 400:
        return
    if status == 429:
        raise ProviderRateLimited(f"{provider} rate limited (429)", provider, status)
    if status == 451:
        raise ProviderBlocked(f"{provider} blocked (451): access restricted from this region", provider, status)
    if 400 <= status < 500:
        raise ProviderClientError(f"{provider} API error: {status} {response.reason_phrase}", provider, status)
    raise ProviderTransient(f"{provider} server error: {status} {response.reason_phrase}", provider, status)


class KlineHttpSource(MarketDataSource):
    """
    Base class for paginated REST kline providers.

    Args:
        client: Shared httpx.AsyncClient; a short-lived one is created per
            fetch when omitted
        sleep: Awaitable sleep used for backoff and throttling
        timeout_seconds: Hard timeout for a single HTTP attempt
        throttle_seconds: Pause between consecutive pages
        max_retries: Retries after the first attempt for 429/5xx/network errors
        backoff_steps: Backoff schedule; the last step repeats
    """

    page_limit = 1000

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
        throttle_seconds: float = THROTTLE_SECONDS,
        max_retries: int = MAX_RETRIES,
        backoff_steps: Sequence[float] = BACKOFF_STEPS_SECONDS,
    ):
        self._client = client
        self._sleep = sleep
        self.timeout_seconds = timeout_seconds
        self.throttle_seconds = throttle_seconds
        self.max_retries = max_retries
        self.backoff_steps = tuple(backoff_steps)

    async def fetch_candles(self, symbol: str, timeframe: str, start_ms: int, end_ms: int) -> List[Candle]:
        if start_ms >= end_ms:
            return []
        if self._client is not None:
            return await self._paginate(self._client, symbol, timeframe, start_ms, end_ms)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await self._paginate(client, symbol, timeframe, start_ms, end_ms)

    @abstractmethod
    async def _paginate(
        self,
        client: httpx.AsyncClient,
        symbol: str,
        timeframe: str,
        start_ms: int,
        end_ms: int,
    ) -> List[Candle]:
        """Walk pages of the provider API and return candles in range."""

    def backoff_for(self, attempt: int) -> float:
        return self.backoff_steps[min(attempt, len(self.backoff_steps) - 1)]

    async def throttle(self):
        if self.throttle_seconds > 0:
            await self._sleep(self.throttle_seconds)

    async def get_json(self, client: httpx.AsyncClient, url: str, params: Dict[str, Any]) -> Any:
        """
        GET a JSON document with retry.

        429, 5xx and network failures are retried with backoff up to
        max_retries; anything else raises immediately.
        """
        last_error: Optional[ProviderError] = None

        for attempt in range(self.max_retries + 1):
            try:
                response = await client.get(url, params=params, timeout=self.timeout_seconds)
                classify_status(response, self.name)
                try:
                    return response.json()
                except ValueError as e:
                    raise ProviderClientError(f"{self.name} returned malformed JSON: {e}", self.name, response.status_code)
            except (ProviderRateLimited, ProviderTransient) as e:
                last_error = e
            except httpx.TransportError as e:
                last_error = ProviderTransient(f"{self.name} network error: {e!r}", self.name)

            if attempt < self.max_retries:
                delay = self.backoff_for(attempt)
                logger.warning(
                    f"{self.name} request failed ({last_error}); "
                    f"retry {attempt + 1}/{self.max_retries} in {delay:.2f}s"
                )
                await self._sleep(delay)

        logger.error(f"{self.name} request failed after {self.max_retries + 1} attempts: {last_error}")
        raise last_error
