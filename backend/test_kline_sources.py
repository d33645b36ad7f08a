"""
Kline provider tests against httpx.MockTransport.

Covers:
- Binance forward pagination and range filtering
- Retry with backoff on 429 / 5xx, exhaustion
- 451 and other 4xx fail immediately
- CryptoCompare backward pagination, symbol split and error payloads
"""

import asyncio

import httpx
import pytest

from errors import (
    GAP_PROVIDER_BLOCKED,
    ProviderBlocked,
    ProviderClientError,
    ProviderTransient,
)
from market_data import BinanceSpotSource, CryptoCompareSource, build_source
from market_data.cryptocompare import parse_histo, split_symbol

MINUTE = 60_000


def _kline(ts, price=100.0):
    return [ts, str(price), str(price + 1), str(price - 1), str(price), "12.5", ts + MINUTE - 1]


class Recorder:
    def __init__(self):
        self.sleeps = []

    async def sleep(self, seconds):
        self.sleeps.append(seconds)


def _binance(handler, recorder=None, **kwargs):
    recorder = recorder or Recorder()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return BinanceSpotSource(client=client, sleep=recorder.sleep, **kwargs), client


async def _fetch(source, client, *args):
    try:
        return await source.fetch_candles(*args)
    finally:
        await client.aclose()


# ============================================================================
# Binance
# ============================================================================

class TestBinanceSource:

    def test_parses_and_filters_range(self):
        def handler(request):
            assert request.url.params["symbol"] == "BTCUSDT"
            assert request.url.params["interval"] == "1m"
            return httpx.Response(200, json=[_kline(ts) for ts in range(0, 4 * MINUTE, MINUTE)])

        source, client = _binance(handler)
        candles = asyncio.run(_fetch(source, client, "btc/usdt", "1m", MINUTE, 3 * MINUTE))

        assert [c.ts for c in candles] == [MINUTE, 2 * MINUTE]
        assert candles[0].open == 100.0
        assert candles[0].high == 101.0
        assert candles[0].volume == 12.5

    def test_paginates_forward(self):
        starts = []

        def handler(request):
            start = int(request.url.params["startTime"])
            limit = int(request.url.params["limit"])
            end = int(request.url.params["endTime"]) + 1
            starts.append(start)
            bars = [_kline(ts) for ts in range(start, min(end, start + limit * MINUTE), MINUTE)]
            return httpx.Response(200, json=bars)

        recorder = Recorder()
        source, client = _binance(handler, recorder)
        source.page_limit = 3
        candles = asyncio.run(_fetch(source, client, "BTCUSDT", "1m", 0, 7 * MINUTE))

        assert [c.ts for c in candles] == [i * MINUTE for i in range(7)]
        assert starts == [0, 3 * MINUTE, 6 * MINUTE]
        # Throttled between pages only
        assert recorder.sleeps == [source.throttle_seconds, source.throttle_seconds]

    def test_retries_rate_limit_then_succeeds(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(429)
            return httpx.Response(200, json=[_kline(0)])

        recorder = Recorder()
        source, client = _binance(handler, recorder)
        candles = asyncio.run(_fetch(source, client, "BTCUSDT", "1m", 0, MINUTE))

        assert len(candles) == 1
        assert calls["n"] == 2
        assert recorder.sleeps == [1.0]

    def test_server_errors_exhaust_retries(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            return httpx.Response(503)

        recorder = Recorder()
        source, client = _binance(handler, recorder, max_retries=3)
        with pytest.raises(ProviderTransient):
            asyncio.run(_fetch(source, client, "BTCUSDT", "1m", 0, MINUTE))

        assert calls["n"] == 4
        assert recorder.sleeps == [1.0, 2.0, 4.0]

    def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        source, client = _binance(handler, max_retries=1)
        with pytest.raises(ProviderTransient):
            asyncio.run(_fetch(source, client, "BTCUSDT", "1m", 0, MINUTE))

    def test_451_is_blocked_without_retry(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            return httpx.Response(451)

        source, client = _binance(handler)
        with pytest.raises(ProviderBlocked) as exc_info:
            asyncio.run(_fetch(source, client, "BTCUSDT", "1m", 0, MINUTE))

        assert calls["n"] == 1
        assert exc_info.value.gap_reason == GAP_PROVIDER_BLOCKED
        assert exc_info.value.retryable is False

    def test_client_error_without_retry(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            return httpx.Response(400, json={"msg": "Invalid symbol"})

        source, client = _binance(handler)
        with pytest.raises(ProviderClientError):
            asyncio.run(_fetch(source, client, "NOPE", "1m", 0, MINUTE))
        assert calls["n"] == 1

    def test_empty_range_makes_no_request(self):
        def handler(request):
            raise AssertionError("unexpected request")

        source, client = _binance(handler)
        assert asyncio.run(_fetch(source, client, "BTCUSDT", "1m", MINUTE, MINUTE)) == []


# ============================================================================
# CryptoCompare
# ============================================================================

def _histo_row(ts_ms, price=50.0):
    return {"time": ts_ms // 1000, "open": price, "high": price + 1, "low": price - 1, "close": price, "volumefrom": 3.0}


class TestCryptoCompareSource:

    def test_split_symbol(self):
        assert split_symbol("BTCUSDT") == ("BTC", "USDT")
        assert split_symbol("eth/usd") == ("ETH", "USD")
        assert split_symbol("XYZ") == ("XYZ", "USD")

    def test_error_payload_raises_client_error(self):
        with pytest.raises(ProviderClientError):
            parse_histo({"Response": "Error", "Message": "rate limit"})

    def test_zero_rows_skipped(self):
        payload = {"Data": {"Data": [
            {"time": 0, "open": 0, "high": 0, "low": 0, "close": 0, "volumefrom": 0},
            _histo_row(MINUTE),
        ]}}
        assert [c.ts for c in parse_histo(payload)] == [MINUTE]

    def test_paginates_backward(self):
        requests = []

        def handler(request):
            params = request.url.params
            requests.append(dict(params))
            to_ms = (int(params["toTs"]) * 1000 // MINUTE) * MINUTE
            limit = int(params["limit"])
            # Rows ending at to_ms inclusive, oldest first
            first = to_ms - (limit - 1) * MINUTE
            rows = [_histo_row(ts) for ts in range(first, to_ms + 1, MINUTE)]
            return httpx.Response(200, json={"Response": "Success", "Data": {"Data": rows}})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        recorder = Recorder()
        source = CryptoCompareSource(api_key="k", client=client, sleep=recorder.sleep)
        source.page_limit = 4

        start = 100 * MINUTE
        end = 110 * MINUTE
        candles = asyncio.run(_fetch(source, client, "BTCUSDT", "1m", start, end))

        assert [c.ts for c in candles] == list(range(start, end, MINUTE))
        assert requests[0]["fsym"] == "BTC"
        assert requests[0]["tsym"] == "USDT"
        assert requests[0]["api_key"] == "k"
        assert "aggregate" not in requests[0]
        assert len(requests) == 3

    def test_aggregate_for_fifteen_minutes(self):
        seen = {}

        def handler(request):
            seen.update(dict(request.url.params))
            seen["path"] = request.url.path
            return httpx.Response(200, json={"Data": {"Data": []}})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        source = CryptoCompareSource(client=client, sleep=Recorder().sleep)
        asyncio.run(_fetch(source, client, "ETHUSDT", "15m", 0, 15 * MINUTE * 10))

        assert seen["path"].endswith("/v2/histominute")
        assert seen["aggregate"] == "15"
        assert "api_key" not in seen


class TestBuildSource:

    def test_known_exchanges(self):
        assert build_source("binance").name == "binance_spot"
        assert build_source("binance_spot").name == "binance_spot"
        assert build_source("cryptocompare").name == "cryptocompare"
        assert build_source("yahoo").name == "yahoo"

    def test_unknown_exchange(self):
        with pytest.raises(ValueError):
            build_source("kraken")
