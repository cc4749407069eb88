"""Unit tests for the market data client, price cache and report stores."""

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock

import aiohttp
import pytest

from data.market_data import Candle, MarketDataClient, PriceCache, Ticker24h, candles_to_dataframe
from data.report_store import LocalReportStore, MemoryReportStore, report_key
from utils.helpers import MarketDataError, StoreError


class FakeResponse:
    def __init__(self, status, body):
        self.status = status
        self._body = body

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Подмена aiohttp.ClientSession: ответы по endpoint"""

    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def get(self, url, params=None):
        self.calls.append((url, params))
        for endpoint, response in self.responses.items():
            if url.endswith(endpoint):
                if isinstance(response, Exception):
                    raise response
                return response
        raise AssertionError(f"unexpected url {url}")


KLINES = [
    [1704067200000, '100.0', '101.0', '99.0', '100.5', '12.5', 1704067259999],
    [1704067260000, '100.5', '102.0', '100.0', '101.5', '8.0', 1704067319999],
]
TICKER = {'lastPrice': '101.5', 'volume': '1234.5', 'priceChangePercent': '-2.5'}


class TestParsing:
    def test_candle_from_kline(self):
        candle = Candle.from_kline(KLINES[0])
        assert candle.open_time == 1704067200000
        assert candle.close == 100.5
        assert candle.volume == 12.5

    def test_short_kline_is_rejected(self):
        with pytest.raises(MarketDataError):
            Candle.from_kline([1, 2, 3])

    def test_ticker_from_api(self):
        ticker = Ticker24h.from_api(TICKER)
        assert ticker == Ticker24h(last_price=101.5, volume=1234.5, price_change_percent=-2.5)

    def test_ticker_missing_fields_default_to_zero(self):
        assert Ticker24h.from_api({}).last_price == 0.0

    def test_candles_to_dataframe(self):
        candles = [Candle.from_kline(row) for row in reversed(KLINES)]
        df = candles_to_dataframe(candles)

        assert list(df['close']) == [100.5, 101.5]
        assert str(df.index.tz) == 'UTC'
        assert df.index[0].hour == 0

    def test_empty_dataframe(self):
        assert candles_to_dataframe([]).empty


class TestPriceCache:
    def test_fresh_value_then_expiry(self, now):
        cache = PriceCache(ttl_seconds=60)
        assert cache.get(now) is None

        cache.set(100.0, now)
        assert cache.get(now + timedelta(seconds=59)) == 100.0
        assert cache.get(now + timedelta(seconds=60)) is None
        assert cache.stale_value() == 100.0

    def test_invalidate(self, now):
        cache = PriceCache()
        cache.set(1.0, now)
        cache.invalidate()
        assert cache.get(now) is None
        assert cache.stale_value() is None


class TestClient:
    def test_fetch_snapshot_inputs(self, settings):
        session = FakeSession({
            '/api/v3/klines': FakeResponse(200, json.dumps(KLINES)),
            '/api/v3/ticker/24hr': FakeResponse(200, json.dumps(TICKER)),
        })
        client = MarketDataClient(settings=settings, session=session)

        candles, ticker = asyncio.run(client.fetch_snapshot_inputs())

        assert [c.close for c in candles] == [100.5, 101.5]
        assert ticker.last_price == 101.5
        assert client.stats['successful_requests'] == 2
        klines_params = next(params for url, params in session.calls if url.endswith('klines'))
        assert klines_params['symbol'] == settings.MARKET_DATA_SYMBOL

    def test_non_2xx_is_market_data_error(self, settings):
        session = FakeSession({'/api/v3/ticker/24hr': FakeResponse(503, 'unavailable')})
        client = MarketDataClient(settings=settings, session=session)

        with pytest.raises(MarketDataError) as excinfo:
            asyncio.run(client.fetch_ticker())

        assert excinfo.value.status_code == 503
        assert client.stats['failed_requests'] == 1

    def test_network_error_is_market_data_error(self, settings):
        session = FakeSession({'/api/v3/klines': aiohttp.ClientConnectionError('reset')})
        client = MarketDataClient(settings=settings, session=session)

        with pytest.raises(MarketDataError):
            asyncio.run(client.fetch_candles())

    def test_invalid_json_is_market_data_error(self, settings):
        session = FakeSession({'/api/v3/ticker/24hr': FakeResponse(200, '<html>')})
        client = MarketDataClient(settings=settings, session=session)

        with pytest.raises(MarketDataError):
            asyncio.run(client.fetch_ticker())


class TestFetchLastPrice:
    def test_fresh_cache_skips_request(self, settings, now):
        client = MarketDataClient(settings=settings, session=FakeSession({}))
        client.fetch_ticker = AsyncMock()
        cache = PriceCache()
        cache.set(42.0, now)

        assert asyncio.run(client.fetch_last_price(cache, now=now)) == 42.0
        client.fetch_ticker.assert_not_called()

    def test_refreshes_expired_cache(self, settings, now):
        client = MarketDataClient(settings=settings, session=FakeSession({}))
        client.fetch_ticker = AsyncMock(return_value=Ticker24h(50.0, 1.0, 0.0))
        cache = PriceCache(ttl_seconds=10)
        cache.set(42.0, now)

        later = now + timedelta(seconds=11)
        assert asyncio.run(client.fetch_last_price(cache, now=later)) == 50.0
        assert cache.get(later) == 50.0

    def test_error_falls_back_to_stale_value(self, settings, now):
        client = MarketDataClient(settings=settings, session=FakeSession({}))
        client.fetch_ticker = AsyncMock(side_effect=MarketDataError('down', status_code=500))
        cache = PriceCache(ttl_seconds=10)
        cache.set(42.0, now)

        assert asyncio.run(client.fetch_last_price(cache, now=now + timedelta(minutes=5))) == 42.0
        assert client.stats['cache_fallbacks'] == 1

    def test_error_without_cached_value_propagates(self, settings, now):
        client = MarketDataClient(settings=settings, session=FakeSession({}))
        client.fetch_ticker = AsyncMock(side_effect=MarketDataError('down'))

        with pytest.raises(MarketDataError):
            asyncio.run(client.fetch_last_price(PriceCache(), now=now))


class TestReportStores:
    def test_report_key(self):
        assert report_key('u1', 'b1', 'bt1') == 'backtests/u1/b1/bt1.json'

    def test_memory_report_store(self):
        async def scenario():
            store = MemoryReportStore()
            await store.put_json('k', {'a': 1})
            loaded = await store.get_json('k')
            await store.delete('k')
            await store.delete('k')
            return loaded, await store.get_json('k')

        assert asyncio.run(scenario()) == ({'a': 1}, None)

    def test_local_report_store(self, settings, tmp_path):
        store = LocalReportStore(root=str(tmp_path), settings=settings)
        key = report_key('u1', 'b1', 'bt1')

        async def scenario():
            await store.put_json(key, {'summary': {'netPnl': 1.5}})
            loaded = await store.get_json(key)
            await store.delete(key)
            return loaded, await store.get_json(key)

        loaded, missing = asyncio.run(scenario())
        assert loaded == {'summary': {'netPnl': 1.5}}
        assert missing is None
        assert (tmp_path / 'backtests' / 'u1' / 'b1').is_dir()

    def test_local_report_store_rejects_escaping_keys(self, settings, tmp_path):
        store = LocalReportStore(root=str(tmp_path / 'reports'), settings=settings)
        with pytest.raises(StoreError):
            asyncio.run(store.put_json('../outside.json', {}))
