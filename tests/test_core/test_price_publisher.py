"""Tests for the per-tick indicator publisher."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import make_candles
from core.price_publisher import PricePublisher
from data.market_data import Ticker24h
from services.notification_service import EventType
from utils.helpers import MarketDataError, to_iso


@pytest.fixture
def client(now):
    candles = make_candles([100.0 + i * 0.5 for i in range(60)], now)
    mock = MagicMock()
    mock.fetch_snapshot_inputs = AsyncMock(return_value=(candles, Ticker24h(129.5, 5000.0, 3.2)))
    return mock


class TestPublishOnce:
    def test_writes_history_and_publishes_event(self, client, store, publisher, settings, now):
        received = []
        publisher.subscribe(EventType.INDICATORS_UPDATED, received.append)
        price_publisher = PricePublisher(client, store, publisher, settings)

        async def scenario():
            snapshot = await price_publisher.publish_once(now)
            record = await store.get('price_history', {'pair': settings.MARKET_DATA_PAIR, 'timestamp': to_iso(now)})
            return snapshot, record

        snapshot, record = asyncio.run(scenario())

        client.fetch_snapshot_inputs.assert_awaited_once_with(settings.MARKET_DATA_SYMBOL)
        assert snapshot.price == 129.5
        assert record['price'] == 129.5
        assert record['volume_24h'] == 5000.0
        assert record['indicators']['rsi_14'] == snapshot.rsi_14
        assert record['ttl'] > int(now.timestamp())

        assert len(received) == 1
        assert received[0].detail['pair'] == settings.MARKET_DATA_PAIR
        assert received[0].detail['timestamp'] == to_iso(now)
        assert price_publisher.stats['published'] == 1

    def test_market_data_error_propagates_without_writing(self, client, store, publisher, settings, now):
        client.fetch_snapshot_inputs.side_effect = MarketDataError("exchange down", status_code=502)
        price_publisher = PricePublisher(client, store, publisher, settings)

        with pytest.raises(MarketDataError):
            asyncio.run(price_publisher.publish_once(now))

        assert store.count('price_history') == 0
        assert publisher.recent() == []
        assert price_publisher.stats['failed'] == 1
