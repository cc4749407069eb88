"""Tests for bot persistence and lifecycle events."""

import asyncio
from datetime import timedelta

import pytest

from conftest import make_bot
from services.bot_service import BotService
from services.notification_service import EventType
from utils.helpers import ValidationError, to_iso


@pytest.fixture
def service(store, publisher, settings):
    return BotService(store, publisher, settings)


@pytest.fixture
def bot_record(price_rules):
    return make_bot(buy_query=price_rules[0], sell_query=price_rules[1]).to_record()


class TestSaveBot:
    def test_create_then_update(self, service, store, publisher, bot_record, now):
        async def scenario():
            await service.save_bot(dict(bot_record), now)
            updated = dict(bot_record, name='Renamed')
            await service.save_bot(updated, now + timedelta(hours=1))
            return await store.get('bots', {'sub': 'user-1', 'botId': 'bot-1'})

        stored = asyncio.run(scenario())

        assert stored['name'] == 'Renamed'
        assert stored['createdAt'] == to_iso(now)
        assert stored['updatedAt'] == to_iso(now + timedelta(hours=1))
        assert [e.type for e in publisher.recent()] == [EventType.BOT_CREATED, EventType.BOT_UPDATED]
        assert publisher.recent()[-1].detail == {
            'sub': 'user-1', 'botId': 'bot-1', 'pair': 'BTC/USDT', 'status': 'active',
        }
        assert (service.stats['created'], service.stats['updated']) == (1, 1)

    def test_execution_state_survives_update(self, service, store, bot_record, now):
        async def scenario():
            await store.put('bots', dict(bot_record, lastAction='buy', entryPrice=100.0))
            # Клиент не может подменить состояние исполнения
            await service.save_bot(dict(bot_record, lastAction='sell'), now)
            return await store.get('bots', {'sub': 'user-1', 'botId': 'bot-1'})

        stored = asyncio.run(scenario())

        assert (stored['lastAction'], stored['entryPrice']) == ('buy', 100.0)

    def test_new_bot_ignores_client_state(self, service, store, bot_record, now):
        async def scenario():
            await service.save_bot(dict(bot_record, entryPrice=5.0), now)
            return await store.get('bots', {'sub': 'user-1', 'botId': 'bot-1'})

        assert 'entryPrice' not in asyncio.run(scenario())

    def test_invalid_bot_is_rejected(self, service, store, publisher, now):
        with pytest.raises(ValidationError, match='neither buy nor sell'):
            asyncio.run(service.save_bot(make_bot().to_record(), now))

        assert store.count('bots') == 0
        assert publisher.recent() == []
        assert service.stats['rejected'] == 1

    def test_record_without_id_is_rejected(self, service):
        with pytest.raises(ValidationError, match='missing'):
            asyncio.run(service.save_bot({'sub': 'user-1'}))


class TestDeleteBot:
    def test_removes_trades_and_snapshots(self, service, store, publisher, bot_record, now):
        async def scenario():
            await store.put('bots', bot_record)
            for minute in range(3):
                timestamp = to_iso(now + timedelta(minutes=minute))
                await store.put('trades', {'botId': 'bot-1', 'timestamp': timestamp, 'action': 'buy', 'price': 1})
                await store.put('bot_performance', {'botId': 'bot-1', 'timestamp': timestamp})
            await store.put('trades', {'botId': 'bot-2', 'timestamp': to_iso(now), 'action': 'buy', 'price': 1})
            return await service.delete_bot('user-1', 'bot-1')

        assert asyncio.run(scenario()) is True
        assert store.count('bots') == 0
        assert store.count('bot_performance') == 0
        assert store.count('trades') == 1
        deleted = publisher.recent(EventType.BOT_DELETED)
        assert [e.detail['botId'] for e in deleted] == ['bot-1']

    def test_missing_bot(self, service, publisher):
        assert asyncio.run(service.delete_bot('user-1', 'ghost')) is False
        assert publisher.recent() == []
