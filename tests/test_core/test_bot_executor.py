"""Tests for live bot execution on published indicator snapshots."""

import asyncio
from datetime import timedelta

import pytest

from conftest import make_bot
from core.bot_executor import BotExecutor
from services.notification_service import DeliveryStatus, EventType
from strategies.bot_config import BotStatus, StopLossConfig
from utils.helpers import to_iso
from utils.indicators import IndicatorSnapshot


@pytest.fixture
def executor(store, publisher, settings):
    executor = BotExecutor(store, publisher, settings)
    executor.attach()
    return executor


def publish(publisher, now, price, minute=0, pair='BTC/USDT'):
    return publisher.publish(EventType.INDICATORS_UPDATED, {
        'pair': pair,
        'timestamp': to_iso(now + timedelta(minutes=minute)),
        'indicators': IndicatorSnapshot(price=price, rsi_14=40.0).to_dict(),
    })


async def bot_record(store, bot_id='bot-1'):
    return await store.get('bots', {'sub': 'user-1', 'botId': bot_id})


class TestLiveExecution:
    def test_buy_is_recorded_with_state(self, executor, store, publisher, price_rules, now):
        buy_query, sell_query = price_rules

        async def scenario():
            await store.put('bots', make_bot(buy_query=buy_query, sell_query=sell_query).to_record())
            event = await publish(publisher, now, 100.0)
            return event, await store.query_all('trades', 'bot-1'), await bot_record(store)

        event, trades, record = asyncio.run(scenario())

        assert event.status == DeliveryStatus.DELIVERED
        assert len(trades) == 1
        assert trades[0]['action'] == 'buy'
        assert trades[0]['timestamp'] == to_iso(now)
        assert trades[0]['sub'] == 'user-1'
        assert trades[0]['indicators']['rsi_14'] == 40.0
        assert (record['lastAction'], record['entryPrice']) == ('buy', 100.0)
        assert executor.stats['trades_written'] == 1

    def test_once_and_wait_across_ticks(self, executor, store, publisher, price_rules, now):
        buy_query, sell_query = price_rules

        async def scenario():
            await store.put('bots', make_bot(buy_query=buy_query, sell_query=sell_query).to_record())
            for minute, price in enumerate([100.0, 99.0, 112.0, 115.0]):
                await publish(publisher, now, price, minute)
            return await store.query_all('trades', 'bot-1'), await bot_record(store)

        trades, record = asyncio.run(scenario())

        assert [(t['action'], t['price']) for t in trades] == [('buy', 100.0), ('sell', 112.0)]
        assert record['lastAction'] == 'sell'
        assert 'entryPrice' not in record

    def test_stop_loss_uses_persisted_entry_price(self, executor, store, publisher, price_rules, now):
        bot = make_bot(buy_query=price_rules[0], stop_loss=StopLossConfig(10))
        record = bot.to_record()
        record.update({'lastAction': 'buy', 'entryPrice': 100.0})

        async def scenario():
            await store.put('bots', record)
            await publish(publisher, now, 85.0)
            return await store.query_all('trades', 'bot-1')

        trades = asyncio.run(scenario())

        assert [(t['action'], t['trigger']) for t in trades] == [('sell', 'stop_loss')]

    def test_inactive_and_other_pair_bots_are_skipped(self, executor, store, publisher, price_rules, now):
        async def scenario():
            await store.put('bots', make_bot(bot_id='paused', status=BotStatus.PAUSED,
                                             buy_query=price_rules[0]).to_record())
            await store.put('bots', make_bot(bot_id='eth', pair='ETH/USDT', buy_query=price_rules[0]).to_record())
            await publish(publisher, now, 100.0)
            return store.count('trades')

        assert asyncio.run(scenario()) == 0
        assert executor.stats['bots_evaluated'] == 0

    def test_broken_bot_does_not_stop_others(self, executor, store, publisher, price_rules, now):
        async def scenario():
            await store.put('bots', {
                'sub': 'user-1', 'botId': 'broken', 'pair': 'BTC/USDT', 'status': 'active',
                'buyQuery': {'combinator': 'xor', 'rules': []},
            })
            await store.put('bots', make_bot(buy_query=price_rules[0]).to_record())
            event = await publish(publisher, now, 100.0)
            return event, await store.query_all('trades', 'bot-1')

        event, trades = asyncio.run(scenario())

        assert event.status == DeliveryStatus.DELIVERED
        assert len(trades) == 1
        assert executor.stats['bot_failures'] == 1
