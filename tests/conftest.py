"""
Shared fixtures: in-memory store, report store, fixed clock, sample candles and bots.
"""

from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from app.config.settings import Settings
from data.market_data import Candle
from data.report_store import MemoryReportStore
from data.store import MemoryStore
from services.notification_service import EventPublisher
from strategies.bot_config import BotConfig, BotStatus
from strategies.rules import parse_rule_group
from utils.helpers import datetime_to_timestamp


FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_candles(closes: List[float], start: datetime, step_minutes: int = 1, volume: float = 1.0) -> List[Candle]:
    """Минутные свечи с заданными close"""
    start_ms = datetime_to_timestamp(start)
    return [
        Candle(open_time=start_ms + i * step_minutes * 60_000,
               open=close, high=close, low=close, close=close, volume=volume)
        for i, close in enumerate(closes)
    ]


def make_bot(**overrides) -> BotConfig:
    data = dict(
        sub='user-1',
        bot_id='bot-1',
        name='Test bot',
        pair='BTC/USDT',
        status=BotStatus.ACTIVE,
    )
    data.update(overrides)
    return BotConfig(**data)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        RECORDER_CONCURRENCY=3,
        STORE_PAGE_SIZE=2,
        BACKTEST_MIN_WAIT_SECONDS=1,
        BACKTEST_MAX_WAIT_SECONDS=2,
        BACKTEST_WORKFLOW_TIMEOUT=30.0,
        BACKTEST_STAGE_RETRIES=1,
        BACKTEST_MAX_RESULTS_PER_BOT=2,
        BACKTEST_INDICATOR_WINDOW=50,
    )


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def store():
    # Маленькая страница, чтобы тесты проходили через continuation token
    return MemoryStore(page_size=2)


@pytest.fixture
def report_store():
    return MemoryReportStore()


@pytest.fixture
def publisher():
    return EventPublisher()


@pytest.fixture
def rising_candles(now):
    start = now - timedelta(hours=3)
    return make_candles([100.0 + i for i in range(180)], start)


@pytest.fixture
def price_rules():
    """buy при price < 105, sell при price > 110"""
    return (
        parse_rule_group({'combinator': 'and', 'rules': [{'field': 'price', 'operator': '<', 'value': '105'}]}),
        parse_rule_group({'combinator': 'and', 'rules': [{'field': 'price', 'operator': '>', 'value': '110'}]}),
    )
