"""
Signal Engine Price Publisher
Один тик рынка: свечи + тикер -> индикаторы -> price_history + IndicatorsUpdated
"""

from datetime import datetime
from typing import Optional

from app.config.settings import Settings, get_settings
from data.market_data import MarketDataClient
from data.models import PriceHistoryRecord
from data.store import Store
from services.notification_service import EventPublisher, EventType
from utils.helpers import MarketDataError, get_current_utc_datetime, to_iso, ttl_from
from utils.indicators import IndicatorSnapshot, calculate_all_indicators
from utils.logger import log_execution_time, setup_logger


class PricePublisher:
    """
    Публикация снапшота индикаторов для одной пары

    Ошибка источника данных пробрасывается: устаревшие индикаторы
    никогда не публикуются, следующий тик планировщика повторит попытку.
    """

    def __init__(
        self,
        client: MarketDataClient,
        store: Store,
        publisher: EventPublisher,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.client = client
        self.store = store
        self.publisher = publisher
        self.logger = setup_logger(f"{__name__}.PricePublisher")

        self.pair = self.settings.MARKET_DATA_PAIR
        self.symbol = self.settings.MARKET_DATA_SYMBOL
        self.stats = {'published': 0, 'failed': 0}

    @log_execution_time()
    async def publish_once(self, now: Optional[datetime] = None) -> IndicatorSnapshot:
        now = now or get_current_utc_datetime()

        try:
            candles, ticker = await self.client.fetch_snapshot_inputs(self.symbol)
        except MarketDataError:
            self.stats['failed'] += 1
            raise

        snapshot = calculate_all_indicators(candles, ticker)

        record = PriceHistoryRecord(
            pair=self.pair,
            timestamp=to_iso(now),
            price=snapshot.price,
            volume_24h=snapshot.volume_24h,
            price_change_pct=snapshot.price_change_pct,
            indicators=snapshot.to_dict(),
            ttl=ttl_from(now, self.settings.PRICE_HISTORY_TTL_DAYS),
        )
        await self.store.put('price_history', record.to_record())

        await self.publisher.publish(EventType.INDICATORS_UPDATED, {
            'pair': self.pair,
            'timestamp': record.timestamp,
            'indicators': snapshot.to_dict(),
        })

        self.stats['published'] += 1
        self.logger.info(
            f"📊 {self.pair} indicators published: price={snapshot.price} "
            f"rsi_14={snapshot.rsi_14:.2f} macd={snapshot.macd_signal} bb={snapshot.bb_position}"
        )
        return snapshot
