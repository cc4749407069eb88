"""
Signal Engine Bot Executor
Живое исполнение: каждый IndicatorsUpdated прогоняется через правила активных ботов пары
"""

from typing import Any, Dict, List, Optional

from app.config.settings import Settings, get_settings
from core.execution import ExecutionState, execute_tick
from data.models import Trade
from data.store import Item, Store
from services.notification_service import Event, EventPublisher, EventType
from strategies.bot_config import BotConfig, BotStatus
from utils.helpers import SignalEngineError, datetime_to_timestamp, parse_iso
from utils.indicators import IndicatorSnapshot
from utils.logger import setup_logger


class BotExecutor:
    """
    Подписчик IndicatorsUpdated

    Для каждого активного бота пары решает о сделке на текущем тике
    теми же правилами, что и бэктест (once_and_wait, cooldown, SL/TP),
    пишет Trade и сохраняет состояние исполнения в записи бота.
    Ошибка одного бота логируется и не мешает остальным.
    """

    def __init__(self, store: Store, publisher: EventPublisher, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = store
        self.publisher = publisher
        self.logger = setup_logger(f"{__name__}.BotExecutor")
        self.stats = {'ticks': 0, 'bots_evaluated': 0, 'trades_written': 0, 'bot_failures': 0}

    def attach(self) -> None:
        self.publisher.subscribe(EventType.INDICATORS_UPDATED, self.on_indicators_updated)

    async def on_indicators_updated(self, event: Event) -> List[Trade]:
        detail = event.detail
        snapshot = IndicatorSnapshot.from_dict(detail.get('indicators') or {})
        return await self.execute_for_pair(detail['pair'], snapshot, detail['timestamp'])

    async def _load_bots(self, pair: str) -> List[Item]:
        return await self.store.scan_all(
            'bots',
            predicate=lambda item: item.get('status') == BotStatus.ACTIVE.value and item.get('pair') == pair,
        )

    async def _execute_bot(self, record: Item, snapshot: IndicatorSnapshot, timestamp: str) -> Optional[Trade]:
        bot = BotConfig.from_record(record)
        state = ExecutionState.from_record(record)
        tick_ms = datetime_to_timestamp(parse_iso(timestamp))

        trade = execute_tick(bot, snapshot, tick_ms, snapshot.price, state)
        if trade is None:
            return None

        # Сделка записывается с моментом публикации, а не с началом минуты
        trade.timestamp = timestamp
        trade.indicators = snapshot.to_dict()
        await self.store.put('trades', trade.to_record())

        updated: Dict[str, Any] = dict(record)
        state.apply_to(updated)
        await self.store.put('bots', updated)
        return trade

    async def execute_for_pair(self, pair: str, snapshot: IndicatorSnapshot, timestamp: str) -> List[Trade]:
        self.stats['ticks'] += 1
        bots = await self._load_bots(pair)
        if not bots:
            self.logger.debug(f"📭 No active bots for {pair}")
            return []

        trades: List[Trade] = []
        for record in bots:
            self.stats['bots_evaluated'] += 1
            try:
                trade = await self._execute_bot(record, snapshot, timestamp)
            except SignalEngineError as e:
                self.stats['bot_failures'] += 1
                self.logger.error(f"❌ Bot {record.get('botId')} execution failed: {e}")
                continue
            if trade is not None:
                trades.append(trade)
                self.stats['trades_written'] += 1
                self.logger.info(
                    f"💹 Bot {trade.bot_id} {trade.action.value} {pair} @ {trade.price} ({trade.trigger.value})"
                )

        self.logger.info(f"✅ {pair} tick evaluated for {len(bots)} bots, {len(trades)} trades")
        return trades

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)
