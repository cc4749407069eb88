"""
Signal Engine Bot Service
Сохранение и удаление конфигураций ботов с публикацией событий жизненного цикла
"""

from datetime import datetime
from typing import Any, Dict, Optional

from app.config.settings import Settings, get_settings
from core.execution import STATE_FIELDS
from data.store import Item, Store
from services.notification_service import EventPublisher, EventType
from strategies.bot_config import BotConfig
from utils.helpers import ValidationError, get_current_utc_datetime, to_iso
from utils.logger import setup_logger


class BotService:
    """
    Запись конфигураций ботов

    save_bot публикует BotCreated или BotUpdated, delete_bot публикует
    BotDeleted после удаления бота вместе с его сделками и снапшотами P&L.
    """

    def __init__(self, store: Store, publisher: EventPublisher, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = store
        self.publisher = publisher
        self.logger = setup_logger(f"{__name__}.BotService")
        self.stats = {'created': 0, 'updated': 0, 'deleted': 0, 'rejected': 0}

    @staticmethod
    def _event_detail(record: Item) -> Dict[str, Any]:
        return {
            'sub': record['sub'],
            'botId': record['botId'],
            'pair': record.get('pair', ''),
            'status': record.get('status'),
        }

    async def save_bot(self, record: Item, now: Optional[datetime] = None) -> BotConfig:
        """
        Создание или обновление бота

        createdAt и состояние исполнения берутся из существующей записи:
        клиент не может их перезаписать.

        Raises:
            ValidationError: запись не разбирается или конфигурация некорректна
        """
        now = now or get_current_utc_datetime()
        try:
            bot = BotConfig.from_record(record)
        except KeyError as e:
            self.stats['rejected'] += 1
            raise ValidationError(f"Bot record is missing {e}")

        problems = bot.validate()
        if problems:
            self.stats['rejected'] += 1
            raise ValidationError(f"Invalid bot {bot.bot_id}: " + "; ".join(problems))

        existing = await self.store.get('bots', {'sub': bot.sub, 'botId': bot.bot_id})
        for key in STATE_FIELDS:
            bot.extra.pop(key, None)

        timestamp = to_iso(now)
        if existing is None:
            bot.created_at = timestamp
        else:
            bot.created_at = existing.get('createdAt') or timestamp
            for key in STATE_FIELDS:
                if key in existing:
                    bot.extra[key] = existing[key]
        bot.updated_at = timestamp

        saved = bot.to_record()
        await self.store.put('bots', saved)

        if existing is None:
            self.stats['created'] += 1
            self.logger.info(f"🆕 Bot {bot.bot_id} created for {bot.sub} ({bot.pair}, {bot.status.value})")
            await self.publisher.publish(EventType.BOT_CREATED, self._event_detail(saved))
        else:
            self.stats['updated'] += 1
            self.logger.info(f"✏️ Bot {bot.bot_id} updated for {bot.sub} ({bot.status.value})")
            await self.publisher.publish(EventType.BOT_UPDATED, self._event_detail(saved))
        return bot

    async def delete_bot(self, sub: str, bot_id: str) -> bool:
        """Удаление бота, его сделок и снапшотов; False если бота нет"""
        existing = await self.store.get('bots', {'sub': sub, 'botId': bot_id})
        if existing is None:
            self.logger.warning(f"⚠️ Bot {bot_id} not found for {sub}")
            return False

        await self.store.delete('bots', {'sub': sub, 'botId': bot_id})

        trades = await self.store.query_all('trades', bot_id)
        removed_trades = await self.store.batch_delete(
            'trades', [{'botId': bot_id, 'timestamp': t['timestamp']} for t in trades]
        )
        snapshots = await self.store.query_all('bot_performance', bot_id)
        removed_snapshots = await self.store.batch_delete(
            'bot_performance', [{'botId': bot_id, 'timestamp': s['timestamp']} for s in snapshots]
        )

        self.stats['deleted'] += 1
        self.logger.info(
            f"🗑️ Bot {bot_id} deleted for {sub}: {removed_trades} trades, {removed_snapshots} snapshots"
        )
        await self.publisher.publish(EventType.BOT_DELETED, self._event_detail(existing))
        return True
