"""
Signal Engine Event Publisher
Best-effort публикация доменных событий подписчикам
"""

import asyncio
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

from utils.helpers import get_current_utc_datetime, to_iso
from utils.logger import setup_logger, log_engine_event


# ============================================================================
# CONSTANTS AND ENUMS
# ============================================================================

logger = setup_logger(__name__)

MAX_EVENT_HISTORY = 1000
EVENT_SOURCE = "signal_engine"


class EventType(str, Enum):
    """Типы доменных событий"""
    INDICATORS_UPDATED = "IndicatorsUpdated"
    BOT_CREATED = "BotCreated"
    BOT_UPDATED = "BotUpdated"
    BOT_DELETED = "BotDeleted"
    BACKTEST_COMPLETED = "BacktestCompleted"
    BACKTEST_FAILED = "BacktestFailed"


class DeliveryStatus(str, Enum):
    """Итог доставки события"""
    DELIVERED = "delivered"
    PARTIAL = "partial"
    NO_SUBSCRIBERS = "no_subscribers"
    FAILED = "failed"


@dataclass
class Event:
    """Опубликованное событие"""
    type: EventType
    detail: Dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    source: str = EVENT_SOURCE
    time: str = field(default_factory=lambda: to_iso(get_current_utc_datetime()))
    status: DeliveryStatus = DeliveryStatus.NO_SUBSCRIBERS
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type.value,
            'source': self.source,
            'time': self.time,
            'detail': self.detail,
            'status': self.status.value,
            'errors': list(self.errors),
        }


Subscriber = Callable[[Event], Union[None, Awaitable[None]]]


# ============================================================================
# PUBLISHER
# ============================================================================

class EventPublisher:
    """
    Публикатор событий

    publish() никогда не бросает исключений: ошибки подписчиков
    логируются и учитываются в статистике.
    """

    def __init__(self, max_history: int = MAX_EVENT_HISTORY):
        self.logger = setup_logger(f"{__name__}.EventPublisher")
        self._subscribers: Dict[EventType, List[Subscriber]] = defaultdict(list)
        self.history: Deque[Event] = deque(maxlen=max_history)
        self.stats = {
            'published': 0,
            'delivered': 0,
            'subscriber_errors': 0,
            'by_type': defaultdict(int),
        }

    def subscribe(self, event_type: Union[EventType, str], subscriber: Subscriber) -> None:
        """Регистрация подписчика на тип события"""
        self._subscribers[EventType(event_type)].append(subscriber)

    def unsubscribe(self, event_type: Union[EventType, str], subscriber: Subscriber) -> bool:
        subscribers = self._subscribers.get(EventType(event_type), [])
        if subscriber in subscribers:
            subscribers.remove(subscriber)
            return True
        return False

    async def publish(self, event_type: Union[EventType, str], detail: Dict[str, Any]) -> Event:
        """
        Публикация события всем подписчикам его типа

        Returns:
            Событие со статусом доставки
        """
        event = Event(type=EventType(event_type), detail=detail)
        self.stats['published'] += 1
        self.stats['by_type'][event.type.value] += 1

        subscribers = list(self._subscribers.get(event.type, []))
        delivered = 0
        for subscriber in subscribers:
            try:
                result = subscriber(event)
                if asyncio.iscoroutine(result):
                    await result
                delivered += 1
            except Exception as e:
                # Доставка best effort: ошибка подписчика не влияет на вызывающего
                self.stats['subscriber_errors'] += 1
                event.errors.append(f"{getattr(subscriber, '__name__', subscriber)}: {e}")
                self.logger.error(f"❌ Subscriber failed for {event.type.value}: {e}")

        if not subscribers:
            event.status = DeliveryStatus.NO_SUBSCRIBERS
        elif delivered == len(subscribers):
            event.status = DeliveryStatus.DELIVERED
        elif delivered:
            event.status = DeliveryStatus.PARTIAL
        else:
            event.status = DeliveryStatus.FAILED
        self.stats['delivered'] += delivered

        self.history.append(event)
        log_engine_event(
            event_type=event.type.value,
            subject=str(detail.get('pair') or detail.get('botId') or detail.get('sub') or ''),
            message=f"📣 {event.type.value} published ({event.status.value})",
            event_id=event.id,
        )
        return event

    def recent(self, event_type: Optional[Union[EventType, str]] = None, limit: int = 10) -> List[Event]:
        """Последние события (опционально одного типа)"""
        events = list(self.history)
        if event_type is not None:
            wanted = EventType(event_type)
            events = [e for e in events if e.type == wanted]
        return events[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        stats = dict(self.stats)
        stats['by_type'] = dict(self.stats['by_type'])
        stats['subscribers'] = {t.value: len(s) for t, s in self._subscribers.items()}
        return stats
