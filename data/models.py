"""
Signal Engine Data Models
Формы записей хранилища (camelCase ключи) и SQLAlchemy модель для SqlStore
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, Integer, String, Text, Index, UniqueConstraint, DateTime
from sqlalchemy.orm import declarative_base

from utils.helpers import safe_float, to_iso


# ============================================================================
# BASE CONFIGURATION
# ============================================================================

Base = declarative_base()


def generate_uuid() -> str:
    """Генерация UUID для записей"""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Текущее время в UTC"""
    return datetime.now(timezone.utc)


# ============================================================================
# ENUMS
# ============================================================================

class TradeAction(str, PyEnum):
    """Торговое действие"""
    BUY = "buy"
    SELL = "sell"


class TradeTrigger(str, PyEnum):
    """Что вызвало сделку"""
    RULE = "rule"
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"


class BacktestStatus(str, PyEnum):
    """Статусы бэктестов"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SizingMode(str, PyEnum):
    """Режим размера позиции в бэктесте"""
    CONFIGURED = "configured"
    DEFAULT = "default_1000"


# ============================================================================
# ХРАНИЛИЩЕ (SQL)
# ============================================================================

class StoreItem(Base):
    """
    Универсальная строка key-value/range хранилища

    Одна строка - один элемент логической таблицы; payload - JSON элемента.
    """
    __tablename__ = 'store_items'

    id = Column(Integer, primary_key=True, autoincrement=True)
    table_name = Column(String(64), nullable=False)
    partition_key = Column(String(255), nullable=False)
    sort_key = Column(String(255), nullable=False, default='')
    payload = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('table_name', 'partition_key', 'sort_key', name='uq_store_item_key'),
        Index('idx_store_items_range', 'table_name', 'partition_key', 'sort_key'),
    )

    def __repr__(self):
        return f"<StoreItem({self.table_name}: {self.partition_key}/{self.sort_key})>"


# ============================================================================
# ТОРГОВЫЕ ЗАПИСИ
# ============================================================================

@dataclass
class Trade:
    """Сделка бота (запись таблицы trades)"""
    bot_id: str
    timestamp: str
    action: TradeAction
    price: float
    pair: str = ""
    trigger: TradeTrigger = TradeTrigger.RULE
    sizing: Optional[Dict[str, Any]] = None
    indicators: Optional[Dict[str, Any]] = None
    sub: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            'botId': self.bot_id,
            'timestamp': self.timestamp,
            'action': self.action.value,
            'price': self.price,
            'pair': self.pair,
            'trigger': self.trigger.value,
        }
        if self.sub is not None:
            record['sub'] = self.sub
        if self.sizing is not None:
            record['sizing'] = self.sizing
        if self.indicators is not None:
            record['indicators'] = self.indicators
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'Trade':
        return cls(
            bot_id=record.get('botId', ''),
            timestamp=record.get('timestamp', ''),
            action=TradeAction(record['action']),
            price=safe_float(record.get('price')),
            pair=record.get('pair', ''),
            trigger=TradeTrigger(record.get('trigger', TradeTrigger.RULE.value)),
            sizing=record.get('sizing'),
            indicators=record.get('indicators'),
            sub=record.get('sub'),
        )


@dataclass
class PriceHistoryRecord:
    """Минутная запись истории цены с индикаторами"""
    pair: str
    timestamp: str
    price: float
    volume_24h: float
    price_change_pct: float
    indicators: Dict[str, Any]
    ttl: int

    def to_record(self) -> Dict[str, Any]:
        return {
            'pair': self.pair,
            'timestamp': self.timestamp,
            'price': self.price,
            'volume_24h': self.volume_24h,
            'price_change_pct': self.price_change_pct,
            'indicators': self.indicators,
            'ttl': self.ttl,
        }


# ============================================================================
# СНАПШОТЫ ПРОИЗВОДИТЕЛЬНОСТИ
# ============================================================================

@dataclass(frozen=True)
class PerformanceSnapshot:
    """Снапшот P&L бота; имена ключей записи фиксированы для потребителей"""
    bot_id: str
    sub: str
    pair: str
    timestamp: str
    total_buys: int
    total_sells: int
    total_buy_value: float
    total_sell_value: float
    realised_pnl: float
    unrealised_pnl: float
    net_pnl: float
    net_position: int
    win_rate: float
    current_price: float
    ttl: int

    def to_record(self) -> Dict[str, Any]:
        return {
            'botId': self.bot_id,
            'sub': self.sub,
            'pair': self.pair,
            'timestamp': self.timestamp,
            'totalBuys': self.total_buys,
            'totalSells': self.total_sells,
            'totalBuyValue': self.total_buy_value,
            'totalSellValue': self.total_sell_value,
            'realisedPnl': self.realised_pnl,
            'unrealisedPnl': self.unrealised_pnl,
            'netPnl': self.net_pnl,
            'netPosition': self.net_position,
            'winRate': self.win_rate,
            'currentPrice': self.current_price,
            'ttl': self.ttl,
        }


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Агрегированный снапшот по всем ботам пользователя"""
    sub: str
    timestamp: str
    active_bots: int
    total_net_pnl: float
    total_realised_pnl: float
    total_unrealised_pnl: float
    pnl_24h: float
    ttl: int

    def to_record(self) -> Dict[str, Any]:
        return {
            'sub': self.sub,
            'timestamp': self.timestamp,
            'activeBots': self.active_bots,
            'totalNetPnl': self.total_net_pnl,
            'totalRealisedPnl': self.total_realised_pnl,
            'totalUnrealisedPnl': self.total_unrealised_pnl,
            'pnl24h': self.pnl_24h,
            'ttl': self.ttl,
        }


# ============================================================================
# БЭКТЕСТЫ
# ============================================================================

@dataclass
class BacktestMetadata:
    """Запись таблицы backtests"""
    sub: str
    backtest_id: str
    bot_id: str
    status: BacktestStatus
    bot_config_snapshot: Dict[str, Any]
    tested_at: str
    window_start: str
    window_end: str
    config_changed_since_test: bool = False
    report_key: Optional[str] = None
    completed_at: Optional[str] = None
    error_message: Optional[str] = None
    wait_seconds: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (BacktestStatus.COMPLETED, BacktestStatus.FAILED)

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            'sub': self.sub,
            'backtestId': self.backtest_id,
            'botId': self.bot_id,
            'status': self.status.value,
            'botConfigSnapshot': self.bot_config_snapshot,
            'configChangedSinceTest': self.config_changed_since_test,
            'testedAt': self.tested_at,
            'windowStart': self.window_start,
            'windowEnd': self.window_end,
        }
        for key, value in (('reportKey', self.report_key),
                           ('completedAt', self.completed_at),
                           ('errorMessage', self.error_message),
                           ('waitSeconds', self.wait_seconds)):
            if value is not None:
                record[key] = value
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'BacktestMetadata':
        return cls(
            sub=record['sub'],
            backtest_id=record['backtestId'],
            bot_id=record['botId'],
            status=BacktestStatus(record['status']),
            bot_config_snapshot=record.get('botConfigSnapshot') or {},
            tested_at=record.get('testedAt', ''),
            window_start=record.get('windowStart', ''),
            window_end=record.get('windowEnd', ''),
            config_changed_since_test=bool(record.get('configChangedSinceTest', False)),
            report_key=record.get('reportKey'),
            completed_at=record.get('completedAt'),
            error_message=record.get('errorMessage'),
            wait_seconds=record.get('waitSeconds'),
        )


@dataclass
class HourlyBucket:
    """Часовой агрегат симулированных сделок"""
    hour_start: str
    total_trades: int = 0
    total_buys: int = 0
    total_sells: int = 0
    realised_pnl: float = 0.0
    open_price: float = 0.0
    close_price: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'hourStart': self.hour_start,
            'totalTrades': self.total_trades,
            'totalBuys': self.total_buys,
            'totalSells': self.total_sells,
            'realisedPnl': self.realised_pnl,
            'openPrice': self.open_price,
            'closePrice': self.close_price,
        }


@dataclass
class BacktestSummary:
    """Итоговая статистика бэктеста"""
    net_pnl: float = 0.0
    win_rate: float = 0.0
    total_trades: int = 0
    total_buys: int = 0
    total_sells: int = 0
    largest_gain: float = 0.0
    largest_loss: float = 0.0
    avg_hold_time_minutes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'netPnl': self.net_pnl,
            'winRate': self.win_rate,
            'totalTrades': self.total_trades,
            'totalBuys': self.total_buys,
            'totalSells': self.total_sells,
            'largestGain': self.largest_gain,
            'largestLoss': self.largest_loss,
            'avgHoldTimeMinutes': self.avg_hold_time_minutes,
        }


@dataclass
class BacktestReport:
    """Полный отчет бэктеста (JSON в хранилище отчетов)"""
    backtest_id: str
    bot_id: str
    sub: str
    window_start: str
    window_end: str
    sizing_mode: SizingMode
    bot_config_snapshot: Dict[str, Any]
    summary: BacktestSummary
    hourly_buckets: List[HourlyBucket] = field(default_factory=list)
    accounting: Dict[str, Any] = field(default_factory=dict)
    trades: List[Dict[str, Any]] = field(default_factory=list)
    generated_at: str = field(default_factory=lambda: to_iso(utc_now()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'backtestId': self.backtest_id,
            'botId': self.bot_id,
            'sub': self.sub,
            'windowStart': self.window_start,
            'windowEnd': self.window_end,
            'sizingMode': self.sizing_mode.value,
            'botConfigSnapshot': self.bot_config_snapshot,
            'summary': self.summary.to_dict(),
            'hourlyBuckets': [bucket.to_dict() for bucket in self.hourly_buckets],
            'accounting': self.accounting,
            'trades': self.trades,
            'generatedAt': self.generated_at,
        }
