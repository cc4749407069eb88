"""
Signal Engine Bot Configuration
Модель конфигурации бота: правила, режим исполнения, размер позиции, SL/TP
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from utils.helpers import ValidationError, safe_float
from strategies.rules import RuleGroup, parse_rule_group, validate_rule_group


# ============================================================================
# ENUMS AND TYPES
# ============================================================================

class BotStatus(str, Enum):
    """Статусы бота"""
    ACTIVE = "active"
    PAUSED = "paused"
    DRAFT = "draft"


class ExecutionMode(str, Enum):
    """
    Режим повторного срабатывания

    once_and_wait - действие не повторяется подряд (buy -> sell -> buy)
    condition_cooldown - повтор разрешен после паузы cooldown_minutes
    """
    ONCE_AND_WAIT = "once_and_wait"
    CONDITION_COOLDOWN = "condition_cooldown"


class SizingType(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"


# ============================================================================
# DATACLASSES
# ============================================================================

@dataclass(frozen=True)
class SizingConfig:
    """Размер позиции: fixed - сумма в валюте котировки, percentage - 0..100"""
    type: SizingType
    value: float

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type.value, 'value': self.value}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['SizingConfig']:
        if not data:
            return None
        try:
            sizing_type = SizingType(str(data.get('type')))
        except ValueError:
            raise ValidationError(f"Unknown sizing type: {data.get('type')!r}")
        return cls(type=sizing_type, value=safe_float(data.get('value')))


@dataclass(frozen=True)
class StopLossConfig:
    """Процент падения от цены входа для продажи"""
    percentage: float

    def to_dict(self) -> Dict[str, Any]:
        return {'percentage': self.percentage}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['StopLossConfig']:
        if not data:
            return None
        return cls(percentage=safe_float(data.get('percentage')))


@dataclass(frozen=True)
class TakeProfitConfig:
    """Процент роста от цены входа для продажи"""
    percentage: float

    def to_dict(self) -> Dict[str, Any]:
        return {'percentage': self.percentage}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['TakeProfitConfig']:
        if not data:
            return None
        return cls(percentage=safe_float(data.get('percentage')))


@dataclass
class BotConfig:
    """Конфигурация бота (запись таблицы bots)"""
    sub: str
    bot_id: str
    name: str
    pair: str
    status: BotStatus = BotStatus.DRAFT
    execution_mode: ExecutionMode = ExecutionMode.ONCE_AND_WAIT
    buy_query: Optional[RuleGroup] = None
    sell_query: Optional[RuleGroup] = None
    buy_sizing: Optional[SizingConfig] = None
    sell_sizing: Optional[SizingConfig] = None
    stop_loss: Optional[StopLossConfig] = None
    take_profit: Optional[TakeProfitConfig] = None
    cooldown_minutes: int = 0
    created_at: str = ""
    updated_at: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_sizing(self) -> bool:
        return self.buy_sizing is not None or self.sell_sizing is not None

    @property
    def is_active(self) -> bool:
        return self.status == BotStatus.ACTIVE

    def validate(self) -> list:
        """Список проблем конфигурации (пустой если все в порядке)"""
        problems = []
        if self.buy_query is None and self.sell_query is None:
            problems.append("bot has neither buy nor sell rules")
        if self.buy_query is not None:
            problems.extend(f"buyQuery {p}" for p in validate_rule_group(self.buy_query))
        if self.sell_query is not None:
            problems.extend(f"sellQuery {p}" for p in validate_rule_group(self.sell_query))
        for label, sizing in (('buySizing', self.buy_sizing), ('sellSizing', self.sell_sizing)):
            if sizing is not None and sizing.value <= 0:
                problems.append(f"{label} value must be positive")
            if sizing is not None and sizing.type == SizingType.PERCENTAGE and sizing.value > 100:
                problems.append(f"{label} percentage must be at most 100")
        if self.stop_loss is not None and not (0 < self.stop_loss.percentage < 100):
            problems.append("stopLoss percentage must be between 0 and 100")
        if self.take_profit is not None and self.take_profit.percentage <= 0:
            problems.append("takeProfit percentage must be positive")
        if self.cooldown_minutes < 0:
            problems.append("cooldownMinutes must not be negative")
        return problems

    def to_record(self) -> Dict[str, Any]:
        """Конвертация в запись хранилища (camelCase ключи)"""
        record: Dict[str, Any] = dict(self.extra)
        record.update({
            'sub': self.sub,
            'botId': self.bot_id,
            'name': self.name,
            'pair': self.pair,
            'status': self.status.value,
            'executionMode': self.execution_mode.value,
            'createdAt': self.created_at,
            'updatedAt': self.updated_at,
        })
        optional = {
            'buyQuery': self.buy_query,
            'sellQuery': self.sell_query,
            'buySizing': self.buy_sizing,
            'sellSizing': self.sell_sizing,
            'stopLoss': self.stop_loss,
            'takeProfit': self.take_profit,
        }
        for key, value in optional.items():
            if value is not None:
                record[key] = value.to_dict()
        if self.cooldown_minutes:
            record['cooldownMinutes'] = self.cooldown_minutes
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'BotConfig':
        """Создание из записи хранилища"""
        try:
            status = BotStatus(record.get('status', BotStatus.DRAFT.value))
            execution_mode = ExecutionMode(record.get('executionMode', ExecutionMode.ONCE_AND_WAIT.value))
        except ValueError as e:
            raise ValidationError(f"Invalid bot record {record.get('botId')!r}: {e}")

        known = {
            'sub', 'botId', 'name', 'pair', 'status', 'executionMode', 'buyQuery',
            'sellQuery', 'buySizing', 'sellSizing', 'stopLoss', 'takeProfit',
            'cooldownMinutes', 'createdAt', 'updatedAt',
        }
        return cls(
            sub=record['sub'],
            bot_id=record['botId'],
            name=record.get('name', ''),
            pair=record.get('pair', ''),
            status=status,
            execution_mode=execution_mode,
            buy_query=parse_rule_group(record['buyQuery']) if record.get('buyQuery') else None,
            sell_query=parse_rule_group(record['sellQuery']) if record.get('sellQuery') else None,
            buy_sizing=SizingConfig.from_dict(record.get('buySizing')),
            sell_sizing=SizingConfig.from_dict(record.get('sellSizing')),
            stop_loss=StopLossConfig.from_dict(record.get('stopLoss')),
            take_profit=TakeProfitConfig.from_dict(record.get('takeProfit')),
            cooldown_minutes=int(safe_float(record.get('cooldownMinutes'))),
            created_at=record.get('createdAt', ''),
            updated_at=record.get('updatedAt', ''),
            extra={k: v for k, v in record.items() if k not in known},
        )
