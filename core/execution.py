"""
Signal Engine Execution Rules
Решение о сделке на одном тике: режимы исполнения, SL/TP и cooldown
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from data.models import Trade, TradeAction, TradeTrigger
from strategies.bot_config import BotConfig, ExecutionMode
from strategies.rules import evaluate_rule_group
from utils.helpers import MINUTE_MS, datetime_to_timestamp, parse_iso, safe_float, to_iso
from utils.indicators import IndicatorSnapshot


# Поля состояния исполнителя в записи бота
STATE_FIELDS = ('lastAction', 'entryPrice', 'buyCooldownUntil', 'sellCooldownUntil')

_COOLDOWN_FIELDS = {
    TradeAction.BUY: 'buyCooldownUntil',
    TradeAction.SELL: 'sellCooldownUntil',
}


def _ms_to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


@dataclass
class ExecutionState:
    """Состояние исполнителя между тиками (время cooldown в мс)"""
    last_action: Optional[TradeAction] = None
    entry_price: Optional[float] = None
    cooldown_until: Dict[TradeAction, int] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'ExecutionState':
        """Состояние из записи бота (lastAction, entryPrice, *CooldownUntil)"""
        state = cls()
        if record.get('lastAction'):
            state.last_action = TradeAction(record['lastAction'])
        if record.get('entryPrice') is not None:
            state.entry_price = safe_float(record['entryPrice'])
        for action, key in _COOLDOWN_FIELDS.items():
            if record.get(key):
                state.cooldown_until[action] = datetime_to_timestamp(parse_iso(record[key]))
        return state

    def apply_to(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Запись состояния в запись бота; пустые поля удаляются"""
        values = {
            'lastAction': self.last_action.value if self.last_action is not None else None,
            'entryPrice': self.entry_price,
        }
        for action, key in _COOLDOWN_FIELDS.items():
            until = self.cooldown_until.get(action)
            values[key] = to_iso(_ms_to_datetime(until)) if until is not None else None

        for key, value in values.items():
            if value is None:
                record.pop(key, None)
            else:
                record[key] = value
        return record


def check_stop_loss_take_profit(bot: BotConfig, entry_price: float, price: float) -> Optional[TradeTrigger]:
    """
    Проверка SL/TP относительно цены входа

    SL срабатывает при price <= entry * (1 - pct/100),
    TP при price >= entry * (1 + pct/100). SL проверяется первым.
    """
    if bot.stop_loss is not None and price <= entry_price * (1 - bot.stop_loss.percentage / 100):
        return TradeTrigger.STOP_LOSS
    if bot.take_profit is not None and price >= entry_price * (1 + bot.take_profit.percentage / 100):
        return TradeTrigger.TAKE_PROFIT
    return None


def can_sell(bot: BotConfig) -> bool:
    return bot.sell_query is not None or bot.stop_loss is not None or bot.take_profit is not None


def try_execute(
    bot: BotConfig,
    action: TradeAction,
    indicators: IndicatorSnapshot,
    tick_ms: int,
    price: float,
    state: ExecutionState,
) -> Optional[Trade]:
    """Попытка действия по правилам режима исполнения; state меняется только при сделке"""
    query = bot.buy_query if action == TradeAction.BUY else bot.sell_query
    sizing = bot.buy_sizing if action == TradeAction.BUY else bot.sell_sizing
    trigger = TradeTrigger.RULE

    sltp = None
    if action == TradeAction.SELL and state.entry_price is not None:
        sltp = check_stop_loss_take_profit(bot, state.entry_price, price)

    if bot.execution_mode == ExecutionMode.ONCE_AND_WAIT:
        if state.last_action == action:
            return None
        if sltp is not None:
            trigger = sltp
        elif query is None or not evaluate_rule_group(query, indicators):
            return None
        state.last_action = action
    elif sltp is not None:
        # SL/TP продажа обходит cooldown и правила
        trigger = sltp
    else:
        until = state.cooldown_until.get(action)
        if until is not None and tick_ms < until:
            return None
        if query is None or not evaluate_rule_group(query, indicators):
            return None
        if bot.cooldown_minutes > 0:
            state.cooldown_until[action] = tick_ms + bot.cooldown_minutes * MINUTE_MS

    state.entry_price = price if action == TradeAction.BUY else None

    return Trade(
        bot_id=bot.bot_id,
        timestamp=to_iso(_ms_to_datetime(tick_ms)),
        action=action,
        price=price,
        pair=bot.pair,
        trigger=trigger,
        sizing=sizing.to_dict() if sizing is not None else None,
        sub=bot.sub,
    )


def execute_tick(
    bot: BotConfig,
    indicators: IndicatorSnapshot,
    tick_ms: int,
    price: float,
    state: ExecutionState,
) -> Optional[Trade]:
    """Не более одного действия за тик: сначала buy, затем sell"""
    trade = None
    if bot.buy_query is not None:
        trade = try_execute(bot, TradeAction.BUY, indicators, tick_ms, price, state)
    if trade is None and can_sell(bot):
        trade = try_execute(bot, TradeAction.SELL, indicators, tick_ms, price, state)
    return trade
