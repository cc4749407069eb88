"""
Signal Engine Position/P&L Accountant
Учет позиции и P&L по средней цене покупки, всегда из полной ленты сделок
"""

from collections import deque
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Union

from data.models import Trade, TradeAction
from utils.helpers import safe_float


TradeLike = Union[Trade, Mapping[str, Any]]


# ============================================================================
# DATACLASSES
# ============================================================================

@dataclass(frozen=True)
class PnlMetrics:
    """
    Метрики P&L ленты сделок

    Каждая сделка - одна единица (buy 1 / sell 1): метрики отражают
    качество сигналов, а не реальные объемы.
    """
    total_buys: int = 0
    total_sells: int = 0
    total_buy_value: float = 0.0
    total_sell_value: float = 0.0
    realised_pnl: float = 0.0
    unrealised_pnl: float = 0.0
    net_pnl: float = 0.0
    net_position: int = 0
    win_rate: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_record(self) -> Dict[str, Any]:
        """camelCase форма для записей хранилища"""
        return {
            'totalBuys': self.total_buys,
            'totalSells': self.total_sells,
            'totalBuyValue': self.total_buy_value,
            'totalSellValue': self.total_sell_value,
            'realisedPnl': self.realised_pnl,
            'unrealisedPnl': self.unrealised_pnl,
            'netPnl': self.net_pnl,
            'netPosition': self.net_position,
            'winRate': self.win_rate,
        }


@dataclass(frozen=True)
class RoundTrip:
    """Пара buy -> sell, сопоставленная по FIFO"""
    buy: Trade
    sell: Trade

    @property
    def price_change(self) -> float:
        return self.sell.price - self.buy.price


# ============================================================================
# HELPERS
# ============================================================================

def _as_trade(trade: TradeLike) -> Trade:
    if isinstance(trade, Trade):
        return trade
    return Trade.from_record(dict(trade))


def _action(trade: TradeLike) -> str:
    if isinstance(trade, Trade):
        return trade.action.value
    return str(trade.get('action', ''))


def _price(trade: TradeLike) -> float:
    if isinstance(trade, Trade):
        return trade.price
    return safe_float(trade.get('price'))


# ============================================================================
# ACCOUNTING
# ============================================================================

def average_buy_cost(trades: Iterable[TradeLike]) -> float:
    """Средняя цена покупки; 0 если покупок нет"""
    buy_prices = [_price(t) for t in trades if _action(t) == TradeAction.BUY.value]
    if not buy_prices:
        return 0.0
    return sum(buy_prices) / len(buy_prices)


def compute_pnl(trades: Sequence[TradeLike], current_price: float) -> PnlMetrics:
    """
    P&L по средней цене покупки

    - realised = sum(sell - avgBuyCost), только если есть хотя бы одна покупка
      (продажи без покупок не считаются чистой прибылью)
    - unrealised только для положительной позиции
    - winRate = доля продаж дороже avgBuyCost, в процентах
    """
    total_buys = 0
    total_sells = 0
    total_buy_value = 0.0
    total_sell_value = 0.0
    sell_prices: List[float] = []

    for trade in trades:
        action = _action(trade)
        price = _price(trade)
        if action == TradeAction.BUY.value:
            total_buys += 1
            total_buy_value += price
        elif action == TradeAction.SELL.value:
            total_sells += 1
            total_sell_value += price
            sell_prices.append(price)

    net_position = total_buys - total_sells
    avg_buy_cost = total_buy_value / total_buys if total_buys > 0 else 0.0

    realised_pnl = 0.0
    if total_buys > 0 and total_sells > 0:
        realised_pnl = total_sell_value - total_sells * avg_buy_cost

    current_price = safe_float(current_price)
    unrealised_pnl = net_position * (current_price - avg_buy_cost) if net_position > 0 else 0.0

    win_rate = 0.0
    if total_sells > 0:
        winning = sum(1 for price in sell_prices if price > avg_buy_cost)
        win_rate = winning / total_sells * 100

    return PnlMetrics(
        total_buys=total_buys,
        total_sells=total_sells,
        total_buy_value=total_buy_value,
        total_sell_value=total_sell_value,
        realised_pnl=realised_pnl,
        unrealised_pnl=unrealised_pnl,
        net_pnl=realised_pnl + unrealised_pnl,
        net_position=net_position,
        win_rate=win_rate,
    )


def running_pnl(trades: Sequence[TradeLike], prices: Sequence[float]) -> List[PnlMetrics]:
    """
    Метрики после каждой сделки

    prices[i] - рыночная цена в момент i-й сделки. Каждая точка
    пересчитывается из полного префикса ленты.
    """
    if len(prices) != len(trades):
        raise ValueError("prices must have one entry per trade")
    return [compute_pnl(trades[:i + 1], prices[i]) for i in range(len(trades))]


def match_round_trips(trades: Iterable[TradeLike]) -> List[RoundTrip]:
    """
    FIFO сопоставление: каждая продажа закрывает самую старую открытую покупку
    Продажи без открытых покупок пропускаются.
    """
    open_buys: deque = deque()
    trips: List[RoundTrip] = []
    for raw in trades:
        trade = _as_trade(raw)
        if trade.action == TradeAction.BUY:
            open_buys.append(trade)
        elif open_buys:
            trips.append(RoundTrip(buy=open_buys.popleft(), sell=trade))
    return trips
