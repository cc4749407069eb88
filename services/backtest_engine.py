"""
Signal Engine Backtest Engine
Воспроизведение истории свеча за свечой с правилами бота и отчетом по часам
"""

import asyncio
import functools
from collections import OrderedDict, deque
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, List, Optional, Sequence, Union

import numpy as np

from app.config.settings import Settings, get_settings
from core.accountant import compute_pnl, match_round_trips
from core.execution import ExecutionState, execute_tick
from data.market_data import Candle, Ticker24h, candles_to_dataframe
from data.models import (
    BacktestReport, BacktestSummary, HourlyBucket, SizingMode, Trade, TradeAction
)
from data.store import Store
from strategies.bot_config import BotConfig, SizingConfig, SizingType
from utils.helpers import (
    BacktestError, Timer, datetime_to_timestamp, floor_to_hour,
    parse_iso, round_money, safe_float, to_iso
)
from utils.indicators import calculate_all_indicators
from utils.logger import log_execution_time, setup_logger


# ============================================================================
# CONSTANTS
# ============================================================================

logger = setup_logger(__name__)

# Минутных свечей в сутках - окно синтетического 24h тикера
CANDLES_PER_DAY = 24 * 60

DateLike = Union[datetime, str]


def _ms_to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def _to_ms(value: DateLike) -> int:
    return datetime_to_timestamp(parse_iso(value))


# ============================================================================
# P&L
# ============================================================================

def pair_pnl(buy_price: float, sell_price: float, sizing: Optional[Dict[str, Any]],
             sizing_mode: SizingMode, notional: float) -> float:
    """
    P&L закрытой пары buy -> sell

    Количество берется из sizing покупки: fixed - value / buyPrice,
    percentage - value% от notional / buyPrice; иначе notional / buyPrice.
    """
    if buy_price <= 0:
        return 0.0

    config = SizingConfig.from_dict(sizing) if sizing_mode == SizingMode.CONFIGURED else None
    if config is None:
        quantity = notional / buy_price
    elif config.type == SizingType.FIXED:
        quantity = config.value / buy_price
    else:
        quantity = config.value * notional / 100 / buy_price
    return quantity * (sell_price - buy_price)


# ============================================================================
# ENGINE
# ============================================================================

class BacktestEngine:
    """
    Движок бэктестинга

    Свечи до window_start используются только для прогрева индикаторов.
    На каждом тике не более одного действия: сначала buy, затем sell.
    """

    def __init__(self, store: Optional[Store] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = store
        self.logger = setup_logger(f"{__name__}.BacktestEngine")

        self.indicator_window = self.settings.BACKTEST_INDICATOR_WINDOW
        self.notional = float(self.settings.BACKTEST_DEFAULT_NOTIONAL)

        self.stats = {
            'backtests_run': 0,
            'candles_processed': 0,
            'trades_simulated': 0,
        }

    def _synthetic_tickers(self, candles: Sequence[Candle]) -> List[Ticker24h]:
        """
        Тикер для каждой свечи: цена = close, объем = сумма последних 1440 свечей,
        изменение % - к close 1440 свечей назад (или к первой свече)
        """
        df = candles_to_dataframe(candles)
        volume_24h = df['volume'].rolling(CANDLES_PER_DAY, min_periods=1).sum()
        reference = df['close'].shift(CANDLES_PER_DAY).fillna(df['close'].iloc[0])
        change = np.where(reference != 0, (df['close'] - reference) / reference.replace(0, np.nan) * 100, 0.0)

        return [
            Ticker24h(last_price=float(close), volume=float(volume), price_change_percent=float(pct))
            for close, volume, pct in zip(df['close'], volume_24h, np.nan_to_num(change))
        ]

    # ------------------------------------------------------------------------
    # Агрегация
    # ------------------------------------------------------------------------

    def _summarize(self, trades: List[Trade], final_price: float, sizing_mode: SizingMode) -> BacktestSummary:
        trips = match_round_trips(trades)
        matched_buys = len(trips)
        open_buys = [t for t in trades if t.action == TradeAction.BUY][matched_buys:]

        net_pnl = 0.0
        wins = 0
        largest_gain = 0.0
        largest_loss = 0.0
        hold_minutes = 0.0

        for trip in trips:
            pnl = pair_pnl(trip.buy.price, trip.sell.price, trip.buy.sizing, sizing_mode, self.notional)
            net_pnl += pnl
            if pnl > 0:
                wins += 1
            largest_gain = max(largest_gain, pnl)
            largest_loss = min(largest_loss, pnl)
            held = parse_iso(trip.sell.timestamp) - parse_iso(trip.buy.timestamp)
            hold_minutes += held / timedelta(minutes=1)

        # Открытые позиции по финальной цене
        for buy in open_buys:
            net_pnl += pair_pnl(buy.price, final_price, buy.sizing, sizing_mode, self.notional)

        return BacktestSummary(
            net_pnl=round_money(net_pnl),
            win_rate=round(wins / len(trips) * 10000) / 100 if trips else 0.0,
            total_trades=len(trades),
            total_buys=sum(1 for t in trades if t.action == TradeAction.BUY),
            total_sells=sum(1 for t in trades if t.action == TradeAction.SELL),
            largest_gain=round_money(largest_gain),
            largest_loss=round_money(largest_loss),
            avg_hold_time_minutes=round(hold_minutes / len(trips)) if trips else 0,
        )

    # ------------------------------------------------------------------------
    # Публичный API
    # ------------------------------------------------------------------------

    def run(
        self,
        bot: Union[BotConfig, Dict[str, Any]],
        candles: Sequence[Candle],
        window_start: DateLike,
        window_end: DateLike,
        backtest_id: str,
        sizing_mode: Optional[SizingMode] = None,
        tickers: Optional[Sequence[Ticker24h]] = None,
    ) -> BacktestReport:
        """
        Бэктест бота на серии свечей

        Args:
            bot: Конфигурация бота (или запись хранилища)
            candles: Минутные свечи, включая историю для прогрева
            window_start / window_end: Границы окна (включительно)
            backtest_id: Идентификатор бэктеста
            sizing_mode: Переопределение режима размера позиции
            tickers: Тикеры по одному на свечу; иначе строятся из свечей

        Returns:
            Полный отчет бэктеста
        """
        if not isinstance(bot, BotConfig):
            bot = BotConfig.from_record(bot)
        if tickers is not None and len(tickers) != len(candles):
            raise BacktestError("tickers must have one entry per candle")

        start_ms, end_ms = _to_ms(window_start), _to_ms(window_end)
        order = sorted(range(len(candles)), key=lambda i: candles[i].open_time)
        series = [candles[i] for i in order]
        in_window = [i for i, c in enumerate(series) if start_ms <= c.open_time <= end_ms]
        if not in_window:
            raise BacktestError("No price history data available for the specified window")

        if tickers is not None:
            tickers = [tickers[i] for i in order]
        else:
            tickers = self._synthetic_tickers(series)

        if sizing_mode is None:
            sizing_mode = SizingMode.CONFIGURED if bot.has_sizing else SizingMode.DEFAULT

        self.logger.info(
            f"🧪 Backtest {backtest_id} for bot {bot.bot_id} ({bot.pair}): "
            f"{len(in_window)} candles, sizing={sizing_mode.value}"
        )

        state = ExecutionState()
        trades: List[Trade] = []
        unmatched_buys: Deque[Trade] = deque()
        buckets: 'OrderedDict[str, HourlyBucket]' = OrderedDict()
        bucket_pnl: Dict[str, float] = {}
        running: List[Dict[str, Any]] = []

        with Timer(f"Backtest {backtest_id}"):
            for i in in_window:
                candle = series[i]
                price = candle.close
                history = series[max(0, i - self.indicator_window + 1): i + 1]
                indicators = calculate_all_indicators(history, tickers[i])

                hour_key = to_iso(floor_to_hour(_ms_to_datetime(candle.open_time)))
                bucket = buckets.get(hour_key)
                if bucket is None:
                    if buckets:
                        self._close_bucket(buckets, bucket_pnl, running, trades, sizing_mode)
                    bucket = HourlyBucket(hour_start=hour_key, open_price=price)
                    buckets[hour_key] = bucket
                    bucket_pnl[hour_key] = 0.0
                bucket.close_price = price

                trade = execute_tick(bot, indicators, candle.open_time, price, state)
                if trade is None:
                    continue

                trade.indicators = indicators.to_dict()
                trades.append(trade)
                bucket.total_trades += 1
                if trade.action == TradeAction.BUY:
                    bucket.total_buys += 1
                    unmatched_buys.append(trade)
                else:
                    bucket.total_sells += 1
                    if unmatched_buys:
                        matched = unmatched_buys.popleft()
                        bucket_pnl[hour_key] += pair_pnl(
                            matched.price, trade.price, matched.sizing, sizing_mode, self.notional
                        )

            self._close_bucket(buckets, bucket_pnl, running, trades, sizing_mode)

        final_price = series[in_window[-1]].close
        summary = self._summarize(trades, final_price, sizing_mode)
        accounting = compute_pnl(trades, final_price).to_record()
        accounting['finalPrice'] = final_price
        accounting['running'] = running

        self.stats['backtests_run'] += 1
        self.stats['candles_processed'] += len(in_window)
        self.stats['trades_simulated'] += len(trades)

        self.logger.info(
            f"✅ Backtest {backtest_id} finished: {summary.total_trades} trades, "
            f"netPnl={summary.net_pnl}, winRate={summary.win_rate}%"
        )

        return BacktestReport(
            backtest_id=backtest_id,
            bot_id=bot.bot_id,
            sub=bot.sub,
            window_start=to_iso(parse_iso(window_start)),
            window_end=to_iso(parse_iso(window_end)),
            sizing_mode=sizing_mode,
            bot_config_snapshot=bot.to_record(),
            summary=summary,
            hourly_buckets=list(buckets.values()),
            accounting=accounting,
            trades=[t.to_record() for t in trades],
        )

    def _close_bucket(self, buckets, bucket_pnl, running, trades, sizing_mode) -> None:
        """Финализация последнего часа: округление P&L и точка текущих метрик ленты"""
        hour_key, bucket = next(reversed(buckets.items()))
        bucket.realised_pnl = round_money(bucket_pnl[hour_key])
        metrics = compute_pnl(trades, bucket.close_price)
        running.append({
            'hourStart': hour_key,
            'netPnl': metrics.net_pnl,
            'realisedPnl': metrics.realised_pnl,
            'netPosition': metrics.net_position,
        })

    @log_execution_time()
    async def run_from_store(
        self,
        bot: Union[BotConfig, Dict[str, Any]],
        window_start: DateLike,
        window_end: DateLike,
        backtest_id: str,
        sizing_mode: Optional[SizingMode] = None,
    ) -> BacktestReport:
        """Бэктест на истории price_history: прогрев до window_start + все записи окна"""
        if self.store is None:
            raise BacktestError("BacktestEngine has no store configured")
        if not isinstance(bot, BotConfig):
            bot = BotConfig.from_record(bot)

        start_iso = to_iso(parse_iso(window_start))
        end_iso = to_iso(parse_iso(window_end))
        warmup_end = to_iso(parse_iso(window_start) - timedelta(milliseconds=1))

        warmup_page = await self.store.query(
            'price_history', bot.pair, end=warmup_end, ascending=False, limit=self.indicator_window
        )
        window_records = await self.store.query_all('price_history', bot.pair, start=start_iso, end=end_iso)
        records = list(reversed(warmup_page.items)) + window_records

        self.logger.info(
            f"📊 Loaded {len(window_records)} price records (+{len(warmup_page.items)} warm-up) for {bot.pair}"
        )

        candles: List[Candle] = []
        tickers: List[Ticker24h] = []
        for record in records:
            price = safe_float(record.get('price'))
            candles.append(Candle(
                open_time=_to_ms(record['timestamp']),
                open=price, high=price, low=price, close=price, volume=0.0,
            ))
            tickers.append(Ticker24h(
                last_price=price,
                volume=safe_float(record.get('volume_24h')),
                price_change_percent=safe_float(record.get('price_change_pct')),
            ))

        # Воспроизведение - чистый CPU: уходит в executor, цикл событий не блокируется
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(
            self.run, bot, candles, window_start, window_end, backtest_id,
            sizing_mode=sizing_mode, tickers=tickers,
        ))

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)
