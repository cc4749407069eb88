"""
Signal Engine Technical Indicators
Набор технических индикаторов для снапшота рынка (SMA, EMA, RSI, MACD, Bollinger)
"""

import math
from dataclasses import dataclass, asdict, fields
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

from utils.logger import setup_logger
from utils.helpers import safe_float


# ============================================================================
# TYPES AND CONSTANTS
# ============================================================================

logger = setup_logger(__name__)

PriceData = Union[List[float], np.ndarray, pd.Series]

# Индекс close в массиве kline: [openTime, open, high, low, close, volume, ...]
KLINE_CLOSE_INDEX = 4

MACD_FAST = 12
MACD_SLOW = 26
MACD_SIGNAL = 9
BOLLINGER_PERIOD = 20
BOLLINGER_K = 2.0
BOLLINGER_NEAR_RATIO = 0.1

NEUTRAL_RSI = 50.0


class MacdSignal(str, Enum):
    """Классификация MACD относительно сигнальной линии"""
    BULLISH_CROSSOVER = "bullish_crossover"
    BEARISH_CROSSOVER = "bearish_crossover"
    ABOVE_SIGNAL = "above_signal"
    BELOW_SIGNAL = "below_signal"


class BandPosition(str, Enum):
    """Положение цены относительно полос Боллинджера"""
    ABOVE_UPPER = "above_upper"
    NEAR_UPPER = "near_upper"
    BETWEEN_BANDS = "between_bands"
    NEAR_LOWER = "near_lower"
    BELOW_LOWER = "below_lower"


@dataclass(frozen=True)
class MacdResult:
    histogram: float
    signal: str


@dataclass(frozen=True)
class BollingerResult:
    upper: float
    lower: float
    position: str


@dataclass(frozen=True)
class IndicatorSnapshot:
    """
    Снапшот индикаторов на один тик рынка

    Всегда заполнен полностью; числовые поля всегда конечны.
    """
    price: float = 0.0
    volume_24h: float = 0.0
    price_change_pct: float = 0.0
    rsi_14: float = NEUTRAL_RSI
    rsi_7: float = NEUTRAL_RSI
    macd_histogram: float = 0.0
    macd_signal: str = MacdSignal.BELOW_SIGNAL.value
    sma_20: float = 0.0
    sma_50: float = 0.0
    sma_200: float = 0.0
    ema_12: float = 0.0
    ema_20: float = 0.0
    ema_26: float = 0.0
    bb_upper: float = 0.0
    bb_lower: float = 0.0
    bb_position: str = BandPosition.BETWEEN_BANDS.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'IndicatorSnapshot':
        values: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            if f.name in STRING_INDICATOR_FIELDS:
                values[f.name] = str(data[f.name])
            else:
                values[f.name] = safe_float(data[f.name], f.default)
        return cls(**values)

    def get(self, name: str, default: Any = None) -> Any:
        """Доступ к полю по имени (как у словаря)"""
        if name in INDICATOR_FIELDS:
            return getattr(self, name)
        return default


STRING_INDICATOR_FIELDS = frozenset({'macd_signal', 'bb_position'})
INDICATOR_FIELDS = tuple(f.name for f in fields(IndicatorSnapshot))
NUMERIC_INDICATOR_FIELDS = frozenset(name for name in INDICATOR_FIELDS if name not in STRING_INDICATOR_FIELDS)


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def _to_array(data: PriceData) -> np.ndarray:
    """Конвертация в float массив без NaN и inf"""
    if isinstance(data, pd.Series):
        arr = data.to_numpy(dtype=float)
    elif isinstance(data, np.ndarray):
        arr = data.astype(float)
    else:
        arr = np.array([safe_float(x, float('nan')) for x in data], dtype=float)
    return arr[np.isfinite(arr)]


def _finite(value: float, default: float) -> float:
    value = float(value)
    return value if math.isfinite(value) else default


def _ema_series(arr: np.ndarray, period: int) -> np.ndarray:
    """
    Ряд EMA начиная с индекса period-1 (семя = SMA первых period значений)
    """
    k = 2.0 / (period + 1)
    values = np.empty(len(arr) - period + 1)
    ema = arr[:period].mean()
    values[0] = ema
    for i, close in enumerate(arr[period:], start=1):
        ema = close * k + ema * (1 - k)
        values[i] = ema
    return values


# ============================================================================
# MOVING AVERAGES
# ============================================================================

def calculate_sma(closes: PriceData, period: int) -> float:
    """
    Simple Moving Average - среднее последних period закрытий
    0 если данных недостаточно
    """
    arr = _to_array(closes)
    if period < 1 or len(arr) < period:
        return 0.0
    return _finite(arr[-period:].mean(), 0.0)


def calculate_ema(closes: PriceData, period: int) -> float:
    """
    Exponential Moving Average, k = 2/(period+1), семя - SMA первых period закрытий
    0 если данных недостаточно; при len == period равна SMA
    """
    arr = _to_array(closes)
    if period < 1 or len(arr) < period:
        return 0.0
    return _finite(_ema_series(arr, period)[-1], 0.0)


# ============================================================================
# MOMENTUM
# ============================================================================

def calculate_rsi(closes: PriceData, period: int = 14) -> float:
    """
    Relative Strength Index по простому среднему прироста/убытка
    за последние period изменений (без сглаживания Уайлдера).

    Недостаточно данных -> 50, только рост -> 100, ровный ряд -> 50.
    """
    arr = _to_array(closes)
    if period < 1 or len(arr) < period + 1:
        return NEUTRAL_RSI

    deltas = np.diff(arr[-(period + 1):])
    avg_gain = deltas[deltas > 0].sum() / period
    avg_loss = -deltas[deltas < 0].sum() / period

    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else NEUTRAL_RSI

    rsi = 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)
    return float(np.clip(_finite(rsi, NEUTRAL_RSI), 0.0, 100.0))


def calculate_macd(closes: PriceData) -> MacdResult:
    """
    MACD (12, 26, 9)

    Ряд MACD строится из бегущих EMA(12)/EMA(26) начиная с 26-го закрытия,
    сигнальная линия - EMA(9) этого ряда (0 пока в ряду меньше 9 точек).
    histogram = MACD - signal line.
    """
    arr = _to_array(closes)
    if len(arr) < MACD_SLOW:
        return MacdResult(0.0, MacdSignal.BELOW_SIGNAL.value)

    ema_fast = _ema_series(arr, MACD_FAST)[MACD_SLOW - MACD_FAST:]
    ema_slow = _ema_series(arr, MACD_SLOW)
    macd_line = float(ema_fast[-1] - ema_slow[-1])
    # Точка семени EMA(26) в ряд не входит
    macd_series = (ema_fast - ema_slow)[1:]

    signal_line = 0.0
    if len(macd_series) >= MACD_SIGNAL:
        signal_line = float(_ema_series(macd_series, MACD_SIGNAL)[-1])

    prev_macd = float(macd_series[-2]) if len(macd_series) >= 2 else macd_line
    histogram = _finite(macd_line - signal_line, 0.0)

    # Пересечение: предыдущее значение было по другую сторону (или на линии)
    if prev_macd <= signal_line and macd_line > signal_line:
        signal = MacdSignal.BULLISH_CROSSOVER
    elif prev_macd >= signal_line and macd_line < signal_line:
        signal = MacdSignal.BEARISH_CROSSOVER
    elif macd_line > signal_line:
        signal = MacdSignal.ABOVE_SIGNAL
    else:
        signal = MacdSignal.BELOW_SIGNAL

    return MacdResult(histogram, signal.value)


# ============================================================================
# VOLATILITY
# ============================================================================

def calculate_bollinger_bands(
    closes: PriceData,
    period: int = BOLLINGER_PERIOD,
    k: float = BOLLINGER_K
) -> BollingerResult:
    """
    Bollinger Bands: SMA(period) +/- k * популяционное стандартное отклонение
    Позиция классифицируется по последнему закрытию.
    """
    arr = _to_array(closes)
    if len(arr) < period:
        return BollingerResult(0.0, 0.0, BandPosition.BETWEEN_BANDS.value)

    window = arr[-period:]
    middle = window.mean()
    std_dev = window.std(ddof=0)

    upper = _finite(middle + k * std_dev, 0.0)
    lower = _finite(middle - k * std_dev, 0.0)
    current_price = float(arr[-1])
    near = (upper - lower) * BOLLINGER_NEAR_RATIO

    if current_price > upper:
        position = BandPosition.ABOVE_UPPER
    elif current_price < lower:
        position = BandPosition.BELOW_LOWER
    elif current_price > upper - near:
        position = BandPosition.NEAR_UPPER
    elif current_price < lower + near:
        position = BandPosition.NEAR_LOWER
    else:
        position = BandPosition.BETWEEN_BANDS

    return BollingerResult(upper, lower, position.value)


# ============================================================================
# SNAPSHOT
# ============================================================================

def extract_closes(candles: Sequence[Any]) -> List[float]:
    """
    Закрытия из свечей: объекты с атрибутом close, словари или массивы kline
    Нечисловые значения пропускаются.
    """
    closes = []
    for candle in candles:
        if hasattr(candle, 'close'):
            raw = candle.close
        elif isinstance(candle, Mapping):
            raw = candle.get('close')
        else:
            raw = candle[KLINE_CLOSE_INDEX] if len(candle) > KLINE_CLOSE_INDEX else None
        value = safe_float(raw, float('nan'))
        if math.isfinite(value):
            closes.append(value)
    return closes


def _ticker_field(ticker: Any, attr: str, key: str) -> float:
    if ticker is None:
        return 0.0
    if isinstance(ticker, Mapping):
        return safe_float(ticker.get(key), 0.0)
    return safe_float(getattr(ticker, attr, None), 0.0)


def calculate_all_indicators(candles: Optional[Sequence[Any]], ticker: Any) -> IndicatorSnapshot:
    """
    Полный снапшот из 16 индикаторов

    price / volume_24h / price_change_pct берутся из тикера, свечи - только
    для скользящих статистик. Никогда не бросает исключений.
    """
    try:
        closes = np.array(extract_closes(candles or []), dtype=float)
        macd = calculate_macd(closes)
        bands = calculate_bollinger_bands(closes)

        return IndicatorSnapshot(
            price=_ticker_field(ticker, 'last_price', 'lastPrice'),
            volume_24h=_ticker_field(ticker, 'volume', 'volume'),
            price_change_pct=_ticker_field(ticker, 'price_change_percent', 'priceChangePercent'),
            rsi_14=calculate_rsi(closes, 14),
            rsi_7=calculate_rsi(closes, 7),
            macd_histogram=macd.histogram,
            macd_signal=macd.signal,
            sma_20=calculate_sma(closes, 20),
            sma_50=calculate_sma(closes, 50),
            sma_200=calculate_sma(closes, 200),
            ema_12=calculate_ema(closes, 12),
            ema_20=calculate_ema(closes, 20),
            ema_26=calculate_ema(closes, 26),
            bb_upper=bands.upper,
            bb_lower=bands.lower,
            bb_position=bands.position,
        )
    except (TypeError, ValueError, IndexError) as e:
        logger.error(f"❌ Indicator calculation failed, returning defaults: {e}")
        return IndicatorSnapshot(price=_ticker_field(ticker, 'last_price', 'lastPrice'))
