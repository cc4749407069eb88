"""
Signal Engine Market Data Client
Загрузка свечей и 24h тикера с биржевого REST API, кеш последней цены
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import aiohttp
import pandas as pd

from app.config.settings import Settings, get_settings
from utils.helpers import MarketDataError, Timer, get_current_utc_datetime, safe_float
from utils.logger import setup_logger


# ============================================================================
# CONSTANTS
# ============================================================================

KLINES_ENDPOINT = "/api/v3/klines"
TICKER_24H_ENDPOINT = "/api/v3/ticker/24hr"


# ============================================================================
# DATACLASSES
# ============================================================================

@dataclass(frozen=True)
class Candle:
    """Свеча OHLCV; open_time в миллисекундах"""
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_kline(cls, row: Sequence[Any]) -> 'Candle':
        """Разбор массива kline: [openTime, open, high, low, close, volume, ...]"""
        if len(row) < 6:
            raise MarketDataError(f"Malformed kline row: {row!r}")
        return cls(
            open_time=int(safe_float(row[0])),
            open=safe_float(row[1]),
            high=safe_float(row[2]),
            low=safe_float(row[3]),
            close=safe_float(row[4]),
            volume=safe_float(row[5]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'open_time': self.open_time,
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume,
        }


@dataclass(frozen=True)
class Ticker24h:
    """Снапшот 24h тикера"""
    last_price: float
    volume: float
    price_change_percent: float

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> 'Ticker24h':
        return cls(
            last_price=safe_float(data.get('lastPrice')),
            volume=safe_float(data.get('volume')),
            price_change_percent=safe_float(data.get('priceChangePercent')),
        )


def candles_to_dataframe(candles: Sequence[Candle]) -> pd.DataFrame:
    """Конвертация свечей в pandas DataFrame (индекс - время открытия UTC)"""
    if not candles:
        return pd.DataFrame(columns=['open_time', 'open', 'high', 'low', 'close', 'volume'])

    df = pd.DataFrame([candle.to_dict() for candle in candles])
    df['datetime'] = pd.to_datetime(df['open_time'], unit='ms', utc=True)
    df.set_index('datetime', inplace=True)
    df.sort_index(inplace=True)
    return df


class PriceCache:
    """
    Кеш последней цены: значение + время истечения

    get() возвращает значение только пока оно свежее; stale_value() -
    последнее известное значение независимо от возраста.
    """

    def __init__(self, ttl_seconds: float = 60.0):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._value: Optional[float] = None
        self._expires_at: Optional[datetime] = None

    def get(self, now: Optional[datetime] = None) -> Optional[float]:
        now = now or get_current_utc_datetime()
        if self._value is None or self._expires_at is None or now >= self._expires_at:
            return None
        return self._value

    def set(self, value: float, now: Optional[datetime] = None) -> None:
        now = now or get_current_utc_datetime()
        self._value = value
        self._expires_at = now + self.ttl

    def stale_value(self) -> Optional[float]:
        return self._value

    def invalidate(self) -> None:
        self._value = None
        self._expires_at = None


# ============================================================================
# CLIENT
# ============================================================================

class MarketDataClient:
    """
    Клиент публичного REST API биржи (Binance-совместимый)

    Любой не-2xx ответ или сетевая ошибка -> MarketDataError.
    """

    def __init__(self, settings: Optional[Settings] = None, session: Optional[aiohttp.ClientSession] = None):
        self.settings = settings or get_settings()
        self.logger = setup_logger(f"{__name__}.MarketDataClient")

        config = self.settings.get_market_data_config()
        self.base_url = config['base_url'].rstrip('/')
        self.symbol = config['symbol']
        self.interval = config['interval']
        self.limit = config['limit']
        self.timeout = config['timeout']

        self._session = session
        self._owns_session = session is None

        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'cache_fallbacks': 0,
        }

    async def __aenter__(self):
        await self._create_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _create_session(self):
        """Создание HTTP сессии"""
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                headers={'User-Agent': f"{self.settings.APP_NAME}/{self.settings.VERSION}"}
            )
            self._owns_session = True

    async def close(self):
        """Закрытие сессии"""
        if self._session is not None and self._owns_session:
            await self._session.close()
            self.logger.info("🔌 Market data client session closed")
        self._session = None

    async def _make_request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        GET запрос к API

        Returns:
            Разобранный JSON ответ
        """
        if self._session is None:
            await self._create_session()

        self.stats['total_requests'] += 1
        url = f"{self.base_url}{endpoint}"

        try:
            with Timer(f"Market data GET {endpoint}"):
                async with self._session.get(url, params=params or {}) as response:
                    data = await self._handle_response(response, endpoint)
        except MarketDataError:
            self.stats['failed_requests'] += 1
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.stats['failed_requests'] += 1
            self.logger.error(f"❌ Market data request failed: GET {endpoint} - {e}")
            raise MarketDataError(f"Request to {endpoint} failed: {e}") from e

        self.stats['successful_requests'] += 1
        return data

    async def _handle_response(self, response: aiohttp.ClientResponse, endpoint: str) -> Any:
        """Проверка статуса и разбор JSON"""
        text = await response.text()
        if response.status >= 300 or response.status < 200:
            self.logger.error(f"❌ Market data HTTP {response.status} for {endpoint}: {text[:200]}")
            raise MarketDataError(f"{endpoint} returned HTTP {response.status}", status_code=response.status)
        try:
            return json.loads(text)
        except ValueError as e:
            raise MarketDataError(f"{endpoint} returned invalid JSON: {e}", status_code=response.status) from e

    # ============================================================================
    # PUBLIC API
    # ============================================================================

    async def fetch_candles(
        self,
        symbol: Optional[str] = None,
        interval: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Candle]:
        """Последние свечи, от старых к новым"""
        rows = await self._make_request(KLINES_ENDPOINT, {
            'symbol': symbol or self.symbol,
            'interval': interval or self.interval,
            'limit': limit or self.limit,
        })
        if not isinstance(rows, list):
            raise MarketDataError(f"Unexpected klines payload: {type(rows).__name__}")
        return [Candle.from_kline(row) for row in rows]

    async def fetch_ticker(self, symbol: Optional[str] = None) -> Ticker24h:
        """24h тикер"""
        data = await self._make_request(TICKER_24H_ENDPOINT, {'symbol': symbol or self.symbol})
        if not isinstance(data, dict):
            raise MarketDataError(f"Unexpected ticker payload: {type(data).__name__}")
        return Ticker24h.from_api(data)

    async def fetch_snapshot_inputs(self, symbol: Optional[str] = None) -> Tuple[List[Candle], Ticker24h]:
        """Свечи и тикер параллельно"""
        candles, ticker = await asyncio.gather(
            self.fetch_candles(symbol),
            self.fetch_ticker(symbol),
        )
        self.logger.debug(f"📊 Fetched {len(candles)} candles and ticker for {symbol or self.symbol}")
        return candles, ticker

    async def fetch_last_price(self, cache: PriceCache, symbol: Optional[str] = None,
                               now: Optional[datetime] = None) -> float:
        """
        Последняя цена через кеш

        Свежий кеш -> без запроса. Ошибка запроса -> устаревшее значение
        кеша, если оно есть; иначе ошибка пробрасывается.
        """
        cached = cache.get(now)
        if cached is not None:
            return cached

        try:
            ticker = await self.fetch_ticker(symbol)
        except MarketDataError as e:
            stale = cache.stale_value()
            if stale is None:
                raise
            self.stats['cache_fallbacks'] += 1
            self.logger.warning(f"⚠️ Using stale cached price {stale} after error: {e}")
            return stale

        cache.set(ticker.last_price, now)
        return ticker.last_price

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)
