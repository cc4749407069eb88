"""
Signal Engine Helper Functions
Набор универсальных вспомогательных функций: время, числа, async-утилиты, исключения
"""

import asyncio
import inspect
import math
import time
from datetime import datetime, timezone, timedelta
from typing import (
    Any, Awaitable, Callable, Iterable, Iterator, List,
    Optional, Tuple, TypeVar, Union
)

from utils.logger import setup_logger


# ============================================================================
# TYPE DEFINITIONS
# ============================================================================

T = TypeVar('T')
Number = Union[int, float]

logger = setup_logger(__name__)


# ============================================================================
# DATETIME AND TIME UTILITIES
# ============================================================================

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


def get_current_utc_datetime() -> datetime:
    """Получение текущего UTC datetime"""
    return datetime.now(timezone.utc)


def timestamp_to_datetime(timestamp: Union[int, float]) -> datetime:
    """Конвертация timestamp в datetime (поддерживает секунды и миллисекунды)"""
    if isinstance(timestamp, (int, float)):
        # Определяем формат timestamp (секунды или миллисекунды)
        if timestamp > 1e10:
            timestamp = timestamp / 1000
        return datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return timestamp


def datetime_to_timestamp(dt: datetime, milliseconds: bool = True) -> int:
    """Конвертация datetime в timestamp"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    timestamp = dt.timestamp()
    return int(round(timestamp * 1000)) if milliseconds else int(timestamp)


def to_iso(dt: Union[datetime, int, float]) -> str:
    """ISO-8601 строка в UTC с миллисекундами и суффиксом Z"""
    if not isinstance(dt, datetime):
        dt = timestamp_to_datetime(dt)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime('%Y-%m-%dT%H:%M:%S.') + f"{dt.microsecond // 1000:03d}Z"


def parse_iso(value: Union[str, datetime]) -> datetime:
    """Разбор ISO-8601 строки (с суффиксом Z или без) в aware datetime"""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def epoch_seconds(dt: datetime) -> int:
    """Epoch секунды (для TTL полей)"""
    return datetime_to_timestamp(dt, milliseconds=False)


def ttl_from(now: datetime, days: int) -> int:
    """TTL в epoch секундах через `days` дней от `now`"""
    return epoch_seconds(now + timedelta(days=days))


def floor_to_hour(dt: datetime) -> datetime:
    """Начало часа (UTC) для данного момента"""
    return dt.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def format_duration(seconds: float) -> str:
    """Форматирование длительности в читаемый вид"""
    if seconds < 60:
        return f"{seconds:.2f}s"
    elif seconds < 3600:
        return f"{seconds / 60:.1f}m"
    elif seconds < 86400:
        return f"{seconds / 3600:.1f}h"
    else:
        return f"{seconds / 86400:.1f}d"


# ============================================================================
# NUMERIC UTILITIES
# ============================================================================

def safe_float(value: Any, default: float = 0.0) -> float:
    """Безопасная конвертация в float (NaN/inf заменяются на default)"""
    try:
        if value is None or value == "":
            return default
        result = float(value)
    except (ValueError, TypeError):
        return default
    return result if math.isfinite(result) else default


def parse_float_prefix(value: Any) -> float:
    """
    Разбор числа по ведущему числовому префиксу строки
    "12.5abc" -> 12.5, "abc" -> nan
    """
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    end = len(text)
    while end > 0:
        try:
            return float(text[:end])
        except ValueError:
            end -= 1
    return float('nan')


def round_money(value: Number) -> float:
    """Округление денежной величины до 2 знаков"""
    return round(float(value) * 100) / 100


def clamp(value: Number, min_value: Number, max_value: Number) -> float:
    """Ограничение значения диапазоном"""
    return max(min_value, min(max_value, value))


# ============================================================================
# COLLECTION UTILITIES
# ============================================================================

def chunk_list(data: List[T], chunk_size: int) -> Iterator[List[T]]:
    """Разбивка списка на чанки"""
    for i in range(0, len(data), chunk_size):
        yield data[i:i + chunk_size]


# ============================================================================
# ASYNC UTILITIES
# ============================================================================

async def retry_async(
    func: Callable,
    max_retries: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple = (Exception,)
) -> Any:
    """Повторные попытки для асинхронных функций (только для перечисленных исключений)"""
    for attempt in range(max_retries + 1):
        try:
            result = func()
            if inspect.isawaitable(result):
                result = await result
            return result
        except exceptions as e:
            if attempt == max_retries:
                logger.error(f"❌ Max retries ({max_retries}) exceeded for {getattr(func, '__name__', func)}")
                raise

            wait_time = delay * (backoff ** attempt)
            logger.warning(f"⚠️ Attempt {attempt + 1} failed, retrying in {wait_time}s: {e}")
            await asyncio.sleep(wait_time)


async def run_worker_pool(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[Any]],
    concurrency: int,
    name: str = "worker"
) -> List[Tuple[T, Optional[Any], Optional[BaseException]]]:
    """
    Пул воркеров фиксированного размера поверх asyncio.Queue

    Каждый воркер забирает задачи из очереди и сам ловит свои ошибки -
    падение одной задачи не отменяет соседние.

    Returns:
        Список (item, result, error) в порядке завершения
    """
    queue: asyncio.Queue = asyncio.Queue()
    for item in items:
        queue.put_nowait(item)

    outcomes: List[Tuple[T, Optional[Any], Optional[BaseException]]] = []
    pool_size = max(1, min(concurrency, queue.qsize()))

    async def _worker(worker_name: str) -> None:
        while True:
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                result = await worker(item)
                outcomes.append((item, result, None))
            except Exception as e:
                logger.error(f"❌ {worker_name} failed on {item!r}: {e}")
                outcomes.append((item, None, e))
            finally:
                queue.task_done()

    await asyncio.gather(*[_worker(f"{name}-{i}") for i in range(pool_size)])
    return outcomes


# ============================================================================
# PERFORMANCE AND PROFILING
# ============================================================================

class Timer:
    """Контекстный менеджер для измерения времени выполнения"""

    def __init__(self, name: str = "Operation"):
        self.name = name
        self.start_time = None
        self.end_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.end_time = time.perf_counter()
        duration = self.end_time - self.start_time
        logger.debug(f"⏱️ {self.name} took {duration:.4f}s")

    @property
    def elapsed(self) -> float:
        """Время выполнения в секундах"""
        if self.start_time and self.end_time:
            return self.end_time - self.start_time
        return 0.0


# ============================================================================
# EXCEPTION HANDLING
# ============================================================================

class SignalEngineError(Exception):
    """Базовое исключение движка сигналов"""
    pass


class ValidationError(SignalEngineError):
    """Ошибка валидации данных"""
    pass


class ConfigurationError(SignalEngineError):
    """Ошибка конфигурации"""
    pass


class NetworkError(SignalEngineError):
    """Сетевая ошибка"""
    pass


class MarketDataError(NetworkError):
    """Ошибка источника рыночных данных (не-2xx ответ или сбой сети)"""
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StoreError(SignalEngineError):
    """Инфраструктурная ошибка хранилища"""
    pass


class BacktestError(SignalEngineError):
    """Доменная ошибка бэктеста (не повторяется)"""
    pass


class BacktestValidationError(BacktestError):
    """Бэктест не прошел валидацию (бот не найден, чужой бот, уже выполняется)"""
    pass


class WorkflowTimeoutError(BacktestError):
    """Превышен общий таймаут workflow"""
    pass
