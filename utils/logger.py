"""
Signal Engine Logging System
Централизованная система логирования с поддержкой файлов и консоли
"""

import re
import sys
import json
import time
import asyncio
import logging
import logging.handlers
import traceback
from pathlib import Path
from datetime import datetime
from functools import lru_cache, wraps
from typing import Optional, Dict, Any


# ============================================================================
# КОНСТАНТЫ И КОНФИГУРАЦИЯ
# ============================================================================

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
EVENTS_LOGGER = "engine.events"

# Эмодзи для разных уровней логирования
LOG_EMOJIS = {
    'DEBUG': '🔍',
    'INFO': 'ℹ️',
    'WARNING': '⚠️',
    'ERROR': '❌',
    'CRITICAL': '🔥'
}

LOG_COLORS = {
    'DEBUG': '\033[36m',
    'INFO': '\033[32m',
    'WARNING': '\033[33m',
    'ERROR': '\033[31m',
    'CRITICAL': '\033[35m',
    'RESET': '\033[0m'
}

# Стандартные атрибуты LogRecord, которые не попадают в JSON как extra
_RESERVED_RECORD_KEYS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'exc_info', 'exc_text',
    'stack_info', 'taskName', 'message', 'asctime'
}


# ============================================================================
# КАСТОМНЫЕ ФОРМАТТЕРЫ
# ============================================================================

class ColoredFormatter(logging.Formatter):
    """Форматтер с цветным выводом для консоли"""

    def format(self, record: logging.LogRecord) -> str:
        level_name = record.levelname
        color = LOG_COLORS.get(level_name, LOG_COLORS['RESET'])
        emoji = LOG_EMOJIS.get(level_name, '')
        reset = LOG_COLORS['RESET']

        # Копия record чтобы не портить уровень для других handlers
        record_copy = logging.makeLogRecord(record.__dict__)
        record_copy.levelname = f"{color}{emoji} {level_name}{reset}"

        return super().format(record_copy)


class JSONFormatter(logging.Formatter):
    """JSON форматтер для структурированного логирования"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': traceback.format_exception(*record.exc_info)
            }

        # Поля из extra
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        return json.dumps(log_data, default=str, ensure_ascii=False)


# ============================================================================
# ФИЛЬТРЫ
# ============================================================================

class SensitiveDataFilter(logging.Filter):
    """Фильтр для скрытия чувствительных данных (пароли в DSN, токены)"""

    SENSITIVE_PATTERNS = ['password', 'token', 'secret', '://']

    _MASKS = [
        (re.compile(r'(password["\']?\s*[:=]\s*["\']?)([^"\'>\s]+)', re.IGNORECASE), r'\1***MASKED***'),
        (re.compile(r'(token["\']?\s*[:=]\s*["\']?)([^"\'>\s]+)', re.IGNORECASE), r'\1***MASKED***'),
        (re.compile(r'(secret["\']?\s*[:=]\s*["\']?)([^"\'>\s]+)', re.IGNORECASE), r'\1***MASKED***'),
        (re.compile(r'(://[^:/@\s]+:)([^@\s]+)(@)'), r'\1***MASKED***\3'),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        message = str(record.msg)
        lowered = message.lower()
        if any(pattern in lowered for pattern in self.SENSITIVE_PATTERNS):
            record.msg = mask_sensitive_data(message)
        return True


def mask_sensitive_data(message: str) -> str:
    """Маскировка чувствительных данных в строке"""
    for pattern, replacement in SensitiveDataFilter._MASKS:
        message = pattern.sub(replacement, message)
    return message


# ============================================================================
# ОСНОВНОЙ КЛАСС ЛОГИРОВАНИЯ
# ============================================================================

class SignalEngineLogger:
    """
    Главный класс для управления логированием движка
    """

    def __init__(self):
        self._loggers: Dict[str, logging.Logger] = {}
        self._handlers: Dict[str, logging.Handler] = {}
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def setup(
        self,
        log_level: str = "INFO",
        log_format: Optional[str] = None,
        log_date_format: Optional[str] = None,
        log_to_file: bool = False,
        log_file_path: str = "logs/signal_engine.log",
        log_file_max_size: int = 10 * 1024 * 1024,
        log_file_backup_count: int = 5,
        colored_console: bool = True,
        json_format: bool = False,
    ) -> None:
        """
        Настройка системы логирования

        Args:
            log_level: Уровень логирования
            log_format: Формат логов
            log_date_format: Формат даты
            log_to_file: Логировать в файл
            log_file_path: Путь к файлу логов
            log_file_max_size: Максимальный размер файла
            log_file_backup_count: Количество архивных файлов
            colored_console: Цветной вывод в консоль
            json_format: JSON формат для файлов
        """
        if self._initialized:
            return

        log_format = log_format or DEFAULT_FORMAT
        log_date_format = log_date_format or DEFAULT_DATE_FORMAT

        if colored_console:
            console_formatter = ColoredFormatter(log_format, log_date_format)
        else:
            console_formatter = logging.Formatter(log_format, log_date_format)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(console_formatter)
        console_handler.addFilter(SensitiveDataFilter())
        self._handlers['console'] = console_handler

        if log_to_file:
            Path(log_file_path).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                filename=log_file_path,
                maxBytes=log_file_max_size,
                backupCount=log_file_backup_count,
                encoding='utf-8'
            )
            if json_format:
                file_handler.setFormatter(JSONFormatter())
            else:
                file_handler.setFormatter(logging.Formatter(log_format, log_date_format))
            file_handler.addFilter(SensitiveDataFilter())
            self._handlers['file'] = file_handler

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

        # Заменяем только свои handlers, чужие (например pytest caplog) не трогаем
        for handler in self._handlers.values():
            root_logger.addHandler(handler)

        self._initialized = True

        self.get_logger("system.logger").info(
            f"🚀 Signal Engine logger initialized (level: {log_level}, file: {log_to_file})"
        )

    def get_logger(self, name: str) -> logging.Logger:
        """Получение логгера по имени с кешированием"""
        if name not in self._loggers:
            self._loggers[name] = logging.getLogger(name)
        return self._loggers[name]

    def log_engine_event(self, event_type: str, subject: str, message: str = "", **extra_data) -> None:
        """
        Структурированная запись доменного события движка

        subject - пара, бот или пользователь, к которому относится событие;
        в JSON формате поля extra попадают в запись как есть.
        """
        self.get_logger(EVENTS_LOGGER).info(message, extra={
            'event_type': event_type,
            'subject': subject,
            'log_type': 'engine_event',
            **extra_data
        })

    def shutdown(self) -> None:
        """Корректное завершение работы логгеров"""
        root_logger = logging.getLogger()
        for handler in self._handlers.values():
            root_logger.removeHandler(handler)
            handler.close()
        self._handlers.clear()
        self._initialized = False


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

@lru_cache()
def get_logger_instance() -> SignalEngineLogger:
    """Получение единственного экземпляра логгера"""
    return SignalEngineLogger()


engine_logger = get_logger_instance()


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

def setup_logger(name: str, log_level: str = "INFO", **kwargs) -> logging.Logger:
    """Быстрая настройка логгера"""
    if not engine_logger.initialized:
        engine_logger.setup(log_level=log_level, **kwargs)
    return engine_logger.get_logger(name)


def log_engine_event(event_type: str, subject: str, message: str, **extra) -> None:
    engine_logger.log_engine_event(event_type=event_type, subject=subject, message=message, **extra)


# ============================================================================
# DECORATORS
# ============================================================================

def _report_timing(logger_name: str, func_name: str, started: float,
                   error: Optional[BaseException] = None) -> None:
    logger = engine_logger.get_logger(logger_name)
    elapsed = time.perf_counter() - started
    if error is None:
        logger.debug(f"⏱️ {func_name} executed in {elapsed:.3f}s")
    else:
        logger.error(f"❌ {func_name} failed after {elapsed:.3f}s: {error}")


def log_execution_time(logger_name: Optional[str] = None):
    """
    Декоратор: время выполнения в DEBUG, ошибка с временем в ERROR

    Работает и для корутин, и для обычных функций; исключение
    пробрасывается дальше без изменений.
    """
    def decorator(func):
        name = logger_name or func.__module__

        if asyncio.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                started = time.perf_counter()
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    _report_timing(name, func.__name__, started, e)
                    raise
                _report_timing(name, func.__name__, started)
                return result
            return async_wrapper

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            started = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _report_timing(name, func.__name__, started, e)
                raise
            _report_timing(name, func.__name__, started)
            return result
        return sync_wrapper

    return decorator


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def configure_external_loggers(level: str = "WARNING"):
    """Настройка уровня логирования для внешних библиотек"""
    external_loggers = [
        'aiohttp.access',
        'aiohttp.client',
        'sqlalchemy.engine',
        'sqlalchemy.pool',
        'aiosqlite',
        'asyncio',
    ]

    for logger_name in external_loggers:
        logging.getLogger(logger_name).setLevel(getattr(logging, level.upper(), logging.WARNING))


def setup_from_settings(settings) -> None:
    """Настройка логирования по объекту Settings"""
    # setup_logger на уровне модулей уже поднял консоль по умолчанию
    if engine_logger.initialized:
        engine_logger.shutdown()
    engine_logger.setup(
        log_level=settings.LOG_LEVEL.value,
        log_format=settings.LOG_FORMAT,
        log_date_format=settings.LOG_DATE_FORMAT,
        log_to_file=settings.LOG_TO_FILE,
        log_file_path=settings.LOG_FILE_PATH,
        log_file_max_size=settings.LOG_FILE_MAX_SIZE,
        log_file_backup_count=settings.LOG_FILE_BACKUP_COUNT,
        colored_console=not settings.LOG_JSON,
        json_format=settings.LOG_JSON,
    )
    configure_external_loggers("WARNING" if settings.is_production else "INFO")
