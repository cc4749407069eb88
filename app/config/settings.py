"""
Signal Engine Configuration Settings
Конфигурация движка сигналов, рекордеров и бэктестов
"""

import logging
from enum import Enum
from functools import lru_cache
from typing import Any, Dict

from pydantic import Field, ValidationError as PydanticValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from utils.helpers import ConfigurationError


class Environment(str, Enum):
    """Типы окружений"""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class LogLevel(str, Enum):
    """Уровни логирования"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """
    Главный класс конфигурации с валидацией
    """

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        validate_assignment=True,
        use_enum_values=True,
        extra='forbid',
    )

    # ============================================================================
    # ОСНОВНЫЕ НАСТРОЙКИ ПРИЛОЖЕНИЯ
    # ============================================================================

    APP_NAME: str = Field(default="Signal Engine", description="Название приложения")
    VERSION: str = Field(default="1.0.0", description="Версия приложения")
    ENVIRONMENT: Environment = Field(default=Environment.DEVELOPMENT, description="Окружение")
    DEBUG: bool = Field(default=False, description="Режим отладки")


    # ============================================================================
    # РЫНОЧНЫЕ ДАННЫЕ
    # ============================================================================

    MARKET_DATA_BASE_URL: str = Field(default="https://api.binance.com", description="Базовый URL биржевого API")
    MARKET_DATA_SYMBOL: str = Field(default="BTCUSDT", description="Символ на бирже")
    MARKET_DATA_PAIR: str = Field(default="BTC/USDT", description="Торговая пара в записях")
    MARKET_DATA_INTERVAL: str = Field(default="1m", description="Интервал свечей")
    MARKET_DATA_CANDLE_LIMIT: int = Field(default=200, description="Количество свечей в окне")
    MARKET_DATA_TIMEOUT: int = Field(default=15, description="Timeout запросов (секунды)")
    PRICE_CACHE_TTL_SECONDS: int = Field(default=60, description="TTL кеша последней цены")


    # ============================================================================
    # ХРАНИЛИЩЕ
    # ============================================================================

    DATABASE_URL: str = Field(default="sqlite+aiosqlite:///signal_engine.db", description="URL базы данных")
    DATABASE_ECHO: bool = Field(default=False, description="Логировать SQL запросы")
    STORE_PAGE_SIZE: int = Field(default=100, description="Размер страницы при пагинации")

    BACKTEST_REPORTS_DIR: str = Field(default="data/reports", description="Папка для JSON отчетов")


    # ============================================================================
    # РЕКОРДЕРЫ ПРОИЗВОДИТЕЛЬНОСТИ
    # ============================================================================

    RECORDER_CONCURRENCY: int = Field(default=25, description="Размер пула воркеров")
    RECORDER_INTERVAL_MINUTES: int = Field(default=5, description="Интервал запуска рекордеров")
    PERFORMANCE_TTL_DAYS: int = Field(default=90, description="TTL снапшотов производительности")
    PRICE_HISTORY_TTL_DAYS: int = Field(default=30, description="TTL истории цен")
    PORTFOLIO_LOOKBACK_MINUTES: int = Field(default=10, description="Окно свежести снапшотов ботов")


    # ============================================================================
    # БЭКТЕСТИНГ НАСТРОЙКИ
    # ============================================================================

    BACKTEST_WINDOW_DAYS: int = Field(default=30, description="Окно бэктеста (дни)")
    BACKTEST_MIN_HISTORY_DAYS: int = Field(default=7, description="Минимум истории для бэктеста")
    BACKTEST_MIN_WAIT_SECONDS: int = Field(default=300, description="Минимальная задержка перед запуском")
    BACKTEST_MAX_WAIT_SECONDS: int = Field(default=600, description="Максимальная задержка перед запуском")
    BACKTEST_WORKFLOW_TIMEOUT: float = Field(default=900.0, description="Общий timeout workflow (секунды)")
    BACKTEST_STAGE_RETRIES: int = Field(default=2, description="Retry на инфраструктурные ошибки")
    BACKTEST_DEFAULT_NOTIONAL: float = Field(default=1000.0, description="Номинал сделки по умолчанию")
    BACKTEST_MAX_RESULTS_PER_BOT: int = Field(default=5, description="Сколько результатов хранить на бота")
    BACKTEST_INDICATOR_WINDOW: int = Field(default=200, description="Окно свечей для индикаторов")


    # ============================================================================
    # ЛОГИРОВАНИЕ
    # ============================================================================

    LOG_LEVEL: LogLevel = Field(default=LogLevel.INFO, description="Уровень логирования")
    LOG_FORMAT: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Формат логов"
    )
    LOG_DATE_FORMAT: str = Field(default="%Y-%m-%d %H:%M:%S", description="Формат даты в логах")
    LOG_TO_FILE: bool = Field(default=False, description="Логировать в файл")
    LOG_FILE_PATH: str = Field(default="logs/signal_engine.log", description="Путь к файлу логов")
    LOG_FILE_MAX_SIZE: int = Field(default=10485760, description="Макс размер файла логов (10MB)")
    LOG_FILE_BACKUP_COUNT: int = Field(default=5, description="Количество архивных файлов логов")
    LOG_JSON: bool = Field(default=False, description="JSON формат файловых логов")


    # ============================================================================
    # VALIDATORS
    # ============================================================================

    @field_validator('ENVIRONMENT', mode='before')
    @classmethod
    def validate_environment(cls, v):
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @field_validator('LOG_LEVEL', mode='before')
    @classmethod
    def validate_log_level(cls, v):
        if isinstance(v, str):
            return LogLevel(v.upper())
        return v

    @field_validator('RECORDER_CONCURRENCY', 'STORE_PAGE_SIZE', 'MARKET_DATA_CANDLE_LIMIT',
                     'BACKTEST_MAX_RESULTS_PER_BOT', 'BACKTEST_INDICATOR_WINDOW')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError('Value must be a positive integer')
        return v

    @field_validator('PERFORMANCE_TTL_DAYS', 'PRICE_HISTORY_TTL_DAYS', 'BACKTEST_WINDOW_DAYS')
    @classmethod
    def validate_days(cls, v):
        if v <= 0:
            raise ValueError('Day counts must be greater than 0')
        return v

    @field_validator('BACKTEST_STAGE_RETRIES', 'BACKTEST_MIN_WAIT_SECONDS', 'BACKTEST_MIN_HISTORY_DAYS')
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError('Value must not be negative')
        return v

    @model_validator(mode='after')
    def validate_wait_bounds(self):
        if self.BACKTEST_MIN_WAIT_SECONDS > self.BACKTEST_MAX_WAIT_SECONDS:
            raise ValueError('BACKTEST_MIN_WAIT_SECONDS must not exceed BACKTEST_MAX_WAIT_SECONDS')
        return self


    # ============================================================================
    # COMPUTED PROPERTIES
    # ============================================================================

    @property
    def is_production(self) -> bool:
        """Проверка продакшн окружения"""
        return self.ENVIRONMENT == Environment.PRODUCTION


    # ============================================================================
    # METHODS
    # ============================================================================

    def get_market_data_config(self) -> Dict[str, Any]:
        """Конфигурация для клиента рыночных данных"""
        return {
            'base_url': self.MARKET_DATA_BASE_URL,
            'symbol': self.MARKET_DATA_SYMBOL,
            'interval': self.MARKET_DATA_INTERVAL,
            'limit': self.MARKET_DATA_CANDLE_LIMIT,
            'timeout': self.MARKET_DATA_TIMEOUT,
        }

    def log_startup_config(self, logger: logging.Logger):
        """Безопасное логирование конфигурации при старте"""
        safe_config = {
            'APP_NAME': self.APP_NAME,
            'VERSION': self.VERSION,
            'ENVIRONMENT': self.ENVIRONMENT,
            'MARKET_DATA_BASE_URL': self.MARKET_DATA_BASE_URL,
            'MARKET_DATA_PAIR': self.MARKET_DATA_PAIR,
            'RECORDER_CONCURRENCY': self.RECORDER_CONCURRENCY,
            'BACKTEST_WINDOW_DAYS': self.BACKTEST_WINDOW_DAYS,
            'LOG_LEVEL': self.LOG_LEVEL,
            'DATABASE_URL': self.DATABASE_URL.split('://', 1)[0] + '://***',  # Скрываем credentials
        }

        logger.info("🚀 Signal Engine Configuration:")
        for key, value in safe_config.items():
            logger.info(f"  {key}: {value}")


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Создание единственного экземпляра настроек с кешированием

    Raises:
        ConfigurationError: переменные окружения не прошли валидацию
    """
    try:
        return Settings()
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
