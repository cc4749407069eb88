"""
Signal Engine Data Module
Инициализация модуля данных и экспорт основных классов
"""

from .store import Store, MemoryStore, Page, TableSchema, TABLES, get_table
from .database import SqlStore
from .report_store import ReportStore, MemoryReportStore, LocalReportStore, report_key
from .models import (
    Base, StoreItem, Trade, TradeAction, TradeTrigger, PriceHistoryRecord,
    PerformanceSnapshot, PortfolioSnapshot, BacktestMetadata, BacktestStatus,
    BacktestReport, BacktestSummary, HourlyBucket, SizingMode
)
from .market_data import Candle, Ticker24h, PriceCache, MarketDataClient, candles_to_dataframe

# Версия модуля
__version__ = "1.0.0"

# Список экспортируемых классов
__all__ = [
    # Store
    "Store",
    "MemoryStore",
    "SqlStore",
    "Page",
    "TableSchema",
    "TABLES",
    "get_table",

    # Reports
    "ReportStore",
    "MemoryReportStore",
    "LocalReportStore",
    "report_key",

    # Models
    "Base",
    "StoreItem",
    "Trade",
    "TradeAction",
    "TradeTrigger",
    "PriceHistoryRecord",
    "PerformanceSnapshot",
    "PortfolioSnapshot",
    "BacktestMetadata",
    "BacktestStatus",
    "BacktestReport",
    "BacktestSummary",
    "HourlyBucket",
    "SizingMode",

    # Market data
    "Candle",
    "Ticker24h",
    "PriceCache",
    "MarketDataClient",
    "candles_to_dataframe",
]
