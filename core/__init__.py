"""
Signal Engine Core Module
Ядро системы - учет P&L, рекордеры производительности и публикация цен, исполнение ботов
"""

from .accountant import (
    PnlMetrics,
    RoundTrip,
    average_buy_cost,
    compute_pnl,
    running_pnl,
    match_round_trips,
)
from .performance_recorder import (
    RecorderResult,
    BotPerformanceRecorder,
    PortfolioPerformanceRecorder,
)
from .price_publisher import PricePublisher
from .execution import (
    ExecutionState,
    check_stop_loss_take_profit,
    try_execute,
    execute_tick,
)
from .bot_executor import BotExecutor

__version__ = "1.0.0"

__all__ = [
    # Accounting
    "PnlMetrics",
    "RoundTrip",
    "average_buy_cost",
    "compute_pnl",
    "running_pnl",
    "match_round_trips",

    # Recorders
    "RecorderResult",
    "BotPerformanceRecorder",
    "PortfolioPerformanceRecorder",

    # Prices
    "PricePublisher",

    # Execution
    "ExecutionState",
    "check_stop_loss_take_profit",
    "try_execute",
    "execute_tick",
    "BotExecutor",
]
