"""
Signal Engine Services Module
Сервисы: события, бэктест движок, workflow бэктестов и жизненный цикл ботов
"""

from .notification_service import (
    EventPublisher,
    EventType,
    Event,
    DeliveryStatus,
)
from .backtest_engine import (
    BacktestEngine,
    pair_pnl,
)
from .backtest_workflow import (
    BacktestWorkflow,
    BacktestStateMachine,
    BacktestRequest,
    WorkflowOutcome,
    WorkflowState,
)
from .bot_service import BotService

__version__ = "1.0.0"

__all__ = [
    "EventPublisher",
    "EventType",
    "Event",
    "DeliveryStatus",
    "BacktestEngine",
    "pair_pnl",
    "BacktestWorkflow",
    "BacktestStateMachine",
    "BacktestRequest",
    "WorkflowOutcome",
    "WorkflowState",
    "BotService",
]
