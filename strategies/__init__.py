"""
Signal Engine Strategies Module
Модуль правил ботов: дерево условий и конфигурация бота
"""

from .rules import (
    Combinator,
    Operator,
    Rule,
    RuleGroup,
    RuleNode,
    parse_rule_group,
    evaluate_rule,
    evaluate_rule_group,
    validate_rule_group,
    rule_group_depth,
)
from .bot_config import (
    BotConfig,
    BotStatus,
    ExecutionMode,
    SizingConfig,
    SizingType,
    StopLossConfig,
    TakeProfitConfig,
)

__version__ = "1.0.0"

__all__ = [
    # Rules
    "Combinator",
    "Operator",
    "Rule",
    "RuleGroup",
    "RuleNode",
    "parse_rule_group",
    "evaluate_rule",
    "evaluate_rule_group",
    "validate_rule_group",
    "rule_group_depth",

    # Bot configuration
    "BotConfig",
    "BotStatus",
    "ExecutionMode",
    "SizingConfig",
    "SizingType",
    "StopLossConfig",
    "TakeProfitConfig",
]
