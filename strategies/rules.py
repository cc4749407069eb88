"""
Signal Engine Rule Evaluator
Рекурсивная оценка пользовательских деревьев правил против снапшота индикаторов
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Tuple, Union

from utils.logger import setup_logger
from utils.helpers import ValidationError, parse_float_prefix
from utils.indicators import (
    INDICATOR_FIELDS, STRING_INDICATOR_FIELDS, IndicatorSnapshot
)


logger = setup_logger(__name__)

# Глубже этого дерево правил не принимаем при валидации
MAX_RULE_DEPTH = 20


# ============================================================================
# ENUMS AND TYPES
# ============================================================================

class Combinator(str, Enum):
    """Способ объединения дочерних условий"""
    AND = "and"
    OR = "or"


class Operator(str, Enum):
    """Операторы сравнения"""
    GT = ">"
    LT = "<"
    GTE = ">="
    LTE = "<="
    EQ = "="
    BETWEEN = "between"


@dataclass(frozen=True)
class Rule:
    """Одно условие: поле индикатора, оператор и значение (строка)"""
    field: str
    operator: str
    value: str

    def to_dict(self) -> Dict[str, Any]:
        return {'field': self.field, 'operator': self.operator, 'value': self.value}


@dataclass(frozen=True)
class RuleGroup:
    """Группа условий с комбинатором; дети - Rule или вложенные RuleGroup"""
    combinator: Combinator
    rules: Tuple['RuleNode', ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'combinator': self.combinator.value,
            'rules': [child.to_dict() for child in self.rules],
        }


RuleNode = Union[Rule, RuleGroup]
Indicators = Union[IndicatorSnapshot, Mapping[str, Any]]


# ============================================================================
# PARSING
# ============================================================================

def parse_rule_group(data: Union[RuleGroup, Mapping[str, Any]]) -> RuleGroup:
    """
    Конвертация JSON-формы дерева в типизированное дерево

    Дочерний узел с ключом rules - группа, иначе - правило.
    """
    if isinstance(data, RuleGroup):
        return data
    if not isinstance(data, Mapping):
        raise ValidationError(f"Rule group must be an object, got {type(data).__name__}")

    raw_combinator = str(data.get('combinator', '')).lower()
    try:
        combinator = Combinator(raw_combinator)
    except ValueError:
        raise ValidationError(f"Unknown combinator: {data.get('combinator')!r}")

    raw_rules = data.get('rules')
    if raw_rules is None:
        raw_rules = []
    if not isinstance(raw_rules, (list, tuple)):
        raise ValidationError("Rule group 'rules' must be a list")

    children: List[RuleNode] = []
    for child in raw_rules:
        if isinstance(child, (Rule, RuleGroup)):
            children.append(child)
        elif isinstance(child, Mapping) and 'rules' in child:
            children.append(parse_rule_group(child))
        elif isinstance(child, Mapping):
            children.append(Rule(
                field=str(child.get('field', '')),
                operator=str(child.get('operator', '')),
                value='' if child.get('value') is None else str(child.get('value')),
            ))
        else:
            raise ValidationError(f"Invalid rule node: {child!r}")

    return RuleGroup(combinator=combinator, rules=tuple(children))


# ============================================================================
# EVALUATION
# ============================================================================

def _lookup(indicators: Indicators, name: str) -> Any:
    # IndicatorSnapshot и dict оба поддерживают get()
    return indicators.get(name)


def _parse_between(value: str) -> Tuple[float, float]:
    parts = value.split(',')
    if len(parts) < 2:
        return float('nan'), float('nan')
    return parse_float_prefix(parts[0]), parse_float_prefix(parts[1])


def evaluate_rule(rule: Rule, indicators: Indicators) -> bool:
    """
    Оценка одного условия

    Неизвестное поле -> False. Строковые поля поддерживают только "=".
    Числовое значение разбирается по ведущему числовому префиксу; NaN -> False.
    """
    field_value = _lookup(indicators, rule.field)
    if field_value is None:
        return False

    if isinstance(field_value, str):
        return rule.operator == Operator.EQ.value and field_value == rule.value

    if isinstance(field_value, bool) or not isinstance(field_value, (int, float)):
        return False

    if rule.operator == Operator.BETWEEN.value:
        low, high = _parse_between(rule.value)
        # NaN сравнения всегда False
        return low <= field_value <= high

    target = parse_float_prefix(rule.value)
    if rule.operator == Operator.GT.value:
        return field_value > target
    if rule.operator == Operator.LT.value:
        return field_value < target
    if rule.operator == Operator.GTE.value:
        return field_value >= target
    if rule.operator == Operator.LTE.value:
        return field_value <= target
    if rule.operator == Operator.EQ.value:
        return field_value == target
    return False


def evaluate_rule_group(group: Union[RuleGroup, Mapping[str, Any]], indicators: Indicators) -> bool:
    """
    Рекурсивная оценка группы правил

    Пустая группа -> False при любом комбинаторе. and - все дети истинны,
    or - хотя бы один. Некорректное дерево оценивается как False.
    """
    if not isinstance(group, RuleGroup):
        try:
            group = parse_rule_group(group)
        except ValidationError as e:
            logger.warning(f"⚠️ Malformed rule group evaluated as false: {e}")
            return False

    if not group.rules:
        return False

    results = [
        evaluate_rule_group(child, indicators) if isinstance(child, RuleGroup)
        else evaluate_rule(child, indicators)
        for child in group.rules
    ]

    if group.combinator == Combinator.AND:
        return all(results)
    return any(results)


# ============================================================================
# VALIDATION
# ============================================================================

def rule_group_depth(group: RuleGroup) -> int:
    """Глубина дерева (группа без вложенных групп - 1)"""
    nested = [rule_group_depth(child) for child in group.rules if isinstance(child, RuleGroup)]
    return 1 + max(nested, default=0)


def validate_rule_group(group: Union[RuleGroup, Mapping[str, Any]], path: str = "root") -> List[str]:
    """
    Проверка дерева правил

    Returns:
        Список человекочитаемых проблем (пустой если дерево корректно)
    """
    try:
        group = parse_rule_group(group)
    except ValidationError as e:
        return [f"{path}: {e}"]

    problems: List[str] = []
    if path == "root" and rule_group_depth(group) > MAX_RULE_DEPTH:
        problems.append(f"{path}: rule tree deeper than {MAX_RULE_DEPTH} levels")

    if not group.rules:
        problems.append(f"{path}: group has no conditions")

    operators = {op.value for op in Operator}
    for index, child in enumerate(group.rules):
        child_path = f"{path}.rules[{index}]"
        if isinstance(child, RuleGroup):
            problems.extend(validate_rule_group(child, child_path))
            continue

        if child.field not in INDICATOR_FIELDS:
            problems.append(f"{child_path}: unknown field {child.field!r}")
            continue
        if child.operator not in operators:
            problems.append(f"{child_path}: unknown operator {child.operator!r}")
            continue

        if child.field in STRING_INDICATOR_FIELDS:
            if child.operator != Operator.EQ.value:
                problems.append(f"{child_path}: field {child.field!r} only supports '='")
        elif child.operator == Operator.BETWEEN.value:
            low, high = _parse_between(child.value)
            if math.isnan(low) or math.isnan(high):
                problems.append(f"{child_path}: between expects 'low,high', got {child.value!r}")
        elif math.isnan(parse_float_prefix(child.value)):
            problems.append(f"{child_path}: value {child.value!r} is not numeric")

    return problems
