"""ターゲティング条件・ルールの評価"""

from __future__ import annotations

import functools
import math
import operator
import re
from collections.abc import Callable
from typing import Any

from .exceptions import EvaluationError
from .models import ConditionOperator, TargetingCondition, TargetingRule, UserContext

_STRING_MATCHERS: dict[ConditionOperator, Callable[[str, str], bool]] = {
    ConditionOperator.EQUALS: operator.eq,
    ConditionOperator.IN: operator.eq,
    ConditionOperator.CONTAINS: lambda attr, value: value in attr,
    ConditionOperator.STARTS_WITH: str.startswith,
    ConditionOperator.ENDS_WITH: str.endswith,
}

_NEGATED: dict[ConditionOperator, ConditionOperator] = {
    ConditionOperator.NOT_EQUALS: ConditionOperator.EQUALS,
    ConditionOperator.NOT_CONTAINS: ConditionOperator.CONTAINS,
    ConditionOperator.NOT_IN: ConditionOperator.IN,
}

_NUMERIC_COMPARATORS: dict[ConditionOperator, Callable[[float, float], bool]] = {
    ConditionOperator.GREATER_THAN: operator.gt,
    ConditionOperator.LESS_THAN: operator.lt,
    ConditionOperator.GREATER_EQUAL: operator.ge,
    ConditionOperator.LESS_EQUAL: operator.le,
}


@functools.lru_cache(maxsize=256)
def compile_pattern(pattern: str) -> re.Pattern[str]:
    """正規表現をコンパイルする。不正なパターンは EvaluationError。"""
    try:
        return re.compile(pattern)
    except re.error as e:
        raise EvaluationError(f"Invalid regex pattern {pattern!r}: {e}", cause=e) from e


def _as_string(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _as_number(value: Any) -> float | None:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


class ConditionEvaluator:
    """単一のターゲティング条件をコンテキストに対して評価する。"""

    def evaluate(self, condition: TargetingCondition, context: UserContext) -> bool:
        """条件を評価する。

        数値比較で数値に変換できない場合は例外にせず False を返す。
        matches_regex の不正パターンのみ EvaluationError を送出する。
        """
        value = context.get(condition.attribute)
        result = self._apply(condition.operator, value, condition.values)
        return not result if condition.negate else result

    def _apply(self, op: ConditionOperator, value: Any, values: list[str]) -> bool:
        if op == ConditionOperator.EXISTS:
            return value is not None
        if op == ConditionOperator.NOT_EXISTS:
            return value is None
        if op in _NEGATED:
            return not self._apply(_NEGATED[op], value, values)
        if op in _NUMERIC_COMPARATORS:
            left = _as_number(value)
            right = _as_number(values[0]) if values else None
            if left is None or right is None:
                return False
            return _NUMERIC_COMPARATORS[op](left, right)
        if op == ConditionOperator.MATCHES_REGEX:
            if not values:
                raise EvaluationError("matches_regex requires a pattern")
            pattern = compile_pattern(values[0])
            return value is not None and pattern.search(_as_string(value)) is not None
        matcher = _STRING_MATCHERS.get(op)
        if matcher is None:
            raise EvaluationError(f"Unsupported operator: {op}")
        if value is None:
            return False
        text = _as_string(value)
        return any(matcher(text, candidate) for candidate in values)


class RuleEvaluator:
    """ターゲティングルール（条件の AND）を評価する。"""

    def __init__(self, conditions: ConditionEvaluator | None = None) -> None:
        self._conditions = conditions or ConditionEvaluator()

    def evaluate(self, rule: TargetingRule, context: UserContext) -> bool:
        # 最初に失敗した条件で打ち切る
        return all(self._conditions.evaluate(c, context) for c in rule.conditions)
