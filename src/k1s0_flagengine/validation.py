"""フラグ定義の書き込み時バリデーション"""

from __future__ import annotations

import math
from typing import Any

from .exceptions import EvaluationError, FlagValidationError
from .models import ConditionOperator, FeatureFlag, FlagType, RolloutConfig
from .targeting import compile_pattern

_VALUELESS_OPERATORS = frozenset({ConditionOperator.EXISTS, ConditionOperator.NOT_EXISTS})


def _matches_type(flag_type: FlagType, value: Any) -> bool:
    if flag_type == FlagType.BOOLEAN:
        return isinstance(value, bool)
    if flag_type == FlagType.STRING:
        return isinstance(value, str)
    if flag_type == FlagType.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    return True


def _check_rollout(
    rollout: RolloutConfig, variation_ids: set[str], where: str, errors: list[str]
) -> None:
    if not rollout.variations:
        errors.append(f"{where}: rollout has no variations")
        return
    total = 0.0
    for entry in rollout.variations:
        if entry.variation not in variation_ids:
            errors.append(f"{where}: unknown variation {entry.variation!r}")
        if entry.weight < 0:
            errors.append(f"{where}: negative weight for {entry.variation!r}")
        total += entry.weight
    if not math.isclose(total, 100.0, abs_tol=1e-6):
        errors.append(f"{where}: weights sum to {total:g}, expected 100")


def validate_flag(flag: FeatureFlag) -> None:
    """フラグ定義の整合性を検証する。

    Raises:
        FlagValidationError: 1 件以上の違反がある場合（全違反をメッセージに含む）
    """
    errors: list[str] = []
    if not flag.key:
        errors.append("key must not be empty")
    if not flag.variations:
        errors.append("variations must not be empty")

    variation_ids: set[str] = set()
    for variation in flag.variations:
        if not variation.id:
            errors.append("variation id must not be empty")
        elif variation.id in variation_ids:
            errors.append(f"duplicate variation id {variation.id!r}")
        variation_ids.add(variation.id)
        if not _matches_type(flag.type, variation.value):
            errors.append(
                f"variation {variation.id!r} value {variation.value!r} is not {flag.type}"
            )
    if not _matches_type(flag.type, flag.default_value):
        errors.append(f"default_value {flag.default_value!r} is not {flag.type}")

    for index, rule in enumerate(flag.targeting.rules):
        where = f"rule[{index}]"
        if rule.variation is None and rule.rollout is None:
            errors.append(f"{where}: needs a variation or a rollout")
        if rule.variation is not None and rule.variation not in variation_ids:
            errors.append(f"{where}: unknown variation {rule.variation!r}")
        if rule.rollout is not None:
            _check_rollout(rule.rollout, variation_ids, where, errors)
        for condition in rule.conditions:
            if condition.operator in _VALUELESS_OPERATORS:
                continue
            if not condition.values:
                errors.append(
                    f"{where}: {condition.operator} on {condition.attribute!r} needs values"
                )
            elif condition.operator == ConditionOperator.MATCHES_REGEX:
                try:
                    compile_pattern(condition.values[0])
                except EvaluationError as e:
                    errors.append(f"{where}: {e}")

    fallthrough = flag.targeting.fallthrough
    if fallthrough.variation is not None and fallthrough.variation not in variation_ids:
        errors.append(f"fallthrough: unknown variation {fallthrough.variation!r}")
    if fallthrough.rollout is not None:
        _check_rollout(fallthrough.rollout, variation_ids, "fallthrough", errors)
    if flag.rollout.variations:
        _check_rollout(flag.rollout, variation_ids, "rollout", errors)

    if errors:
        raise FlagValidationError(f"Invalid flag {flag.key!r}: " + "; ".join(errors))
