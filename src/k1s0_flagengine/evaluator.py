"""フラグ評価のオーケストレーション"""

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

import structlog

from .analytics import AnalyticsRecorder
from .cache import EvaluationCache
from .exceptions import EvaluationError, FlagEngineErrorCodes
from .metrics import (
    flag_cache_hits_total,
    flag_evaluation_duration_seconds,
    flag_evaluations_total,
)
from .models import (
    DEFAULT_VARIATION,
    EvaluationReason,
    FeatureFlag,
    FlagEvaluation,
    ReasonKind,
    UserContext,
)
from .registry import FlagRegistry
from .rollout import RolloutBucketer
from .targeting import RuleEvaluator

logger = structlog.stdlib.get_logger(__name__)


@dataclass(frozen=True)
class _Resolved:
    """キャッシュに載せる解決結果。flag_version で書き換え前の結果を弾く。"""

    value: Any
    variation: str
    reason: EvaluationReason
    flag_version: datetime


class Evaluator:
    """レジストリ・キャッシュ・ターゲティング・ロールアウト・履歴をまとめて評価する。

    評価の流れ:
        1. フラグなし → 呼び出し側の既定値（ERROR / FLAG_NOT_FOUND）
        2. 無効または非 active → flag.default_value（OFF）
        3. キャッシュヒット → キャッシュ値（from_cache=True）
        4. ルールを順に評価し、最初に一致したもの（RULE_MATCH）
        5. fallthrough の variation / rollout / default_value（FALLTHROUGH）
        6. キャッシュへ保存し、履歴に記録

    1, 2 は履歴に記録するがキャッシュしない。3 は記録しない。
    """

    def __init__(
        self,
        registry: FlagRegistry,
        cache: EvaluationCache,
        recorder: AnalyticsRecorder,
        *,
        rules: RuleEvaluator | None = None,
        bucketer: RolloutBucketer | None = None,
        targeting_enabled: bool = True,
    ) -> None:
        self._registry = registry
        self._cache = cache
        self._recorder = recorder
        self._rules = rules or RuleEvaluator()
        self._bucketer = bucketer or RolloutBucketer()
        self._targeting_enabled = targeting_enabled

    def evaluate(
        self, flag_key: str, context: UserContext, default_value: Any = None
    ) -> FlagEvaluation:
        started = time.perf_counter()
        evaluation = self._evaluate(flag_key, context, default_value)
        flag_evaluation_duration_seconds.record(
            time.perf_counter() - started, {"flag_key": flag_key}
        )
        flag_evaluations_total.add(
            1, {"flag_key": flag_key, "reason": str(evaluation.reason.kind)}
        )
        return evaluation

    def _evaluate(
        self, flag_key: str, context: UserContext, default_value: Any
    ) -> FlagEvaluation:
        flag = self._registry.current(flag_key)
        if flag is None:
            logger.debug("flag not found", flag_key=flag_key)
            return self._record(
                FlagEvaluation(
                    flag_key=flag_key,
                    value=False if default_value is None else default_value,
                    variation=DEFAULT_VARIATION,
                    reason=EvaluationReason(
                        ReasonKind.ERROR, error_kind=FlagEngineErrorCodes.FLAG_NOT_FOUND
                    ),
                    context=context,
                )
            )

        if not flag.is_active:
            return self._record(
                FlagEvaluation(
                    flag_key=flag_key,
                    value=flag.default_value,
                    variation=DEFAULT_VARIATION,
                    reason=EvaluationReason(ReasonKind.OFF),
                    context=context,
                )
            )

        cached = self._cache.get(flag_key, context)
        if isinstance(cached, _Resolved) and cached.flag_version == flag.updated_at:
            flag_cache_hits_total.add(1, {"flag_key": flag_key})
            return FlagEvaluation(
                flag_key=flag_key,
                value=cached.value,
                variation=cached.variation,
                reason=replace(cached.reason, from_cache=True),
                context=context,
            )

        resolved = self._resolve(flag, context)
        self._cache.put(flag_key, context, resolved)
        return self._record(
            FlagEvaluation(
                flag_key=flag_key,
                value=resolved.value,
                variation=resolved.variation,
                reason=resolved.reason,
                context=context,
            )
        )

    def _resolve(self, flag: FeatureFlag, context: UserContext) -> _Resolved:
        if flag.targeting.enabled and self._targeting_enabled:
            for index, rule in enumerate(flag.targeting.rules):
                if not self._rules.evaluate(rule, context):
                    continue
                if rule.variation is not None:
                    variation_id = rule.variation
                elif rule.rollout is not None:
                    variation_id = self._bucketer.bucket(rule.rollout, context)
                else:
                    raise EvaluationError(f"Rule {rule.id!r} has neither variation nor rollout")
                return self._resolved(
                    flag,
                    variation_id,
                    EvaluationReason(ReasonKind.RULE_MATCH, rule_index=index, rule_id=rule.id),
                )

        reason = EvaluationReason(ReasonKind.FALLTHROUGH)
        fallthrough = flag.targeting.fallthrough
        if fallthrough.variation is not None:
            return self._resolved(flag, fallthrough.variation, reason)
        if fallthrough.rollout is not None:
            return self._resolved(flag, self._bucketer.bucket(fallthrough.rollout, context), reason)
        return _Resolved(flag.default_value, DEFAULT_VARIATION, reason, flag.updated_at)

    @staticmethod
    def _resolved(flag: FeatureFlag, variation_id: str, reason: EvaluationReason) -> _Resolved:
        variation = flag.get_variation(variation_id)
        value = variation.value if variation is not None else flag.default_value
        return _Resolved(value, variation_id, reason, flag.updated_at)

    def _record(self, evaluation: FlagEvaluation) -> FlagEvaluation:
        self._recorder.record(evaluation)
        return evaluation
