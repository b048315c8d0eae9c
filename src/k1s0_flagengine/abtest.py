"""フラグ上に構築する A/B テストの管理"""

from __future__ import annotations

import math
import threading
import uuid
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

import structlog

from .analytics import AnalyticsRecorder
from .exceptions import FlagEngineError, FlagEngineErrorCodes, FlagValidationError
from .models import (
    ABTestConfig,
    ABTestResults,
    ABTestStatus,
    FallthroughConfig,
    FeatureFlag,
    FlagMetadata,
    FlagTargeting,
    FlagType,
    FlagVariation,
    RolloutConfig,
    RolloutType,
    TimeRange,
    UserContext,
    WeightedVariation,
)
from .registry import FlagRegistry

logger = structlog.stdlib.get_logger(__name__)

# 勝者を決める有意水準
SIGNIFICANCE_THRESHOLD = 0.95
_Z_95 = 1.959963984540054


def _new_test_id() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


def _infer_type(values: list[Any]) -> FlagType:
    if all(isinstance(v, bool) for v in values):
        return FlagType.BOOLEAN
    if all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in values):
        return FlagType.NUMBER
    if all(isinstance(v, str) for v in values):
        return FlagType.STRING
    return FlagType.JSON


def _wilson_interval(successes: int, trials: int) -> tuple[float, float]:
    """Wilson スコア法による 95% 信頼区間。"""
    if trials == 0:
        return (0.0, 0.0)
    p = successes / trials
    z2 = _Z_95 * _Z_95
    denom = 1 + z2 / trials
    centre = (p + z2 / (2 * trials)) / denom
    margin = _Z_95 * math.sqrt(p * (1 - p) / trials + z2 / (4 * trials * trials)) / denom
    return (max(0.0, centre - margin), min(1.0, centre + margin))


def _significance(c1: int, n1: int, c2: int, n2: int) -> float:
    """2 標本比率の z 検定で、差が偶然でない確からしさ（1 - 両側 p 値）を返す。"""
    if n1 == 0 or n2 == 0:
        return 0.0
    pooled = (c1 + c2) / (n1 + n2)
    se = math.sqrt(pooled * (1 - pooled) * (1 / n1 + 1 / n2))
    if se == 0:
        return 0.0
    z = abs(c1 / n1 - c2 / n2) / se
    return math.erf(z / math.sqrt(2))


def build_test_flag(test: ABTestConfig) -> FeatureFlag:
    """テストのバリエーション配分をロールアウトに写したフラグを作る。"""
    values = [v.flag_value for v in test.variations]
    return FeatureFlag(
        key=test.flag_key,
        name=f"AB Test: {test.name}",
        description=test.description,
        type=_infer_type(values),
        default_value=values[0],
        variations=[
            FlagVariation(
                id=v.id,
                value=v.flag_value,
                name=v.name,
                description=v.description,
                weight=v.allocation,
            )
            for v in test.variations
        ],
        targeting=FlagTargeting(
            enabled=True,
            fallthrough=FallthroughConfig(
                rollout=RolloutConfig(
                    type=RolloutType.PERCENTAGE,
                    variations=[WeightedVariation(v.id, v.allocation) for v in test.variations],
                )
            ),
        ),
        metadata=FlagMetadata(
            owner="product",
            team="growth",
            tags=["ab-test", "experiment"],
            category="experiment",
            purpose=f"A/B test: {test.hypothesis}",
        ),
    )


class ABTestManager:
    """A/B テストのライフサイクル（draft → running → paused/completed）を管理する。

    作成時にテスト用のフラグをレジストリへ登録する。テストを削除してもフラグは
    delete_flag=True を指定しない限り残る。
    """

    def __init__(
        self,
        registry: FlagRegistry,
        recorder: AnalyticsRecorder,
        *,
        id_factory: Callable[[], str] = _new_test_id,
    ) -> None:
        self._registry = registry
        self._recorder = recorder
        self._id_factory = id_factory
        self._tests: dict[str, ABTestConfig] = {}
        self._conversions: dict[str, dict[str, datetime]] = {}
        self._lock = threading.Lock()

    def create(self, config: ABTestConfig) -> ABTestConfig:
        """テストを draft で作成し、対応するフラグを登録する。

        Raises:
            FlagValidationError: バリエーション構成が不正な場合
        """
        self._validate(config)
        if config.id and config.id in self._tests:
            raise FlagEngineError(
                FlagEngineErrorCodes.INVALID_TEST_STATE, f"A/B test already exists: {config.id}"
            )
        test = replace(
            config,
            id=config.id or self._id_factory(),
            status=ABTestStatus.DRAFT,
            start_date=None,
            end_date=None,
            results=None,
        )
        self._registry.set(build_test_flag(test))
        with self._lock:
            self._tests[test.id] = test
            self._conversions[test.id] = {}
        logger.info("ab test created", test_id=test.id, flag_key=test.flag_key)
        return test

    def get(self, test_id: str) -> ABTestConfig:
        test = self._tests.get(test_id)
        if test is None:
            raise FlagEngineError(
                FlagEngineErrorCodes.TEST_NOT_FOUND, f"A/B test not found: {test_id}"
            )
        return test

    def list(self, status: ABTestStatus | None = None) -> list[ABTestConfig]:
        tests = list(self._tests.values())
        if status is not None:
            tests = [t for t in tests if t.status == status]
        return tests

    def start(self, test_id: str) -> ABTestConfig:
        """テストを開始する。draft 中の評価結果はキャッシュから捨て、開始後の評価を履歴に残す。"""
        test = self._transition(test_id, {ABTestStatus.DRAFT}, ABTestStatus.RUNNING)
        test.start_date = datetime.now(UTC)
        self._registry.invalidate(test.flag_key)
        logger.info("ab test started", test_id=test_id)
        return test

    def pause(self, test_id: str) -> ABTestConfig:
        test = self._transition(test_id, {ABTestStatus.RUNNING}, ABTestStatus.PAUSED)
        logger.info("ab test paused", test_id=test_id)
        return test

    def resume(self, test_id: str) -> ABTestConfig:
        test = self._transition(test_id, {ABTestStatus.PAUSED}, ABTestStatus.RUNNING)
        self._registry.invalidate(test.flag_key)
        logger.info("ab test resumed", test_id=test_id)
        return test

    def stop(self, test_id: str) -> ABTestConfig:
        """テストを完了させ、その時点の結果を確定する。"""
        test = self._transition(
            test_id, {ABTestStatus.RUNNING, ABTestStatus.PAUSED}, ABTestStatus.COMPLETED
        )
        test.end_date = datetime.now(UTC)
        test.results = self._compute_results(test)
        logger.info(
            "ab test completed",
            test_id=test_id,
            participants=test.results.total_participants,
            winner=test.results.winner,
        )
        return test

    def record_conversion(self, test_id: str, context: UserContext) -> bool:
        """実行中テストのコンバージョンを記録する。初回のみ True。"""
        test = self.get(test_id)
        if test.status != ABTestStatus.RUNNING:
            raise FlagEngineError(
                FlagEngineErrorCodes.INVALID_TEST_STATE,
                f"A/B test {test_id} is {test.status}, conversions need a running test",
            )
        identity = context.identity
        if identity is None:
            return False
        with self._lock:
            conversions = self._conversions.setdefault(test_id, {})
            if identity in conversions:
                return False
            conversions[identity] = datetime.now(UTC)
            return True

    def delete(self, test_id: str, *, delete_flag: bool = False) -> ABTestConfig:
        with self._lock:
            test = self._tests.pop(test_id, None)
            self._conversions.pop(test_id, None)
        if test is None:
            raise FlagEngineError(
                FlagEngineErrorCodes.TEST_NOT_FOUND, f"A/B test not found: {test_id}"
            )
        if delete_flag:
            self._registry.delete(test.flag_key)
        logger.info("ab test deleted", test_id=test_id, flag_deleted=delete_flag)
        return test

    def _transition(
        self, test_id: str, allowed: set[ABTestStatus], target: ABTestStatus
    ) -> ABTestConfig:
        with self._lock:
            test = self.get(test_id)
            if test.status not in allowed:
                raise FlagEngineError(
                    FlagEngineErrorCodes.INVALID_TEST_STATE,
                    f"A/B test {test_id} cannot move from {test.status} to {target}",
                )
            test.status = target
            return test

    @staticmethod
    def _validate(config: ABTestConfig) -> None:
        if not config.flag_key:
            raise FlagValidationError("A/B test needs a flag_key")
        if not config.variations:
            raise FlagValidationError("A/B test needs at least one variation")
        ids = [v.id for v in config.variations]
        if len(set(ids)) != len(ids):
            raise FlagValidationError(f"A/B test variation ids must be unique: {ids}")
        total = sum(v.allocation for v in config.variations)
        if not math.isclose(total, 100.0, abs_tol=1e-6):
            raise FlagValidationError(f"A/B test allocations sum to {total:g}, expected 100")
        if not 0 < config.traffic_allocation <= 100:
            raise FlagValidationError(
                f"traffic_allocation must be in (0, 100], got {config.traffic_allocation}"
            )

    def _compute_results(self, test: ABTestConfig) -> ABTestResults:
        if test.start_date is None or test.end_date is None:
            raise FlagEngineError(
                FlagEngineErrorCodes.INVALID_TEST_STATE,
                f"A/B test {test.id} has no start and end date to compute results for",
            )
        variation_ids = [v.id for v in test.variations]
        window = TimeRange(test.start_date, test.end_date)

        # 参加者ごとに最初に割り当てられたバリエーションを採用する
        assignments: dict[str, str] = {}
        for evaluation in self._recorder.evaluations(test.flag_key, window):
            identity = evaluation.context.identity
            if identity and identity not in assignments and evaluation.variation in variation_ids:
                assignments[identity] = evaluation.variation

        participants = dict.fromkeys(variation_ids, 0)
        for variation in assignments.values():
            participants[variation] += 1
        conversions = dict.fromkeys(variation_ids, 0)
        with self._lock:
            converted = list(self._conversions.get(test.id, {}))
        for identity in converted:
            if identity in assignments:
                conversions[assignments[identity]] += 1

        rates = {
            vid: conversions[vid] / participants[vid] if participants[vid] else 0.0
            for vid in variation_ids
        }
        intervals = {
            vid: _wilson_interval(conversions[vid], participants[vid]) for vid in variation_ids
        }

        ranked = sorted(variation_ids, key=lambda vid: rates[vid], reverse=True)
        significance = 0.0
        winner: str | None = None
        if len(ranked) >= 2:
            leader, runner_up = ranked[0], ranked[1]
            significance = _significance(
                conversions[leader],
                participants[leader],
                conversions[runner_up],
                participants[runner_up],
            )
            if significance >= SIGNIFICANCE_THRESHOLD and rates[leader] > rates[runner_up]:
                winner = leader

        if not assignments:
            recommendation = "No participants recorded; extend the test before deciding"
        elif winner is not None:
            recommendation = f"Roll out variation {winner!r}"
        else:
            recommendation = "Continue monitoring for more data"

        return ABTestResults(
            total_participants=len(assignments),
            participants=participants,
            conversions=conversions,
            conversion_rates=rates,
            statistical_significance=significance,
            confidence_intervals=intervals,
            recommendation=recommendation,
            winner=winner,
        )
