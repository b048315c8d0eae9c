"""FlagEngine: フラグ評価エンジンのファサード"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Any

import structlog

from .abtest import ABTestManager
from .analytics import AnalyticsRecorder, AnalyticsReporter, AnalyticsSink
from .cache import EvaluationCache
from .config import EngineConfig
from .evaluator import Evaluator
from .exceptions import FlagEngineError, FlagEngineErrorCodes
from .models import (
    ABTestConfig,
    ABTestStatus,
    FeatureFlag,
    FlagAnalytics,
    FlagEvaluation,
    FlagFilter,
    SystemStatus,
    TimeRange,
    UserContext,
)
from .refresh import FlagRefresher
from .registry import FlagRegistry
from .rollout import RolloutBucketer
from .source import DefinitionSource

logger = structlog.stdlib.get_logger(__name__)


class FlagEngine:
    """フラグ評価・管理・A/B テストをまとめたエンジン。

    評価系（evaluate_flag, get_*_flag, is_enabled）とライフサイクル
    （start, stop, refresh）は非同期、定義や A/B テストの管理は同期メソッド。
    評価はすべてメモリ上で完結し、I/O を伴うのは定義ソースの取得と
    分析シンクへの書き出しだけである。

    Example:
        engine = FlagEngine.from_config(config, source=StaticDefinitionSource(default_flags()))
        await engine.start()
        enabled = await engine.get_boolean_flag("new_dashboard_enabled", UserContext(user_id="u1"))
        await engine.stop()
    """

    def __init__(
        self,
        *,
        registry: FlagRegistry | None = None,
        cache: EvaluationCache | None = None,
        recorder: AnalyticsRecorder | None = None,
        bucketer: RolloutBucketer | None = None,
        source: DefinitionSource | None = None,
        sink: AnalyticsSink | None = None,
        targeting_enabled: bool = True,
        refresh_interval: float = 300.0,
        report_interval: float = 300.0,
        analytics_enabled: bool = True,
    ) -> None:
        self._cache = cache if cache is not None else EvaluationCache()
        self._registry = registry if registry is not None else FlagRegistry(self._cache)
        self._recorder = recorder if recorder is not None else AnalyticsRecorder()
        self._evaluator = Evaluator(
            self._registry,
            self._cache,
            self._recorder,
            bucketer=bucketer,
            targeting_enabled=targeting_enabled,
        )
        self._tests = ABTestManager(self._registry, self._recorder)
        self._refresher = (
            FlagRefresher(self._registry, source, refresh_interval) if source is not None else None
        )
        self._refresh_interval = refresh_interval
        self._reporter = (
            AnalyticsReporter(self._recorder, sink, report_interval) if analytics_enabled else None
        )
        self._started = False

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        source: DefinitionSource | None = None,
        sink: AnalyticsSink | None = None,
    ) -> FlagEngine:
        """EngineConfig からエンジンを組み立てる。"""
        cache = EvaluationCache(
            enabled=config.caching.enabled,
            ttl=config.caching.ttl,
            max_size=config.caching.max_size,
        )
        analytics = config.analytics
        return cls(
            cache=cache,
            registry=FlagRegistry(cache),
            recorder=AnalyticsRecorder(
                analytics.max_history,
                enabled=analytics.enabled and analytics.track_evaluations,
            ),
            bucketer=RolloutBucketer(
                anonymous_by_session=config.rollout.anonymous_bucket_by_session
            ),
            source=source,
            sink=sink,
            targeting_enabled=config.targeting.enabled,
            refresh_interval=config.refresh_interval,
            report_interval=analytics.report_interval,
            analytics_enabled=analytics.enabled,
        )

    async def start(self) -> None:
        """初回の定義取得を行い、定期再取得と分析レポートのタスクを開始する。

        初回取得に失敗してもエンジンは起動し、次の周期で再試行する。
        """
        if self._started:
            return
        if self._refresher is not None:
            try:
                await self._refresher.refresh_once()
            except Exception as e:
                logger.warning("initial flag load failed", error=str(e))
            if self._refresh_interval > 0:
                await self._refresher.start()
        if self._reporter is not None:
            await self._reporter.start()
        self._started = True
        logger.info("flag engine started", flags=len(self._registry))

    async def stop(self) -> None:
        """バックグラウンドタスクを停止する。"""
        if self._refresher is not None:
            await self._refresher.stop()
        if self._reporter is not None:
            await self._reporter.stop()
        self._started = False
        logger.info("flag engine stopped")

    async def refresh(self) -> int:
        """定義ソースから即時に再取得し、反映したフラグ数を返す。

        Raises:
            FlagEngineError: 定義ソースの取得に失敗した場合
        """
        if self._refresher is None:
            return 0
        return await self._refresher.refresh_once()

    async def evaluate_flag(
        self, flag_key: str, context: UserContext, default_value: Any = None
    ) -> FlagEvaluation:
        """フラグを評価し、値・バリエーション・理由を返す。"""
        return self._evaluator.evaluate(flag_key, context, default_value)

    async def evaluate(self, flag_key: str, context: UserContext) -> FlagEvaluation:
        return self._evaluator.evaluate(flag_key, context)

    async def is_enabled(self, flag_key: str, context: UserContext) -> bool:
        return await self.get_boolean_flag(flag_key, context, False)

    async def get_flag(self, flag_key: str) -> FeatureFlag:
        """フラグ定義を返す。

        Raises:
            FlagEngineError: フラグが存在しない場合（FLAG_NOT_FOUND）
        """
        flag = self._registry.get(flag_key)
        if flag is None:
            raise FlagEngineError(
                FlagEngineErrorCodes.FLAG_NOT_FOUND, f"Flag not found: {flag_key}"
            )
        return flag

    async def get_boolean_flag(
        self, flag_key: str, context: UserContext, default_value: bool = False
    ) -> bool:
        evaluation = self._evaluator.evaluate(flag_key, context, default_value)
        return bool(evaluation.value)

    async def get_string_flag(
        self, flag_key: str, context: UserContext, default_value: str = ""
    ) -> str:
        value = self._evaluator.evaluate(flag_key, context, default_value).value
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    async def get_number_flag(
        self, flag_key: str, context: UserContext, default_value: float = 0
    ) -> float:
        value = self._evaluator.evaluate(flag_key, context, default_value).value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        try:
            number = float(value)
        except (TypeError, ValueError):
            return default_value
        return default_value if math.isnan(number) else number

    async def get_json_flag(
        self, flag_key: str, context: UserContext, default_value: Any = None
    ) -> Any:
        return self._evaluator.evaluate(flag_key, context, default_value).value

    def set_flag(self, flag: FeatureFlag) -> FeatureFlag:
        """フラグを検証して登録する。

        Raises:
            FlagValidationError: 定義が不正な場合
        """
        return self._registry.set(flag)

    def delete_flag(self, flag_key: str) -> bool:
        return self._registry.delete(flag_key)

    def list_flags(self) -> list[FeatureFlag]:
        return self._registry.list()

    def get_flags_by_filter(self, criteria: FlagFilter) -> list[FeatureFlag]:
        return self._registry.filter(criteria)

    def create_ab_test(self, config: ABTestConfig) -> ABTestConfig:
        return self._tests.create(config)

    def start_ab_test(self, test_id: str) -> ABTestConfig:
        return self._tests.start(test_id)

    def pause_ab_test(self, test_id: str) -> ABTestConfig:
        return self._tests.pause(test_id)

    def resume_ab_test(self, test_id: str) -> ABTestConfig:
        return self._tests.resume(test_id)

    def stop_ab_test(self, test_id: str) -> ABTestConfig:
        return self._tests.stop(test_id)

    def record_conversion(self, test_id: str, context: UserContext) -> bool:
        return self._tests.record_conversion(test_id, context)

    def get_ab_test(self, test_id: str) -> ABTestConfig:
        return self._tests.get(test_id)

    def list_ab_tests(self, status: ABTestStatus | None = None) -> list[ABTestConfig]:
        return self._tests.list(status)

    def delete_ab_test(self, test_id: str, *, delete_flag: bool = False) -> ABTestConfig:
        return self._tests.delete(test_id, delete_flag=delete_flag)

    def get_flag_analytics(self, flag_key: str, time_range: TimeRange) -> FlagAnalytics:
        return self._recorder.query(flag_key, time_range)

    def get_system_status(self) -> SystemStatus:
        flags = self._registry.list()
        midnight = datetime.now(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
        return SystemStatus(
            total_flags=len(flags),
            active_flags=sum(1 for f in flags if f.is_active),
            cache_size=len(self._cache),
            evaluations_today=self._recorder.count_since(midnight),
            active_tests=len(self._tests.list(ABTestStatus.RUNNING)),
        )
