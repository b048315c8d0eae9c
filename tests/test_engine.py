"""FlagEngine のユニットテスト"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from k1s0_flagengine import (
    ABTestConfig,
    ABTestStatus,
    ABTestVariation,
    ConditionOperator,
    EngineConfig,
    FeatureFlag,
    FeatureFlagClientProtocol,
    FlagEngine,
    FlagEngineError,
    FlagFilter,
    FlagTargeting,
    FlagType,
    FlagValidationError,
    FlagVariation,
    ReasonKind,
    StaticDefinitionSource,
    TargetingCondition,
    TargetingRule,
    TimeRange,
    UserContext,
    default_flags,
)
from k1s0_flagengine.exceptions import FlagEngineErrorCodes


def participants_flag() -> FeatureFlag:
    return FeatureFlag(
        key="max_debate_participants",
        type=FlagType.NUMBER,
        default_value=4,
        variations=[FlagVariation("4", 4), FlagVariation("8", 8)],
        targeting=FlagTargeting(
            enabled=True,
            rules=[
                TargetingRule(
                    id="pilot-schools",
                    variation="8",
                    conditions=[
                        TargetingCondition("schoolId", ConditionOperator.IN, ["S1"])
                    ],
                )
            ],
        ),
    )


def today() -> TimeRange:
    now = datetime.now(UTC)
    return TimeRange(now - timedelta(hours=1), now + timedelta(hours=1))


async def test_new_dashboard_scenario() -> None:
    """ターゲティング無効の真偽値フラグは default_value と FALLTHROUGH。"""
    engine = FlagEngine()
    engine.set_flag(FeatureFlag(key="new_dashboard_enabled", default_value=False))
    for ctx in (UserContext(user_id="u1"), UserContext(school_id="S1"), UserContext()):
        assert await engine.get_boolean_flag("new_dashboard_enabled", ctx, True) is False
        result = await engine.evaluate_flag("new_dashboard_enabled", ctx)
        assert result.reason.kind == ReasonKind.FALLTHROUGH


async def test_max_debate_participants_scenario() -> None:
    """schoolId in [S1] のルールで 8 と RULE_MATCH を返す。"""
    engine = FlagEngine()
    engine.set_flag(participants_flag())
    ctx = UserContext(user_id="t1", school_id="S1")
    assert await engine.get_number_flag("max_debate_participants", ctx, 0) == 8
    result = await engine.evaluate_flag("max_debate_participants", ctx)
    assert result.reason.kind == ReasonKind.RULE_MATCH
    other = UserContext(user_id="t2", school_id="S2")
    assert await engine.get_number_flag("max_debate_participants", other, 0) == 4


async def test_ab_test_scenario() -> None:
    """50/50 の A/B テストを 10000 人で実施して結果を確定する。"""
    engine = FlagEngine.from_config(EngineConfig())
    test = engine.create_ab_test(
        ABTestConfig(
            name="Onboarding copy",
            flag_key="onboarding_copy",
            variations=[
                ABTestVariation("control", 50, "Welcome"),
                ABTestVariation("treatment", 50, "Let's debate"),
            ],
        )
    )
    engine.start_ab_test(test.id)
    for i in range(10_000):
        ctx = UserContext(user_id=f"student-{i}")
        await engine.get_string_flag("onboarding_copy", ctx)
        if i % 10 == 0:
            engine.record_conversion(test.id, ctx)
    results = engine.stop_ab_test(test.id).results
    assert results.total_participants == 10_000
    assert set(results.conversion_rates) == {"control", "treatment"}
    assert engine.get_ab_test(test.id).status == ABTestStatus.COMPLETED


async def test_missing_flag_returns_default() -> None:
    """存在しないフラグは既定値を返す。"""
    engine = FlagEngine()
    ctx = UserContext(user_id="u")
    assert await engine.get_boolean_flag("missing", ctx, True) is True
    assert await engine.get_string_flag("missing", ctx, "x") == "x"
    assert await engine.get_number_flag("missing", ctx, 3) == 3
    assert await engine.get_json_flag("missing", ctx, {"a": 1}) == {"a": 1}
    assert await engine.is_enabled("missing", ctx) is False
    result = await engine.evaluate("missing", ctx)
    assert result.reason.kind == ReasonKind.ERROR


async def test_typed_accessor_coercions() -> None:
    """型付きアクセサは評価値を変換する。"""
    engine = FlagEngine()
    engine.set_flag(FeatureFlag(key="beta", default_value=True))
    engine.set_flag(
        FeatureFlag(
            key="label",
            type=FlagType.STRING,
            default_value="12.5",
            variations=[FlagVariation("v", "12.5")],
        )
    )
    engine.set_flag(
        FeatureFlag(
            key="word",
            type=FlagType.STRING,
            default_value="many",
            variations=[FlagVariation("v", "many")],
        )
    )
    ctx = UserContext(user_id="u")
    assert await engine.get_string_flag("beta", ctx) == "true"
    assert await engine.get_number_flag("label", ctx, 0) == 12.5
    assert await engine.get_number_flag("word", ctx, 7) == 7
    assert await engine.is_enabled("beta", ctx) is True


async def test_get_flag() -> None:
    """get_flag は定義を返し、存在しなければ FLAG_NOT_FOUND。"""
    engine = FlagEngine()
    engine.set_flag(FeatureFlag(key="a"))
    assert (await engine.get_flag("a")).key == "a"
    with pytest.raises(FlagEngineError) as exc_info:
        await engine.get_flag("b")
    assert exc_info.value.code == FlagEngineErrorCodes.FLAG_NOT_FOUND


async def test_set_flag_rejects_invalid_definition() -> None:
    """不正な定義は FlagValidationError で拒否する。"""
    engine = FlagEngine()
    with pytest.raises(FlagValidationError):
        engine.set_flag(FeatureFlag(key="a", default_value="yes"))
    assert engine.list_flags() == []


async def test_set_flag_owns_its_definition() -> None:
    """set_flag 後に元オブジェクトを変更しても評価と定義は変わらない。"""
    engine = FlagEngine()
    flag = participants_flag()
    engine.set_flag(flag)
    flag.variations.clear()
    flag.targeting.rules.clear()

    stored = await engine.get_flag("max_debate_participants")
    assert [v.id for v in stored.variations] == ["4", "8"]
    ctx = UserContext(user_id="t1", school_id="S1")
    assert await engine.get_number_flag("max_debate_participants", ctx, 0) == 8


async def test_update_is_visible_to_next_evaluation() -> None:
    """set_flag の後の評価は新しい定義を使う。"""
    engine = FlagEngine()
    ctx = UserContext(user_id="u")
    engine.set_flag(FeatureFlag(key="a", default_value=False))
    assert await engine.get_boolean_flag("a", ctx) is False
    engine.set_flag(FeatureFlag(key="a", default_value=True))
    assert await engine.get_boolean_flag("a", ctx) is True
    assert engine.delete_flag("a") is True
    assert (await engine.evaluate("a", ctx)).reason.kind == ReasonKind.ERROR


async def test_list_and_filter_flags() -> None:
    """一覧と絞り込み。"""
    engine = FlagEngine()
    for flag in default_flags():
        engine.set_flag(flag)
    assert len(engine.list_flags()) == 4
    configuration = engine.get_flags_by_filter(FlagFilter(category="configuration"))
    assert {f.key for f in configuration} == {"max_debate_participants", "debate_themes"}


async def test_flag_analytics_and_system_status() -> None:
    """評価の集計とシステムステータス。"""
    engine = FlagEngine()
    engine.set_flag(participants_flag())
    await engine.evaluate_flag("max_debate_participants", UserContext(user_id="a", school_id="S1"))
    await engine.evaluate_flag("max_debate_participants", UserContext(user_id="b"))
    await engine.evaluate_flag("max_debate_participants", UserContext(user_id="b"))

    analytics = engine.get_flag_analytics("max_debate_participants", today())
    assert analytics.evaluations == 2
    assert analytics.unique_users == 2
    assert analytics.reason_counts == {"RULE_MATCH": 1, "FALLTHROUGH": 1}

    status = engine.get_system_status()
    assert status.total_flags == 1
    assert status.active_flags == 1
    assert status.cache_size == 2
    assert status.evaluations_today == 2
    assert status.active_tests == 0


async def test_ab_test_management() -> None:
    """A/B テストの一覧・一時停止・削除。"""
    engine = FlagEngine()
    test = engine.create_ab_test(
        ABTestConfig(
            name="Theme",
            flag_key="dark_theme",
            variations=[ABTestVariation("off", 50, False), ABTestVariation("on", 50, True)],
        )
    )
    engine.start_ab_test(test.id)
    assert engine.get_system_status().active_tests == 1
    engine.pause_ab_test(test.id)
    assert engine.list_ab_tests(ABTestStatus.PAUSED)[0].id == test.id
    engine.resume_ab_test(test.id)
    engine.delete_ab_test(test.id, delete_flag=True)
    assert engine.list_ab_tests() == []
    assert engine.list_flags() == []


async def test_start_loads_definitions_and_stop() -> None:
    """start で初回取得を行い、stop でタスクを止める。"""
    config = EngineConfig(refresh_interval=0)
    engine = FlagEngine.from_config(config, source=StaticDefinitionSource(default_flags()))
    await engine.start()
    try:
        assert await engine.get_boolean_flag("ai_coaching_enabled", UserContext()) is True
        themes = await engine.get_json_flag("debate_themes", UserContext())
        assert themes["featured"] == "technology"
    finally:
        await engine.stop()


async def test_start_survives_source_failure() -> None:
    """初回取得に失敗してもエンジンは起動する。"""
    source = AsyncMock()
    source.fetch.side_effect = FlagEngineError(FlagEngineErrorCodes.PROVIDER, "down")
    engine = FlagEngine(source=source, refresh_interval=3600)
    await engine.start()
    await engine.stop()
    with pytest.raises(FlagEngineError):
        await engine.refresh()


async def test_refresh_without_source() -> None:
    """ソースがなければ refresh は 0 を返す。"""
    assert await FlagEngine().refresh() == 0


async def test_refresh_applies_source_changes() -> None:
    """refresh でソースの変更が反映される。"""
    source = AsyncMock()
    source.fetch.return_value = [FeatureFlag(key="a", default_value=False)]
    engine = FlagEngine(source=source)
    assert await engine.refresh() == 1
    ctx = UserContext(user_id="u")
    assert await engine.get_boolean_flag("a", ctx) is False
    source.fetch.return_value = [FeatureFlag(key="a", default_value=True)]
    await engine.refresh()
    assert await engine.get_boolean_flag("a", ctx) is True


async def test_start_stop_with_sink() -> None:
    """シンク付きでも start / stop でき、周期前には書き出さない。"""
    sink = MagicMock()
    engine = FlagEngine.from_config(EngineConfig(), sink=sink)
    await engine.start()
    await engine.stop()
    sink.write.assert_not_called()


async def test_from_config_disables_tracking() -> None:
    """track_evaluations=False では履歴を残さない。"""
    config = EngineConfig.model_validate({"analytics": {"track_evaluations": False}})
    engine = FlagEngine.from_config(config)
    engine.set_flag(FeatureFlag(key="a"))
    await engine.evaluate_flag("a", UserContext(user_id="u"))
    assert engine.get_system_status().evaluations_today == 0


async def test_from_config_disables_cache() -> None:
    """caching.enabled=False ではキャッシュしない。"""
    config = EngineConfig.model_validate({"caching": {"enabled": False}})
    engine = FlagEngine.from_config(config)
    engine.set_flag(FeatureFlag(key="a"))
    ctx = UserContext(user_id="u")
    await engine.evaluate_flag("a", ctx)
    second = await engine.evaluate_flag("a", ctx)
    assert second.reason.from_cache is False
    assert engine.get_system_status().cache_size == 0


def test_engine_satisfies_client_protocol() -> None:
    """FlagEngine は FeatureFlagClientProtocol として使える。"""
    client: FeatureFlagClientProtocol = FlagEngine()
    assert callable(client.is_enabled)
