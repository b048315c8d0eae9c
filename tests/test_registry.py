"""FlagRegistry のユニットテスト"""

import pytest
from k1s0_flagengine import (
    EvaluationCache,
    FallthroughConfig,
    FeatureFlag,
    FlagFilter,
    FlagMetadata,
    FlagRegistry,
    FlagStatus,
    FlagTargeting,
    FlagType,
    FlagValidationError,
    FlagVariation,
    UserContext,
)


def test_set_and_get() -> None:
    """登録したフラグを取得できる。"""
    registry = FlagRegistry()
    stored = registry.set(FeatureFlag(key="a"))
    assert registry.get("a") == stored
    assert "a" in registry
    assert len(registry) == 1
    assert registry.get("missing") is None


def test_set_keeps_created_at_and_bumps_updated_at() -> None:
    """上書き時は created_at を引き継ぎ updated_at を更新する。"""
    registry = FlagRegistry()
    first = registry.set(FeatureFlag(key="a"))
    second = registry.set(FeatureFlag(key="a", enabled=False))
    assert second.created_at == first.created_at
    assert second.updated_at >= first.updated_at
    assert registry.get("a").enabled is False


def test_invalid_flag_is_not_stored() -> None:
    """不正なフラグは登録されず既存定義も変わらない。"""
    registry = FlagRegistry()
    registry.set(FeatureFlag(key="a"))
    with pytest.raises(FlagValidationError):
        registry.set(FeatureFlag(key="a", default_value="nope"))
    assert registry.get("a").default_value is False


def test_write_invalidates_cache() -> None:
    """set / delete は該当フラグのキャッシュを無効化する。"""
    cache = EvaluationCache()
    registry = FlagRegistry(cache)
    registry.set(FeatureFlag(key="a"))
    cache.put("a", UserContext(user_id="u"), "cached")
    cache.put("b", UserContext(user_id="u"), "other")
    registry.set(FeatureFlag(key="a", enabled=False))
    assert cache.get("a", UserContext(user_id="u")) is None
    assert cache.get("b", UserContext(user_id="u")) == "other"

    cache.put("a", UserContext(user_id="u"), "cached")
    assert registry.delete("a") is True
    assert cache.get("a", UserContext(user_id="u")) is None


def test_delete_missing_returns_false() -> None:
    """存在しないキーの削除は False。"""
    assert FlagRegistry().delete("nothing") is False


def test_snapshot_is_stable_during_writes() -> None:
    """取得済みの一覧は後続の書き込みの影響を受けない。"""
    registry = FlagRegistry()
    registry.set(FeatureFlag(key="a"))
    listed = registry.list()
    registry.set(FeatureFlag(key="b"))
    assert [f.key for f in listed] == ["a"]
    assert {f.key for f in registry.list()} == {"a", "b"}


def test_filter_by_metadata() -> None:
    """メタデータとステータスで絞り込める。"""
    registry = FlagRegistry()
    registry.set(FeatureFlag(key="ui", metadata=FlagMetadata(owner="product", tags=["ui"])))
    registry.set(
        FeatureFlag(
            key="limit",
            metadata=FlagMetadata(category="configuration"),
            status=FlagStatus.DEPRECATED,
        )
    )
    assert [f.key for f in registry.filter(FlagFilter(tag="ui"))] == ["ui"]
    assert [f.key for f in registry.filter(FlagFilter(owner="product"))] == ["ui"]
    assert [f.key for f in registry.filter(FlagFilter(category="configuration"))] == ["limit"]
    assert [f.key for f in registry.filter(FlagFilter(status=FlagStatus.DEPRECATED))] == ["limit"]
    assert len(registry.filter(FlagFilter())) == 2


def test_sync_replaces_source_flags_and_keeps_local() -> None:
    """sync はソース由来のフラグを置き換え、ローカル登録分を残す。"""
    registry = FlagRegistry()
    registry.set(FeatureFlag(key="local"))
    assert registry.sync([FeatureFlag(key="s1"), FeatureFlag(key="s2")]) == 2
    assert {f.key for f in registry.list()} == {"local", "s1", "s2"}

    registry.sync([FeatureFlag(key="s1", enabled=False)])
    assert registry.get("s2") is None
    assert registry.get("s1").enabled is False
    assert registry.get("local") is not None


def test_sync_keeps_previous_version_of_invalid_flag() -> None:
    """ソースの不正なフラグは読み飛ばし、直前の定義を使い続ける。"""
    registry = FlagRegistry()
    registry.sync([FeatureFlag(key="s1")])
    applied = registry.sync([FeatureFlag(key="s1", default_value="broken"), FeatureFlag(key="s2")])
    assert applied == 1
    assert registry.get("s1").default_value is False
    assert registry.get("s2") is not None


def test_sync_overrides_local_flag_with_same_key() -> None:
    """ソースが同じキーを提供する場合はソースが優先する。"""
    registry = FlagRegistry()
    registry.set(FeatureFlag(key="shared", enabled=False))
    registry.sync([FeatureFlag(key="shared", enabled=True)])
    assert registry.get("shared").enabled is True


def test_sync_invalidates_cache() -> None:
    """sync は更新・削除したキーのキャッシュを無効化する。"""
    cache = EvaluationCache()
    registry = FlagRegistry(cache)
    registry.sync([FeatureFlag(key="s1"), FeatureFlag(key="s2")])
    ctx = UserContext(user_id="u")
    cache.put("s1", ctx, 1)
    cache.put("s2", ctx, 2)
    registry.sync([FeatureFlag(key="s1")])
    assert cache.get("s1", ctx) is None
    assert cache.get("s2", ctx) is None


def test_caller_mutation_does_not_reach_stored_flag() -> None:
    """登録後に呼び出し側のオブジェクトを変更しても格納済み定義は変わらない。"""
    registry = FlagRegistry()
    flag = FeatureFlag(
        key="plan",
        type=FlagType.STRING,
        default_value="basic",
        variations=[FlagVariation("basic", "basic"), FlagVariation("pro", "pro")],
        targeting=FlagTargeting(enabled=True, fallthrough=FallthroughConfig(variation="pro")),
    )
    registry.set(flag)
    flag.variations.clear()
    flag.targeting.fallthrough.variation = "ghost"

    stored = registry.get("plan")
    assert [v.id for v in stored.variations] == ["basic", "pro"]
    assert stored.targeting.fallthrough.variation == "pro"


def test_returned_flags_are_copies() -> None:
    """get / list / set の戻り値を変更してもレジストリには反映されない。"""
    registry = FlagRegistry()
    returned = registry.set(FeatureFlag(key="a", metadata=FlagMetadata(tags=["ui"])))
    returned.metadata.tags.append("set")
    registry.get("a").metadata.tags.append("get")
    registry.list()[0].metadata.tags.append("list")
    assert registry.get("a").metadata.tags == ["ui"]
    assert registry.current("a").metadata.tags == ["ui"]


def test_sync_stores_copies() -> None:
    """sync で渡したフラグを後から変更しても格納済み定義は変わらない。"""
    registry = FlagRegistry()
    flag = FeatureFlag(key="s1")
    registry.sync([flag])
    flag.enabled = False
    assert registry.get("s1").enabled is True


def test_invalidate_keeps_definition() -> None:
    """invalidate はキャッシュだけを捨て、定義は残す。"""
    cache = EvaluationCache()
    registry = FlagRegistry(cache)
    registry.set(FeatureFlag(key="a"))
    cache.put("a", UserContext(user_id="u"), "cached")
    registry.invalidate("a")
    assert cache.get("a", UserContext(user_id="u")) is None
    assert registry.get("a") is not None
