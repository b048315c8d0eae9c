"""flagengine データモデル"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

# 匿名コンテキストが共有するバケット/キャッシュキー
ANONYMOUS_KEY = "anonymous"

# 既定値として返すバリエーション ID
DEFAULT_VARIATION = "default"


def _now() -> datetime:
    return datetime.now(UTC)


class FlagType(StrEnum):
    """フラグ値の型。"""

    BOOLEAN = "boolean"
    STRING = "string"
    NUMBER = "number"
    JSON = "json"


class FlagStatus(StrEnum):
    """フラグのライフサイクルステータス。"""

    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"
    DEPRECATED = "deprecated"


class ConditionOperator(StrEnum):
    """ターゲティング条件の演算子。"""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    MATCHES_REGEX = "matches_regex"
    IN = "in"
    NOT_IN = "not_in"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_EQUAL = "greater_equal"
    LESS_EQUAL = "less_equal"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class RolloutType(StrEnum):
    """ロールアウト方式。"""

    PERCENTAGE = "percentage"
    USER_HASH = "user_hash"
    CUSTOM = "custom"


class ReasonKind(StrEnum):
    """評価理由の種別。"""

    OFF = "OFF"
    FALLTHROUGH = "FALLTHROUGH"
    TARGET_MATCH = "TARGET_MATCH"
    RULE_MATCH = "RULE_MATCH"
    PREREQUISITE_FAILED = "PREREQUISITE_FAILED"
    ERROR = "ERROR"


class ABTestStatus(StrEnum):
    """A/B テストのステータス。"""

    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


@dataclass
class FlagVariation:
    """フラグバリエーション。"""

    id: str
    value: Any
    name: str = ""
    description: str = ""
    weight: float | None = None


def _boolean_variations() -> list[FlagVariation]:
    return [
        FlagVariation(id="true", value=True, name="True", description="Flag is on"),
        FlagVariation(id="false", value=False, name="False", description="Flag is off"),
    ]


@dataclass
class WeightedVariation:
    """ロールアウト内の重み付きバリエーション参照。"""

    variation: str
    weight: float


@dataclass
class RolloutConfig:
    """ロールアウト設定。weight の合計で [0, 100) を分割する。"""

    type: RolloutType = RolloutType.PERCENTAGE
    variations: list[WeightedVariation] = field(default_factory=list)
    bucket_by: str = "userId"


@dataclass
class TargetingCondition:
    """ターゲティング条件。"""

    attribute: str
    operator: ConditionOperator
    values: list[str] = field(default_factory=list)
    negate: bool = False


@dataclass
class TargetingRule:
    """ターゲティングルール。全条件を満たしたとき variation を返す。"""

    id: str
    conditions: list[TargetingCondition] = field(default_factory=list)
    variation: str | None = None
    description: str = ""
    rollout: RolloutConfig | None = None


@dataclass
class FallthroughConfig:
    """どのルールにも一致しなかったときの解決方法。"""

    variation: str | None = None
    rollout: RolloutConfig | None = None


@dataclass
class FlagTargeting:
    """ターゲティング設定。"""

    enabled: bool = False
    rules: list[TargetingRule] = field(default_factory=list)
    fallthrough: FallthroughConfig = field(default_factory=FallthroughConfig)


@dataclass
class FlagMetadata:
    """フラグのメタデータ（評価には使わない）。"""

    owner: str = "system"
    team: str = "engineering"
    tags: list[str] = field(default_factory=list)
    category: str = "feature"
    purpose: str = "Feature toggle"
    deprecation_date: datetime | None = None
    migration_instructions: str | None = None


@dataclass
class FeatureFlag:
    """フィーチャーフラグ。"""

    key: str
    name: str = ""
    description: str = ""
    enabled: bool = True
    type: FlagType = FlagType.BOOLEAN
    default_value: Any = False
    variations: list[FlagVariation] = field(default_factory=_boolean_variations)
    targeting: FlagTargeting = field(default_factory=FlagTargeting)
    rollout: RolloutConfig = field(default_factory=RolloutConfig)
    metadata: FlagMetadata = field(default_factory=FlagMetadata)
    status: FlagStatus = FlagStatus.ACTIVE
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def __post_init__(self) -> None:
        if not self.name:
            self.name = self.key

    @property
    def is_active(self) -> bool:
        return self.enabled and self.status == FlagStatus.ACTIVE

    def get_variation(self, variation_id: str) -> FlagVariation | None:
        """ID に対応するバリエーションを返す。存在しなければ None。"""
        for variation in self.variations:
            if variation.id == variation_id:
                return variation
        return None


_CONTEXT_FIELDS = (
    "user_id",
    "session_id",
    "email",
    "user_type",
    "school_id",
    "grade",
    "country",
    "language",
    "device_type",
    "browser",
)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


# 既知属性名（snake_case / camelCase）→ UserContext フィールド名
_WELL_KNOWN_ATTRIBUTES: dict[str, str] = {
    alias: name for name in _CONTEXT_FIELDS for alias in (name, _camel(name))
}


@dataclass(frozen=True)
class UserContext:
    """フラグ評価コンテキスト。呼び出し側が所有し、エンジンは読み取りのみ。"""

    user_id: str | None = None
    session_id: str | None = None
    email: str | None = None
    user_type: str | None = None
    school_id: str | None = None
    grade: str | None = None
    country: str | None = None
    language: str | None = None
    device_type: str | None = None
    browser: str | None = None
    custom_attributes: dict[str, Any] = field(default_factory=dict)

    def get(self, attribute: str) -> Any:
        """属性値を返す。既知フィールドを先に、次にカスタム属性を参照する。"""
        name = _WELL_KNOWN_ATTRIBUTES.get(attribute)
        if name is not None:
            value = getattr(self, name)
            if value is not None:
                return value
        return self.custom_attributes.get(attribute)

    @property
    def identity(self) -> str | None:
        """キャッシュや集計で使う識別子（user_id → session_id）。"""
        return self.user_id or self.session_id


@dataclass(frozen=True)
class EvaluationReason:
    """評価理由。"""

    kind: ReasonKind
    rule_index: int | None = None
    rule_id: str | None = None
    error_kind: str | None = None
    prerequisite_key: str | None = None
    from_cache: bool = False


@dataclass(frozen=True)
class FlagEvaluation:
    """1 回のフラグ評価の記録。"""

    flag_key: str
    value: Any
    variation: str
    reason: EvaluationReason
    context: UserContext
    timestamp: datetime = field(default_factory=_now)


@dataclass
class FlagFilter:
    """フラグ一覧の絞り込み条件。None の項目は無視する。"""

    category: str | None = None
    tag: str | None = None
    owner: str | None = None
    status: FlagStatus | None = None

    def matches(self, flag: FeatureFlag) -> bool:
        if self.category and flag.metadata.category != self.category:
            return False
        if self.tag and self.tag not in flag.metadata.tags:
            return False
        if self.owner and flag.metadata.owner != self.owner:
            return False
        if self.status and flag.status != self.status:
            return False
        return True


@dataclass(frozen=True)
class TimeRange:
    """集計期間（両端を含む）。"""

    start: datetime
    end: datetime

    def __contains__(self, timestamp: datetime) -> bool:
        return self.start <= timestamp <= self.end


@dataclass
class FlagAnalytics:
    """フラグ単位の評価集計。"""

    flag_key: str
    evaluations: int
    unique_users: int
    variation_counts: dict[str, int]
    reason_counts: dict[str, int]
    time_range: TimeRange


@dataclass
class ABTestVariation:
    """A/B テストのバリエーション。allocation はテスト内トラフィックの割合（%）。"""

    id: str
    allocation: float
    flag_value: Any
    name: str = ""
    description: str = ""


@dataclass(frozen=True)
class ABTestResults:
    """A/B テスト結果。停止時点のスナップショットで、以後変更しない。"""

    total_participants: int
    participants: dict[str, int]
    conversions: dict[str, int]
    conversion_rates: dict[str, float]
    statistical_significance: float
    confidence_intervals: dict[str, tuple[float, float]]
    recommendation: str
    winner: str | None = None
    computed_at: datetime = field(default_factory=_now)


@dataclass
class ABTestConfig:
    """A/B テスト定義。"""

    name: str
    flag_key: str
    variations: list[ABTestVariation]
    id: str = ""
    description: str = ""
    hypothesis: str = ""
    success_metrics: list[str] = field(default_factory=list)
    traffic_allocation: float = 100.0
    status: ABTestStatus = ABTestStatus.DRAFT
    start_date: datetime | None = None
    end_date: datetime | None = None
    results: ABTestResults | None = None
    created_at: datetime = field(default_factory=_now)


@dataclass
class SystemStatus:
    """エンジン全体のステータス。"""

    total_flags: int
    active_flags: int
    cache_size: int
    evaluations_today: int
    active_tests: int
