"""フラグ定義の辞書表現との相互変換"""

from __future__ import annotations

import dataclasses
from datetime import datetime
from enum import Enum
from typing import Any

from .exceptions import FlagValidationError
from .models import (
    DEFAULT_VARIATION,
    ConditionOperator,
    FallthroughConfig,
    FeatureFlag,
    FlagMetadata,
    FlagStatus,
    FlagTargeting,
    FlagType,
    FlagVariation,
    RolloutConfig,
    RolloutType,
    TargetingCondition,
    TargetingRule,
    WeightedVariation,
)


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _rollout_from_dict(data: dict[str, Any] | None) -> RolloutConfig | None:
    if data is None:
        return None
    return RolloutConfig(
        type=RolloutType(data.get("type", RolloutType.PERCENTAGE)),
        variations=[
            WeightedVariation(variation=str(v["variation"]), weight=float(v["weight"]))
            for v in data.get("variations", [])
        ],
        bucket_by=data.get("bucket_by", "userId"),
    )


def _rule_from_dict(data: dict[str, Any]) -> TargetingRule:
    return TargetingRule(
        id=str(data["id"]),
        description=data.get("description", ""),
        variation=data.get("variation"),
        rollout=_rollout_from_dict(data.get("rollout")),
        conditions=[
            TargetingCondition(
                attribute=c["attribute"],
                operator=ConditionOperator(c["operator"]),
                values=[str(v) for v in c.get("values", [])],
                negate=bool(c.get("negate", False)),
            )
            for c in data.get("conditions", [])
        ],
    )


def _targeting_from_dict(data: dict[str, Any]) -> FlagTargeting:
    fallthrough = data.get("fallthrough") or {}
    return FlagTargeting(
        enabled=bool(data.get("enabled", False)),
        rules=[_rule_from_dict(r) for r in data.get("rules", [])],
        fallthrough=FallthroughConfig(
            variation=fallthrough.get("variation"),
            rollout=_rollout_from_dict(fallthrough.get("rollout")),
        ),
    )


def _metadata_from_dict(data: dict[str, Any]) -> FlagMetadata:
    defaults = FlagMetadata()
    return FlagMetadata(
        owner=data.get("owner", defaults.owner),
        team=data.get("team", defaults.team),
        tags=list(data.get("tags", [])),
        category=data.get("category", defaults.category),
        purpose=data.get("purpose", defaults.purpose),
        deprecation_date=_parse_datetime(data.get("deprecation_date")),
        migration_instructions=data.get("migration_instructions"),
    )


def flag_from_dict(data: dict[str, Any]) -> FeatureFlag:
    """辞書（YAML / JSON 由来）から FeatureFlag を生成する。

    省略された項目は FeatureFlag の既定値を使う。

    Raises:
        FlagValidationError: 必須項目の欠落や列挙値の誤りがある場合
    """
    try:
        kwargs: dict[str, Any] = {
            "key": str(data["key"]),
            "name": data.get("name", ""),
            "description": data.get("description", ""),
            "enabled": bool(data.get("enabled", True)),
            "type": FlagType(data.get("type", FlagType.BOOLEAN)),
            "default_value": data.get("default_value", False),
            "status": FlagStatus(data.get("status", FlagStatus.ACTIVE)),
        }
        if "variations" in data:
            kwargs["variations"] = [
                FlagVariation(
                    id=str(v["id"]),
                    value=v["value"],
                    name=v.get("name", ""),
                    description=v.get("description", ""),
                    weight=v.get("weight"),
                )
                for v in data["variations"]
            ]
        elif kwargs["type"] != FlagType.BOOLEAN:
            # 真偽値以外でバリエーション省略時は既定値のみを持つ
            kwargs["variations"] = [
                FlagVariation(id=DEFAULT_VARIATION, value=kwargs["default_value"])
            ]
        if "targeting" in data:
            kwargs["targeting"] = _targeting_from_dict(data["targeting"])
        if data.get("rollout") is not None:
            kwargs["rollout"] = _rollout_from_dict(data["rollout"])
        if "metadata" in data:
            kwargs["metadata"] = _metadata_from_dict(data["metadata"])
        for stamp in ("created_at", "updated_at"):
            if data.get(stamp) is not None:
                kwargs[stamp] = _parse_datetime(data[stamp])
        return FeatureFlag(**kwargs)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        key = data.get("key", "?") if isinstance(data, dict) else "?"
        raise FlagValidationError(f"Malformed flag definition {key!r}: {e!r}", cause=e) from e


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def flag_to_dict(flag: FeatureFlag) -> dict[str, Any]:
    """FeatureFlag を JSON / YAML に書き出せる辞書へ変換する。"""
    result: dict[str, Any] = _jsonable(dataclasses.asdict(flag))
    return result
