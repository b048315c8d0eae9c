"""エンジン設定の型定義と YAML 読み込み"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from .exceptions import FlagEngineError, FlagEngineErrorCodes


class CachingSection(BaseModel):
    """評価キャッシュ設定。"""

    enabled: bool = True
    ttl: float = Field(default=300, gt=0)
    max_size: int = Field(default=10_000, ge=1)


class AnalyticsSection(BaseModel):
    """評価履歴設定。"""

    enabled: bool = True
    track_evaluations: bool = True
    max_history: int = Field(default=10_000, ge=1)
    report_interval: float = Field(default=300, gt=0)


class TargetingSection(BaseModel):
    """ターゲティング全体のスイッチ。"""

    enabled: bool = True


class RolloutSection(BaseModel):
    """ロールアウト設定。"""

    anonymous_bucket_by_session: bool = False


class LogSection(BaseModel):
    """ログ設定。"""

    level: str = "INFO"
    format: Literal["json", "console"] = "json"


class EngineConfig(BaseModel):
    """フラグエンジン設定のルートモデル。"""

    environment: str = "development"
    refresh_interval: float = Field(default=300, ge=0)
    caching: CachingSection = Field(default_factory=CachingSection)
    analytics: AnalyticsSection = Field(default_factory=AnalyticsSection)
    targeting: TargetingSection = Field(default_factory=TargetingSection)
    rollout: RolloutSection = Field(default_factory=RolloutSection)
    log: LogSection = Field(default_factory=LogSection)


def _overlay(base: dict[str, Any], env: dict[str, Any]) -> dict[str, Any]:
    """環境別設定をセクション単位で重ねる。セクション内はキーごとに上書きする。"""
    merged = dict(base)
    for name, value in env.items():
        section = merged.get(name)
        if isinstance(section, dict) and isinstance(value, dict):
            merged[name] = {**section, **value}
        else:
            merged[name] = value
    return merged


def _read_document(path: Path) -> dict[str, Any]:
    """YAML を読み、ルートがマッピングであることを確かめて返す。空文書は {}。"""
    try:
        with path.open(encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except OSError as e:
        raise FlagEngineError(
            FlagEngineErrorCodes.CONFIG_READ, f"Cannot open engine config {path}", e
        ) from e
    except yaml.YAMLError as e:
        raise FlagEngineError(
            FlagEngineErrorCodes.CONFIG_PARSE, f"Engine config {path} is not valid YAML", e
        ) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise FlagEngineError(
            FlagEngineErrorCodes.CONFIG_PARSE,
            f"Engine config {path} must be a mapping, got {type(data).__name__}",
        )
    return data


def load_config(base_path: Path | str, env_path: Path | str | None = None) -> EngineConfig:
    """ベース設定に環境別設定（存在する場合のみ）を重ねて EngineConfig を返す。

    Raises:
        FlagEngineError: 読み込み（CONFIG_READ_ERROR）、YAML 解析（CONFIG_PARSE_ERROR）、
            値の検証（CONFIG_VALIDATION_ERROR）に失敗した場合
    """
    data = _read_document(Path(base_path))
    if env_path is not None and Path(env_path).is_file():
        data = _overlay(data, _read_document(Path(env_path)))
    try:
        return EngineConfig.model_validate(data)
    except ValidationError as e:
        raise FlagEngineError(
            FlagEngineErrorCodes.CONFIG_VALIDATION, f"Engine config is invalid: {e}", e
        ) from e
