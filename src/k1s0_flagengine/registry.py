"""フラグ定義レジストリ"""

from __future__ import annotations

import copy
import threading
from collections.abc import Iterable, Mapping
from dataclasses import replace
from datetime import UTC, datetime
from types import MappingProxyType

import structlog

from .cache import EvaluationCache
from .exceptions import FlagValidationError
from .models import FeatureFlag, FlagFilter
from .validation import validate_flag

logger = structlog.stdlib.get_logger(__name__)


class FlagRegistry:
    """フラグ定義を所有するレジストリ。

    読み取りはロックなしで不変スナップショットを参照する。
    書き込みはロックを取り、新しいスナップショットを作って差し替える。
    set / delete / sync は該当キーのキャッシュを無効化する。

    格納する定義は呼び出し側から受け取ったものの深いコピーで、
    get / list / filter もコピーを返す。検証を経ずに定義が変わることはない。
    """

    def __init__(self, cache: EvaluationCache | None = None) -> None:
        self._cache = cache
        self._flags: Mapping[str, FeatureFlag] = MappingProxyType({})
        self._source_keys: frozenset[str] = frozenset()
        self._write_lock = threading.Lock()

    def get(self, key: str) -> FeatureFlag | None:
        flag = self._flags.get(key)
        return copy.deepcopy(flag) if flag is not None else None

    def current(self, key: str) -> FeatureFlag | None:
        """格納済みの定義をコピーせずに返す。評価経路専用で、変更してはならない。"""
        return self._flags.get(key)

    def list(self) -> list[FeatureFlag]:
        return [copy.deepcopy(flag) for flag in self._flags.values()]

    def filter(self, criteria: FlagFilter) -> list[FeatureFlag]:
        return [copy.deepcopy(flag) for flag in self._flags.values() if criteria.matches(flag)]

    def set(self, flag: FeatureFlag) -> FeatureFlag:
        """フラグを検証して登録する。

        検証に失敗した場合は FlagValidationError を送出し、既存定義は変更しない。
        既存フラグを置き換える場合は created_at を引き継ぐ。
        """
        validate_flag(flag)
        owned = copy.deepcopy(flag)
        with self._write_lock:
            existing = self._flags.get(flag.key)
            stored = replace(
                owned,
                created_at=existing.created_at if existing else owned.created_at,
                updated_at=datetime.now(UTC),
            )
            flags = dict(self._flags)
            flags[flag.key] = stored
            self._flags = MappingProxyType(flags)
            self._invalidate(flag.key)
        logger.info("flag stored", flag_key=flag.key, enabled=flag.enabled)
        return copy.deepcopy(stored)

    def delete(self, key: str) -> bool:
        with self._write_lock:
            if key not in self._flags:
                return False
            flags = dict(self._flags)
            del flags[key]
            self._flags = MappingProxyType(flags)
            self._invalidate(key)
        logger.info("flag deleted", flag_key=key)
        return True

    def sync(self, flags: Iterable[FeatureFlag]) -> int:
        """定義ソースから取得したフラグ一式でスナップショットを差し替える。

        ソース由来のキーはソースの内容で置き換え、ソースから消えたキーは削除する。
        set() で登録したローカルのフラグは保持する。
        検証に失敗したフラグは警告ログを出して直前の定義を使い続ける。

        Returns:
            反映したフラグ数
        """
        incoming: dict[str, FeatureFlag] = {}
        rejected: set[str] = set()
        for flag in flags:
            try:
                validate_flag(flag)
            except FlagValidationError as e:
                logger.warning("skipping invalid flag from source", flag_key=flag.key, error=str(e))
                rejected.add(flag.key)
                continue
            incoming[flag.key] = copy.deepcopy(flag)

        with self._write_lock:
            current = self._flags
            merged = {key: flag for key, flag in current.items() if key not in self._source_keys}
            retained = {key for key in rejected if key in self._source_keys and key in current}
            for key in retained:
                merged[key] = current[key]
            merged.update(incoming)
            removed = self._source_keys - incoming.keys() - retained
            self._flags = MappingProxyType(merged)
            self._source_keys = frozenset(incoming) | frozenset(retained)
            for key in removed | incoming.keys():
                self._invalidate(key)
        if removed:
            logger.info("flags removed by source", flag_keys=sorted(removed))
        return len(incoming)

    def invalidate(self, key: str) -> None:
        """定義は変えずに、フラグのキャッシュ済み評価結果だけを捨てる。"""
        self._invalidate(key)

    def __len__(self) -> int:
        return len(self._flags)

    def __contains__(self, key: object) -> bool:
        return key in self._flags

    def _invalidate(self, key: str) -> None:
        if self._cache is not None:
            self._cache.invalidate(key)
