"""評価結果キャッシュ（TTL + 件数上限、挿入順で追い出し）"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Any

from .models import ANONYMOUS_KEY, UserContext

_CacheKey = tuple[str, str]


class _CacheEntry:
    __slots__ = ("value", "expires_at", "seq")

    def __init__(self, value: Any, expires_at: float, seq: int) -> None:
        self.value = value
        self.expires_at = expires_at
        self.seq = seq

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class EvaluationCache:
    """(flag_key, コンテキスト識別子) → 評価結果のキャッシュ。

    上限到達時は最も古く挿入されたエントリを追い出す（LRU ではない）。
    挿入順はキーのキューで明示的に管理する。
    """

    def __init__(
        self,
        *,
        enabled: bool = True,
        ttl: float = 300.0,
        max_size: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._enabled = enabled
        self._ttl = ttl
        self._max_size = max_size
        self._clock = clock
        self._store: dict[_CacheKey, _CacheEntry] = {}
        self._by_flag: dict[str, set[_CacheKey]] = {}
        self._order: deque[tuple[_CacheKey, int]] = deque()
        self._seq = 0
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @staticmethod
    def cache_key(flag_key: str, context: UserContext) -> _CacheKey:
        return (flag_key, context.identity or ANONYMOUS_KEY)

    def get(self, flag_key: str, context: UserContext) -> Any | None:
        """キャッシュ値を返す。未登録・期限切れ・無効時は None。"""
        if not self._enabled:
            return None
        key = self.cache_key(flag_key, context)
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                self._remove(key)
                return None
            return entry.value

    def put(self, flag_key: str, context: UserContext, value: Any) -> None:
        if not self._enabled:
            return
        key = self.cache_key(flag_key, context)
        with self._lock:
            if key not in self._store:
                while len(self._store) >= self._max_size and self._evict_oldest():
                    pass
            self._seq += 1
            self._store[key] = _CacheEntry(value, self._clock() + self._ttl, self._seq)
            self._by_flag.setdefault(flag_key, set()).add(key)
            self._order.append((key, self._seq))
            if len(self._order) > 2 * self._max_size:
                self._compact()

    def invalidate(self, flag_key: str) -> int:
        """フラグに紐づく全エントリを削除し、削除件数を返す。"""
        with self._lock:
            keys = self._by_flag.pop(flag_key, set())
            for key in keys:
                self._store.pop(key, None)
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
            self._by_flag.clear()
            self._order.clear()

    def __len__(self) -> int:
        """期限切れを取り除いた上での件数。"""
        with self._lock:
            now = self._clock()
            for key in [k for k, entry in self._store.items() if entry.is_expired(now)]:
                self._remove(key)
            return len(self._store)

    def _remove(self, key: _CacheKey) -> None:
        self._store.pop(key, None)
        keys = self._by_flag.get(key[0])
        if keys is not None:
            keys.discard(key)
            if not keys:
                del self._by_flag[key[0]]

    def _evict_oldest(self) -> bool:
        # 削除・上書き済みのキュー要素は読み飛ばす
        while self._order:
            key, seq = self._order.popleft()
            entry = self._store.get(key)
            if entry is not None and entry.seq == seq:
                self._remove(key)
                return True
        return False

    def _compact(self) -> None:
        live = sorted(self._store.items(), key=lambda item: item[1].seq)
        self._order = deque((key, entry.seq) for key, entry in live)
