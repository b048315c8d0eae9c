"""ハッシュベースのロールアウト振り分け"""

from __future__ import annotations

from .models import ANONYMOUS_KEY, DEFAULT_VARIATION, RolloutConfig, UserContext

FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193
BUCKET_SPACE = 100_000


def fnv1a_32(text: str) -> int:
    """UTF-8 バイト列に対する 32bit FNV-1a ハッシュ。プロセスをまたいで安定。"""
    h = FNV_OFFSET_BASIS
    for byte in text.encode("utf-8"):
        h ^= byte
        h = (h * FNV_PRIME) & 0xFFFFFFFF
    return h


def bucket_of(key: str) -> int:
    """キーを [0, 100000) のバケットに写像する。"""
    return fnv1a_32(key) % BUCKET_SPACE


class RolloutBucketer:
    """重み付きバリエーションから決定的に 1 つを選ぶ。

    bucket_by 属性を持たないコンテキストはすべて "anonymous" バケットを共有する。
    anonymous_by_session=True の場合は session_id があればそれで振り分ける。
    """

    def __init__(self, *, anonymous_by_session: bool = False) -> None:
        self._anonymous_by_session = anonymous_by_session

    def bucket_key(self, rollout: RolloutConfig, context: UserContext) -> str:
        value = context.get(rollout.bucket_by or "userId")
        if (value is None or value == "") and self._anonymous_by_session:
            value = context.session_id
        if value is None or value == "":
            return ANONYMOUS_KEY
        return str(value)

    def bucket(self, rollout: RolloutConfig, context: UserContext) -> str:
        """コンテキストに割り当てるバリエーション ID を返す。"""
        bucket = bucket_of(self.bucket_key(rollout, context))
        cumulative = 0.0
        for entry in rollout.variations:
            cumulative += entry.weight
            if bucket < cumulative * 1000:
                return entry.variation
        if rollout.variations:
            return rollout.variations[0].variation
        return DEFAULT_VARIATION
