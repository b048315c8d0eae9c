"""評価履歴の記録と集計"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import threading
from collections import Counter, deque
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from itertools import islice
from typing import Protocol

import structlog

from .models import FlagAnalytics, FlagEvaluation, TimeRange

logger = structlog.stdlib.get_logger(__name__)


class AnalyticsSink(Protocol):
    """評価履歴の永続化先プロトコル。write は同期・非同期どちらでもよい。"""

    def write(self, evaluations: Sequence[FlagEvaluation]) -> None: ...


class AnalyticsRecorder:
    """上限付きの評価履歴。上限を超えると古いものから捨てる。"""

    def __init__(self, max_history: int = 10_000, *, enabled: bool = True) -> None:
        self._history: deque[FlagEvaluation] = deque(maxlen=max_history)
        self._enabled = enabled
        self._recorded = 0
        self._lock = threading.Lock()

    def record(self, evaluation: FlagEvaluation) -> None:
        if not self._enabled:
            return
        with self._lock:
            self._history.append(evaluation)
            self._recorded += 1

    def evaluations(
        self, flag_key: str | None = None, time_range: TimeRange | None = None
    ) -> list[FlagEvaluation]:
        """履歴のスナップショットを返す。条件指定時は絞り込む。"""
        with self._lock:
            history = list(self._history)
        return [
            e
            for e in history
            if (flag_key is None or e.flag_key == flag_key)
            and (time_range is None or e.timestamp in time_range)
        ]

    def query(self, flag_key: str, time_range: TimeRange) -> FlagAnalytics:
        """期間内のフラグ評価を集計する。"""
        matched = self.evaluations(flag_key, time_range)
        users = {e.context.identity for e in matched if e.context.identity}
        return FlagAnalytics(
            flag_key=flag_key,
            evaluations=len(matched),
            unique_users=len(users),
            variation_counts=dict(Counter(e.variation for e in matched)),
            reason_counts=dict(Counter(str(e.reason.kind) for e in matched)),
            time_range=time_range,
        )

    def count_since(self, since: datetime) -> int:
        with self._lock:
            return sum(1 for e in self._history if e.timestamp >= since)

    def drain_since(self, cursor: int) -> tuple[list[FlagEvaluation], int]:
        """cursor 以降に記録された評価と新しい cursor を返す。

        cursor 以降の記録が履歴上限を超えて捨てられていた場合は残っている分だけ返す。
        """
        with self._lock:
            pending = min(self._recorded - cursor, len(self._history))
            start = len(self._history) - pending
            items = list(islice(self._history, start, None)) if pending > 0 else []
            return items, self._recorded

    def __len__(self) -> int:
        return len(self._history)


class AnalyticsReporter:
    """評価件数を定期的にログ出力し、シンクがあれば新しい評価を書き出す。"""

    def __init__(
        self,
        recorder: AnalyticsRecorder,
        sink: AnalyticsSink | None = None,
        interval_seconds: float = 300.0,
    ) -> None:
        self._recorder = recorder
        self._sink = sink
        self._interval = interval_seconds
        self._cursor = 0
        self._task: asyncio.Task[None] | None = None
        self._running = False

    async def start(self) -> None:
        """定期レポートタスクを開始する。"""
        self._running = True
        self._task = asyncio.create_task(self._report_loop())

    async def stop(self) -> None:
        """定期レポートタスクを停止する。"""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def report_once(self) -> int:
        """1 回分のレポートを実行し、シンクに書き出した件数を返す。"""
        since = datetime.now(UTC) - timedelta(seconds=self._interval)
        logger.info(
            "flag evaluations in last interval",
            count=self._recorder.count_since(since),
            interval_seconds=self._interval,
        )
        if self._sink is None:
            return 0
        items, cursor = self._recorder.drain_since(self._cursor)
        if items:
            result = self._sink.write(items)
            if inspect.isawaitable(result):
                await result
        self._cursor = cursor
        return len(items)

    async def _report_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._interval)
            try:
                await self.report_once()
            except Exception as e:
                logger.error("analytics report failed", error=str(e))
