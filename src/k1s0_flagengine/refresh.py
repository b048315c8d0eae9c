"""FlagRefresher: asyncio Task ベースの定義再取得"""

from __future__ import annotations

import asyncio
import contextlib

import structlog

from .metrics import flag_refresh_total
from .registry import FlagRegistry
from .source import DefinitionSource

logger = structlog.stdlib.get_logger(__name__)


class FlagRefresher:
    """定義ソースを定期的にポーリングしてレジストリへ反映する。

    取得に失敗した場合はログを出し、直前の定義を使い続けて次の周期で再試行する。
    """

    def __init__(
        self,
        registry: FlagRegistry,
        source: DefinitionSource,
        interval_seconds: float = 300.0,
    ) -> None:
        self._registry = registry
        self._source = source
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """ポーリングタスクを開始する。"""
        self._running = True
        self._task = asyncio.create_task(self._refresh_loop())

    async def stop(self) -> None:
        """ポーリングタスクを停止する。"""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def refresh_once(self) -> int:
        """ソースから 1 回取得して反映し、反映したフラグ数を返す。

        Raises:
            FlagEngineError: ソースの取得に失敗した場合（レジストリは変更しない）
        """
        try:
            flags = await self._source.fetch()
        except Exception:
            flag_refresh_total.add(1, {"outcome": "failure"})
            raise
        applied = self._registry.sync(flags)
        flag_refresh_total.add(1, {"outcome": "success"})
        logger.info("flag definitions refreshed", flags=applied)
        return applied

    async def _refresh_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._interval)
            try:
                await self.refresh_once()
            except Exception as e:
                logger.warning("flag refresh failed, keeping last known flags", error=str(e))
