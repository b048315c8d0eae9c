"""フラグ定義ソース"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
from typing import Any, Protocol

import httpx
import yaml

from .exceptions import FlagEngineError, FlagEngineErrorCodes
from .models import FeatureFlag
from .serialization import flag_from_dict


class DefinitionSource(Protocol):
    """フラグ定義一式を取得するソースのプロトコル。"""

    async def fetch(self) -> list[FeatureFlag]: ...


def _flags_from_document(document: Any, origin: str) -> list[FeatureFlag]:
    """{"flags": [...]} 形式（またはリスト）のドキュメントからフラグを生成する。"""
    if isinstance(document, dict):
        document = document.get("flags", [])
    if not isinstance(document, list):
        raise FlagEngineError(
            code=FlagEngineErrorCodes.PROVIDER,
            message=f"{origin}: expected a list of flags",
        )
    return [flag_from_dict(item) for item in document]


class StaticDefinitionSource:
    """固定のフラグ一式を返すソース。組み込み定義やテストで使う。"""

    def __init__(self, flags: Iterable[FeatureFlag]) -> None:
        self._flags = list(flags)

    async def fetch(self) -> list[FeatureFlag]:
        return list(self._flags)


class YamlDefinitionSource:
    """YAML ファイルからフラグ定義を読み込むソース。"""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    async def fetch(self) -> list[FeatureFlag]:
        try:
            text = self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise FlagEngineError(
                code=FlagEngineErrorCodes.PROVIDER,
                message=f"Failed to read flag definitions: {self._path}",
                cause=e,
            ) from e
        try:
            document = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise FlagEngineError(
                code=FlagEngineErrorCodes.PROVIDER,
                message=f"Failed to parse flag definitions: {self._path}",
                cause=e,
            ) from e
        return _flags_from_document(document, str(self._path))


class HttpDefinitionSource:
    """httpx で HTTP エンドポイントからフラグ定義を取得するソース。

    レスポンスは {"flags": [...]} 形式の JSON を想定する。
    """

    def __init__(
        self,
        base_url: str,
        path: str = "/api/v1/flags",
        api_key: str | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._base_url = base_url
        self._path = path
        self._timeout = timeout_seconds
        headers: dict[str, str] = {"Accept": "application/json"}
        if api_key:
            headers["X-API-Key"] = api_key
        self._headers = headers

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._timeout,
        )

    def _handle_error(self, resp: httpx.Response) -> None:
        if resp.status_code >= 400:
            raise FlagEngineError(
                code=FlagEngineErrorCodes.PROVIDER,
                message=f"fetch flags: HTTP {resp.status_code}: {resp.text}",
            )

    async def fetch(self) -> list[FeatureFlag]:
        try:
            async with self._make_client() as client:
                resp = await client.get(self._path)
            self._handle_error(resp)
            return _flags_from_document(resp.json(), f"{self._base_url}{self._path}")
        except FlagEngineError:
            raise
        except Exception as e:
            raise FlagEngineError(
                code=FlagEngineErrorCodes.PROVIDER,
                message=f"Failed to fetch flag definitions: {e}",
                cause=e,
            ) from e
