"""FeatureFlagClient プロトコル"""

from __future__ import annotations

from typing import Any, Protocol

from .models import FeatureFlag, FlagEvaluation, UserContext


class FeatureFlagClientProtocol(Protocol):
    """フィーチャーフラグクライアントプロトコル。FlagEngine が満たす。"""

    async def evaluate(self, flag_key: str, context: UserContext) -> FlagEvaluation: ...

    async def get_flag(self, flag_key: str) -> FeatureFlag: ...

    async def is_enabled(self, flag_key: str, context: UserContext) -> bool: ...

    async def get_boolean_flag(
        self, flag_key: str, context: UserContext, default_value: bool = False
    ) -> bool: ...

    async def get_string_flag(
        self, flag_key: str, context: UserContext, default_value: str = ""
    ) -> str: ...

    async def get_number_flag(
        self, flag_key: str, context: UserContext, default_value: float = 0
    ) -> float: ...

    async def get_json_flag(
        self, flag_key: str, context: UserContext, default_value: Any = None
    ) -> Any: ...
