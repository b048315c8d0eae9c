"""flagengine ライブラリの例外型定義"""

from __future__ import annotations


class FlagEngineError(Exception):
    """flagengine ライブラリのエラー基底クラス。"""

    def __init__(
        self,
        code: str,
        message: str,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self.code}: {super().__str__()}"


class FlagEngineErrorCodes:
    """FlagEngineError のエラーコード定数。"""

    FLAG_NOT_FOUND: str = "FLAG_NOT_FOUND"
    VALIDATION: str = "VALIDATION_ERROR"
    EVALUATION: str = "EVALUATION_ERROR"
    TEST_NOT_FOUND: str = "TEST_NOT_FOUND"
    INVALID_TEST_STATE: str = "INVALID_TEST_STATE"
    PROVIDER: str = "PROVIDER_ERROR"
    CONFIG_READ: str = "CONFIG_READ_ERROR"
    CONFIG_PARSE: str = "CONFIG_PARSE_ERROR"
    CONFIG_VALIDATION: str = "CONFIG_VALIDATION_ERROR"


class FlagValidationError(FlagEngineError):
    """フラグ定義の整合性チェックに失敗した。"""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(FlagEngineErrorCodes.VALIDATION, message, cause)


class EvaluationError(FlagEngineError):
    """ターゲティング条件の評価に失敗した（呼び出し側の設定ミス）。"""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(FlagEngineErrorCodes.EVALUATION, message, cause)
