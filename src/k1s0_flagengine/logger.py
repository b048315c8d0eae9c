"""structlog ベースのロガー設定"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from .config import EngineConfig


def new_logger(
    level: str = "INFO",
    format: str = "json",
    environment: str | None = None,
) -> structlog.stdlib.BoundLogger:
    """structlog を設定し、flagengine 用のロガーを返す。

    エンジン内の各モジュールは structlog.stdlib.get_logger(__name__) で
    ロガーを取得するため、ここでの設定がそのまま適用される。

    Args:
        level: ログレベル ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        format: 出力形式 ("json" or "console")
        environment: 指定時は全ログに environment を付与する

    Returns:
        設定済みの structlog.stdlib.BoundLogger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    renderer: structlog.types.Processor
    if format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logger: structlog.stdlib.BoundLogger = structlog.stdlib.get_logger("k1s0_flagengine")
    if environment:
        structlog.contextvars.bind_contextvars(environment=environment)
    return logger


def logger_from_config(config: EngineConfig) -> structlog.stdlib.BoundLogger:
    """EngineConfig の log セクションと environment からロガーを設定する。"""
    return new_logger(config.log.level, config.log.format, environment=config.environment)
