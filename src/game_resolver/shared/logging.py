"""構造化ロギングのセットアップとヘルパー。"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

DEFAULT_LOG_LEVEL = "INFO"

# リクエストごとに INFO を出すライブラリは WARNING 以上のみ通す
_NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "alembic.runtime.migration")


def _coerce_level(level: str | int) -> int:
    if isinstance(level, int):
        return level

    mapping = logging.getLevelNamesMapping()
    try:
        return mapping[level.upper()]
    except KeyError:
        msg = f"Unsupported log level: {level}"
        raise ValueError(msg) from None


def configure_logging(level: str | int = DEFAULT_LOG_LEVEL, *, json_output: bool = False) -> None:
    """structlog を標準 logging 経由で stderr へ出力するよう設定する。

    stdout は CLI の表/JSON 出力専用に空けておく。`bind_context` で束縛した
    値 (user_id など) は contextvars から各ログへ合成される。

    Args:
        level: 文字列または数値で表現したログレベル。
        json_output: True の場合 1 行 1 JSON で出力する。
    """

    log_level = _coerce_level(level)
    logging.basicConfig(level=log_level, format="%(message)s", stream=sys.stderr, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer(ensure_ascii=False)
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None, **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """共有ロガーを取得し、必要に応じて初期バインド値を設定。"""

    logger = structlog.stdlib.get_logger(name)
    return logger.bind(**initial_values) if initial_values else logger


def bind_context(**values: Any) -> None:
    """現在のタスクに紐づくログコンテキストを追加する。"""

    structlog.contextvars.bind_contextvars(**values)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


__all__ = [
    "DEFAULT_LOG_LEVEL",
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
]
