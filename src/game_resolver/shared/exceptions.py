"""共通例外と結果型。

エラーは次の 3 種に分類する。

- transient: 再試行で回復し得る (ネットワーク断、5xx、レート制限)。
- fatal: 再試行せず即座に呼び出し元へ伝播する (認証失敗、設定不備)。
- どちらでもない: 現在の試行のみを終了させる通常の失敗。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Generic, TypeVar


class BaseAppError(Exception):
    """全レイヤで共有するベース例外。"""

    default_message = "An unexpected error occurred"
    transient: ClassVar[bool] = False
    fatal: ClassVar[bool] = False

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class ConfigurationError(BaseAppError):
    """設定値の欠落・不正を示すエラー。"""

    default_message = "Configuration is invalid or missing"
    fatal = True


class DomainError(BaseAppError):
    """ドメイン層で利用する基底例外。"""

    default_message = "Domain layer error"


def is_fatal(error: BaseException) -> bool:
    """伝播させるべき致命的エラーかを判定する。"""

    return isinstance(error, BaseAppError) and error.fatal


T = TypeVar("T")
E = TypeVar("E", bound=BaseAppError)


@dataclass(slots=True)
class Result(Generic[T, E]):
    """成功/失敗を同一インターフェースで扱う結果型。"""

    value: T | None = None
    error: E | None = None

    def __post_init__(self) -> None:
        if (self.value is None) == (self.error is None):
            msg = "Result must contain either value or error"
            raise ValueError(msg)

    @property
    def is_ok(self) -> bool:
        return self.error is None

    @property
    def is_err(self) -> bool:
        return self.error is not None

    def unwrap(self) -> T:
        if self.value is None:
            msg = "Cannot unwrap error result"
            raise RuntimeError(msg)
        return self.value

    def unwrap_err(self) -> E:
        if self.error is None:
            msg = "Cannot unwrap ok result"
            raise RuntimeError(msg)
        return self.error

    @classmethod
    def ok(cls, value: T) -> Result[T, E]:
        return cls(value=value)

    @classmethod
    def err(cls, error: E) -> Result[T, E]:
        return cls(error=error)


__all__ = [
    "BaseAppError",
    "ConfigurationError",
    "DomainError",
    "Result",
    "is_fatal",
]
