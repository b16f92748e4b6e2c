"""IGDB クライアントの例外階層。"""

from __future__ import annotations

from game_resolver.shared.exceptions import BaseAppError


class IGDBClientError(BaseAppError):
    """IGDB クライアント共通の例外。"""

    default_message = "IGDB request failed"


class IGDBTransientError(IGDBClientError):
    """ネットワーク断・タイムアウト・5xx など再試行で回復し得るエラー。"""

    transient = True


class IGDBRateLimitError(IGDBTransientError):
    """レート超過 (429) に起因するエラー。"""

    default_message = "IGDB API rate limit exceeded"


class IGDBAuthenticationError(IGDBClientError):
    """資格情報が拒否された。再試行しない。"""

    default_message = "IGDB rejected the access credential"
    fatal = True


class IGDBRequestError(IGDBClientError):
    """リトライ不能な HTTP エラー、またはレスポンスの解析失敗。"""


class IGDBNotFoundError(IGDBClientError):
    """指定したキーに対応するレコードが存在しない。"""

    default_message = "No IGDB record matched the key"


__all__ = [
    "IGDBAuthenticationError",
    "IGDBClientError",
    "IGDBNotFoundError",
    "IGDBRateLimitError",
    "IGDBRequestError",
    "IGDBTransientError",
]
