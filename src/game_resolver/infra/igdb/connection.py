"""IGDB への唯一の送信口となる接続。"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

import requests
from igdb.wrapper import IGDBWrapper

from game_resolver.infra.igdb.auth import AccessTokenProviderProtocol
from game_resolver.infra.igdb.errors import (
    IGDBAuthenticationError,
    IGDBClientError,
    IGDBRateLimitError,
    IGDBRequestError,
    IGDBTransientError,
)
from game_resolver.infra.igdb.query import IGDBQuery
from game_resolver.infra.igdb.rate_limiter import TokenBucketRateLimiter
from game_resolver.shared.logging import get_logger

try:  # pragma: no cover - 型ヒント専用
    from structlog.stdlib import BoundLogger
except Exception:  # pragma: no cover
    BoundLogger = object  # type: ignore[assignment]


class IGDBWrapperProtocol(Protocol):
    """IGDBWrapper が満たすシンプルなプロトコル。"""

    def api_request(self, endpoint: str, query: str) -> bytes:
        """APICalypse クエリを実行してレスポンスを返す。"""


_AUTH_STATUSES = (401, 403)


def classify_http_error(exc: requests.RequestException) -> IGDBClientError:
    """requests の例外を IGDB エラー分類へ写像する。"""

    if isinstance(exc, requests.HTTPError):
        status_code = exc.response.status_code if exc.response is not None else None
        if status_code in _AUTH_STATUSES:
            return IGDBAuthenticationError(f"IGDB rejected the credential (status={status_code})")
        if status_code == 429:
            return IGDBRateLimitError()
        if status_code is None or status_code >= 500:
            return IGDBTransientError(f"IGDB API request failed (status={status_code})")
        return IGDBRequestError(f"IGDB API request failed (status={status_code})")
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return IGDBTransientError(f"IGDB API unreachable: {exc}")
    return IGDBRequestError(f"IGDB API request failed: {exc}")


@dataclass(slots=True, frozen=True)
class IGDBConnection:
    """client id・資格情報・共有レートリミッタの不変な組。

    再試行もレスポンス解釈も行わず、失敗の分類だけを返す。
    """

    client_id: str
    token_provider: AccessTokenProviderProtocol
    rate_limiter: TokenBucketRateLimiter
    wrapper_factory: Callable[[str, str], IGDBWrapperProtocol] = IGDBWrapper
    request_timeout: float = 30.0
    logger: BoundLogger = field(
        default_factory=lambda: get_logger(__name__, component="igdb-connection"),
        compare=False,
    )

    async def request(
        self, endpoint: str, query: IGDBQuery, *, timeout: float | None = None
    ) -> bytes:
        """レートリミッタを通過してから 1 リクエストを送信する。"""

        await self.rate_limiter.acquire()
        compiled = query.to_apicalypse()
        self.logger.debug("igdb_request", endpoint=endpoint)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._send, endpoint, compiled),
                timeout=timeout or self.request_timeout,
            )
        except TimeoutError as exc:
            msg = f"IGDB request to {endpoint} timed out"
            raise IGDBTransientError(msg) from exc

    def _send(self, endpoint: str, compiled_query: str) -> bytes:
        token = self.token_provider.get_token()
        wrapper = self.wrapper_factory(self.client_id, token.access_token)
        try:
            return wrapper.api_request(endpoint, compiled_query)
        except requests.RequestException as exc:
            error = classify_http_error(exc)
            if isinstance(error, IGDBAuthenticationError):
                invalidate = getattr(self.token_provider, "invalidate", None)
                if callable(invalidate):
                    invalidate()
            raise error from exc


__all__ = ["IGDBConnection", "IGDBWrapperProtocol", "classify_http_error"]
