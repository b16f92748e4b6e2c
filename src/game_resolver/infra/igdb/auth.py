"""Twitch OAuth2 による IGDB アクセストークンの取得とキャッシュ。"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

import httpx

from game_resolver.infra.igdb.errors import IGDBAuthenticationError, IGDBTransientError


@dataclass(slots=True, frozen=True)
class IGDBAccessToken:
    """IGDB API へアクセスするためのアクセストークン。"""

    access_token: str
    expires_at: datetime | None


class AccessTokenProviderProtocol(Protocol):
    """有効なトークンを返すプロバイダー。"""

    def get_token(self) -> IGDBAccessToken:
        """期限内のトークンを返す。"""


class TwitchOAuthClient:
    """Twitch OAuth2 (client credentials) でアクセストークンを取得するクライアント。"""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        token_url: str,
        http_post: Callable[..., httpx.Response] = httpx.post,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url
        self._http_post = http_post

    def fetch_app_access_token(self) -> IGDBAccessToken:
        try:
            response = self._http_post(
                self._token_url,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "grant_type": "client_credentials",
                },
                headers={"Accept": "application/json"},
                timeout=10.0,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code in (400, 401, 403):
                raise IGDBAuthenticationError("Twitch rejected the client credentials") from exc
            msg = f"Token endpoint failed (status={exc.response.status_code})"
            raise IGDBTransientError(msg) from exc
        except httpx.TransportError as exc:
            raise IGDBTransientError("Token endpoint unreachable") from exc

        payload = response.json()
        access_token = payload["access_token"]
        expires_in = payload.get("expires_in")
        expires_at = (
            datetime.now(UTC) + timedelta(seconds=int(expires_in))
            if isinstance(expires_in, (int, float))
            else None
        )
        return IGDBAccessToken(access_token=access_token, expires_at=expires_at)


class IGDBAccessTokenProvider(AccessTokenProviderProtocol):
    """アクセストークンのキャッシュと有効期限管理を行うプロバイダー。

    接続から `asyncio.to_thread` 経由で並行に呼ばれるため、再取得はロックで直列化する。
    """

    def __init__(
        self,
        *,
        oauth_client: TwitchOAuthClient,
        refresh_margin: timedelta,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._oauth_client = oauth_client
        self._refresh_margin = refresh_margin
        self._clock = clock or (lambda: datetime.now(UTC))
        self._cached_token: IGDBAccessToken | None = None
        self._lock = threading.Lock()

    def get_token(self) -> IGDBAccessToken:
        with self._lock:
            now = self._clock()
            if self._cached_token and not self._should_refresh(self._cached_token, now):
                return self._cached_token

            self._cached_token = self._oauth_client.fetch_app_access_token()
            return self._cached_token

    def invalidate(self) -> None:
        """サービスに拒否されたトークンを破棄し、次回取得時に再発行させる。"""

        with self._lock:
            self._cached_token = None

    def _should_refresh(self, token: IGDBAccessToken, now: datetime) -> bool:
        if token.expires_at is None:
            return False
        return token.expires_at - self._refresh_margin <= now


__all__ = [
    "AccessTokenProviderProtocol",
    "IGDBAccessToken",
    "IGDBAccessTokenProvider",
    "TwitchOAuthClient",
]
