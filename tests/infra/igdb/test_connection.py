"""IGDBConnection の送信・失敗分類を検証する。"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
from requests import ConnectionError as RequestsConnectionError
from requests import HTTPError, Response

from game_resolver.infra.igdb.auth import IGDBAccessToken
from game_resolver.infra.igdb.connection import IGDBConnection, classify_http_error
from game_resolver.infra.igdb.errors import (
    IGDBAuthenticationError,
    IGDBRateLimitError,
    IGDBRequestError,
    IGDBTransientError,
)
from game_resolver.infra.igdb.query import IGDBQueryBuilder
from game_resolver.infra.igdb.rate_limiter import TokenBucketRateLimiter


class StubWrapper:
    """IGDBWrapper の呼び出しをスタブ化する。"""

    def __init__(self, actions: list[Any]) -> None:
        self._actions = actions
        self.calls: list[tuple[str, str]] = []

    def api_request(self, endpoint: str, query: str) -> bytes:
        self.calls.append((endpoint, query))
        action = self._actions.pop(0)
        if isinstance(action, Exception):
            raise action
        return action


class StubTokenProvider:
    def __init__(self) -> None:
        self.invalidated = 0

    def get_token(self) -> IGDBAccessToken:
        return IGDBAccessToken(access_token="token", expires_at=None)

    def invalidate(self) -> None:
        self.invalidated += 1


class CountingLimiter(TokenBucketRateLimiter):
    def __init__(self) -> None:
        super().__init__(1000.0)
        self.acquired = 0

    async def acquire(self) -> None:
        self.acquired += 1
        await super().acquire()


def _http_error(status: int) -> HTTPError:
    response = Response()
    response.status_code = status
    return HTTPError(response=response)


def _connection(actions: list[Any], **kwargs: Any) -> tuple[IGDBConnection, StubWrapper]:
    wrapper = StubWrapper(actions)
    connection = IGDBConnection(
        client_id="cid",
        token_provider=kwargs.pop("token_provider", StubTokenProvider()),
        rate_limiter=kwargs.pop("rate_limiter", CountingLimiter()),
        wrapper_factory=lambda *_: wrapper,
        **kwargs,
    )
    return connection, wrapper


@pytest.mark.parametrize(
    "error, expected",
    [
        (_http_error(401), IGDBAuthenticationError),
        (_http_error(403), IGDBAuthenticationError),
        (_http_error(429), IGDBRateLimitError),
        (_http_error(500), IGDBTransientError),
        (_http_error(503), IGDBTransientError),
        (_http_error(400), IGDBRequestError),
        (_http_error(404), IGDBRequestError),
        (RequestsConnectionError("reset"), IGDBTransientError),
    ],
)
def test_classify_http_error(error: Exception, expected: type) -> None:
    classified = classify_http_error(error)

    assert type(classified) is expected


def test_error_kinds() -> None:
    assert IGDBAuthenticationError().fatal
    assert IGDBRateLimitError().transient
    assert not IGDBRequestError().transient
    assert not IGDBRequestError().fatal


async def test_request_goes_through_limiter() -> None:
    limiter = CountingLimiter()
    connection, wrapper = _connection([b"[]"], rate_limiter=limiter)
    query = IGDBQueryBuilder().select("id", "name").where("id = 1").build()

    payload = await connection.request("games", query)

    assert payload == b"[]"
    assert limiter.acquired == 1
    assert wrapper.calls == [("games", "fields id, name; where id = 1;")]


async def test_authentication_failure_invalidates_token() -> None:
    provider = StubTokenProvider()
    connection, _ = _connection([_http_error(401)], token_provider=provider)

    with pytest.raises(IGDBAuthenticationError):
        await connection.request("games", IGDBQueryBuilder().select("id").build())

    assert provider.invalidated == 1


async def test_request_timeout_is_transient() -> None:
    class SlowWrapper:
        def api_request(self, endpoint: str, query: str) -> bytes:
            import time

            time.sleep(0.2)
            return b"[]"

    connection = IGDBConnection(
        client_id="cid",
        token_provider=StubTokenProvider(),
        rate_limiter=CountingLimiter(),
        wrapper_factory=lambda *_: SlowWrapper(),
    )

    with pytest.raises(IGDBTransientError):
        await connection.request("games", IGDBQueryBuilder().select("id").build(), timeout=0.01)
    await asyncio.sleep(0.25)
