"""任意件数のキーを IGDB のページ単位へ分割して取得するバッチクライアント。"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Hashable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Generic, Protocol, TypeVar

from game_resolver.infra.igdb.auth import IGDBAccessTokenProvider, TwitchOAuthClient
from game_resolver.infra.igdb.connection import IGDBConnection
from game_resolver.infra.igdb.dto import (
    IGDBGameDTO,
    parse_external_games_from_payload,
    parse_games_from_payload,
)
from game_resolver.infra.igdb.errors import (
    IGDBClientError,
    IGDBNotFoundError,
    IGDBRequestError,
)
from game_resolver.infra.igdb.query import (
    EXTERNAL_GAME_FIELDS,
    EXTERNAL_GAMES_ENDPOINT,
    GAME_FIELDS,
    GAMES_ENDPOINT,
    IGDBQuery,
    IGDBQueryBuilder,
)
from game_resolver.infra.igdb.rate_limiter import TokenBucketRateLimiter
from game_resolver.shared.concurrency import run_bounded
from game_resolver.shared.config import AppSettings, get_settings
from game_resolver.shared.exceptions import Result
from game_resolver.shared.logging import get_logger

try:  # pragma: no cover - 型ヒント専用
    from structlog.stdlib import BoundLogger
except Exception:  # pragma: no cover
    BoundLogger = object  # type: ignore[assignment]

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

MAX_BATCH_SIZE = 500
DEFAULT_SEARCH_LIMIT = 50


class ConnectionProtocol(Protocol):
    async def request(
        self, endpoint: str, query: IGDBQuery, *, timeout: float | None = None
    ) -> bytes:
        """1 リクエストを送信する。"""


@dataclass(slots=True)
class BatchRetryPolicy:
    """ページ単位の再試行設定。"""

    max_attempts: int = 3
    backoff_factor: float = 0.5
    max_backoff: float = 8.0

    def delay(self, attempt: int) -> float:
        return min(self.max_backoff, self.backoff_factor * (2 ** (attempt - 1)))


@dataclass(slots=True)
class BatchResult(Generic[K, V]):
    """入力キーごとの成功/失敗。全キーをちょうど 1 回ずつ含む。"""

    results: dict[K, Result[V, IGDBClientError]] = field(default_factory=dict)
    pages: int = 0

    def __getitem__(self, key: K) -> Result[V, IGDBClientError]:
        return self.results[key]

    def __contains__(self, key: object) -> bool:
        return key in self.results

    def __len__(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> dict[K, V]:
        return {key: result.unwrap() for key, result in self.results.items() if result.is_ok}

    @property
    def failed(self) -> dict[K, IGDBClientError]:
        return {
            key: result.unwrap_err() for key, result in self.results.items() if result.is_err
        }


PageFetcher = Callable[[Sequence[K]], Awaitable[Mapping[K, Result[V, IGDBClientError]]]]


class IGDBBatchClient:
    """ID 参照・タイトル検索をページ分割し、部分成功をキー単位で返す。"""

    def __init__(
        self,
        *,
        connection: ConnectionProtocol,
        max_batch_size: int = MAX_BATCH_SIZE,
        fan_out: int = 4,
        retry_policy: BatchRetryPolicy | None = None,
        sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: BoundLogger | None = None,
    ) -> None:
        if not 1 <= max_batch_size <= MAX_BATCH_SIZE:
            msg = f"max_batch_size must be within 1..{MAX_BATCH_SIZE}"
            raise ValueError(msg)
        self._connection = connection
        self._max_batch_size = max_batch_size
        self._fan_out = max(1, fan_out)
        self._retry_policy = retry_policy or BatchRetryPolicy()
        self._sleep = sleep_func
        self._logger = logger or get_logger(__name__, component="igdb-batch")

    async def fetch_games(self, game_ids: Iterable[int]) -> BatchResult[int, IGDBGameDTO]:
        """ゲーム ID 群を取得する。存在しない ID は IGDBNotFoundError になる。"""

        async def fetch_page(
            page: Sequence[int],
        ) -> dict[int, Result[IGDBGameDTO, IGDBClientError]]:
            query = (
                IGDBQueryBuilder()
                .select(*GAME_FIELDS)
                .where_in("id", page)
                .limit(len(page))
                .build()
            )
            payload = await self._connection.request(GAMES_ENDPOINT, query)
            found = {game.id: game for game in parse_games_from_payload(payload)}
            return {game_id: self._found_or_missing(found.get(game_id)) for game_id in page}

        return await self._run(game_ids, self._max_batch_size, fetch_page)

    async def lookup_external_games(
        self, uids: Iterable[str], *, category: int
    ) -> BatchResult[str, int]:
        """ストアフロント上の uid を IGDB ゲーム ID へ対応付ける。"""

        async def fetch_page(page: Sequence[str]) -> dict[str, Result[int, IGDBClientError]]:
            query = (
                IGDBQueryBuilder()
                .select(*EXTERNAL_GAME_FIELDS)
                .where(f"category = {int(category)}")
                .where_in("uid", page)
                .limit(len(page))
                .build()
            )
            payload = await self._connection.request(EXTERNAL_GAMES_ENDPOINT, query)
            found = {record.uid: record.game for record in parse_external_games_from_payload(payload)}
            return {uid: self._found_or_missing(found.get(uid)) for uid in page}

        return await self._run((str(uid) for uid in uids), self._max_batch_size, fetch_page)

    async def search_titles(
        self, titles: Iterable[str], *, limit: int = DEFAULT_SEARCH_LIMIT
    ) -> BatchResult[str, tuple[IGDBGameDTO, ...]]:
        """タイトルごとに全文検索する。検索は 1 語 1 リクエスト。"""

        async def fetch_page(
            page: Sequence[str],
        ) -> dict[str, Result[tuple[IGDBGameDTO, ...], IGDBClientError]]:
            (title,) = page
            query = IGDBQueryBuilder().search(title).select(*GAME_FIELDS).limit(limit).build()
            payload = await self._connection.request(GAMES_ENDPOINT, query)
            return {title: Result.ok(parse_games_from_payload(payload))}

        return await self._run(titles, 1, fetch_page)

    async def _run(
        self,
        keys: Iterable[K],
        page_size: int,
        fetch_page: PageFetcher[K, V],
    ) -> BatchResult[K, V]:
        unique_keys = list(dict.fromkeys(keys))
        pages = [
            unique_keys[start : start + page_size]
            for start in range(0, len(unique_keys), page_size)
        ]

        page_results = await run_bounded(
            pages,
            lambda page: self._run_page(page, fetch_page),
            concurrency=self._fan_out,
        )

        merged: dict[K, Result[V, IGDBClientError]] = {}
        for page_result in page_results:
            merged.update(page_result)

        result = BatchResult(results={key: merged[key] for key in unique_keys}, pages=len(pages))
        self._logger.info(
            "igdb_batch_completed",
            keys=len(unique_keys),
            pages=len(pages),
            failed=len(result.failed),
        )
        return result

    async def _run_page(
        self, page: Sequence[K], fetch_page: PageFetcher[K, V]
    ) -> Mapping[K, Result[V, IGDBClientError]]:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await fetch_page(page)
            except ValueError as exc:
                error: IGDBClientError = IGDBRequestError("Failed to parse IGDB response")
                error.__cause__ = exc
            except IGDBClientError as exc:
                if exc.fatal:
                    raise
                error = exc

            if error.transient and attempt < self._retry_policy.max_attempts:
                delay = self._retry_policy.delay(attempt)
                self._logger.warning(
                    "igdb_page_retry",
                    attempt=attempt,
                    keys=len(page),
                    delay=delay,
                    error_type=error.__class__.__name__,
                )
                await self._sleep(delay)
                continue

            self._logger.error(
                "igdb_page_failed",
                attempts=attempt,
                keys=len(page),
                error_type=error.__class__.__name__,
                message=str(error),
            )
            return {key: Result.err(error) for key in page}

    @staticmethod
    def _found_or_missing(value: V | None) -> Result[V, IGDBClientError]:
        if value is None:
            return Result.err(IGDBNotFoundError())
        return Result.ok(value)


def build_connection(*, settings: AppSettings | None = None) -> IGDBConnection:
    """共有設定から IGDB 接続を構築するファクトリ。"""

    app_settings = settings or get_settings()
    igdb_settings = app_settings.igdb
    oauth_client = TwitchOAuthClient(
        client_id=igdb_settings.client_id,
        client_secret=igdb_settings.client_secret.get_secret_value(),
        token_url=str(igdb_settings.token_url),
    )
    token_provider = IGDBAccessTokenProvider(
        oauth_client=oauth_client,
        refresh_margin=timedelta(seconds=igdb_settings.refresh_margin_seconds),
    )
    return IGDBConnection(
        client_id=igdb_settings.client_id,
        token_provider=token_provider,
        rate_limiter=TokenBucketRateLimiter(igdb_settings.qps),
        request_timeout=igdb_settings.request_timeout_seconds,
    )


def build_batch_client(
    *,
    settings: AppSettings | None = None,
    connection: IGDBConnection | None = None,
    logger: BoundLogger | None = None,
) -> IGDBBatchClient:
    """共有設定からバッチクライアントを構築するファクトリ。"""

    app_settings = settings or get_settings()
    igdb_settings = app_settings.igdb
    return IGDBBatchClient(
        connection=connection or build_connection(settings=app_settings),
        max_batch_size=igdb_settings.max_batch_size,
        fan_out=igdb_settings.fan_out,
        retry_policy=BatchRetryPolicy(
            max_attempts=igdb_settings.max_attempts,
            backoff_factor=igdb_settings.backoff_factor,
            max_backoff=igdb_settings.max_backoff_seconds,
        ),
        logger=logger,
    )


__all__ = [
    "BatchResult",
    "BatchRetryPolicy",
    "ConnectionProtocol",
    "DEFAULT_SEARCH_LIMIT",
    "IGDBBatchClient",
    "MAX_BATCH_SIZE",
    "build_batch_client",
    "build_connection",
]
