"""IGDB API 向け infra 層パッケージ。"""

from .auth import (
    AccessTokenProviderProtocol,
    IGDBAccessToken,
    IGDBAccessTokenProvider,
    TwitchOAuthClient,
)
from .batch import (
    BatchResult,
    BatchRetryPolicy,
    IGDBBatchClient,
    build_batch_client,
    build_connection,
)
from .connection import IGDBConnection, IGDBWrapperProtocol
from .dto import GameCategory, IGDBExternalGameDTO, IGDBGameDTO, parse_game_record
from .errors import (
    IGDBAuthenticationError,
    IGDBClientError,
    IGDBNotFoundError,
    IGDBRateLimitError,
    IGDBRequestError,
    IGDBTransientError,
)
from .query import IGDBQuery, IGDBQueryBuilder
from .rate_limiter import TokenBucketRateLimiter

__all__ = [
    "AccessTokenProviderProtocol",
    "BatchResult",
    "BatchRetryPolicy",
    "GameCategory",
    "IGDBAccessToken",
    "IGDBAccessTokenProvider",
    "IGDBAuthenticationError",
    "IGDBBatchClient",
    "IGDBClientError",
    "IGDBConnection",
    "IGDBExternalGameDTO",
    "IGDBGameDTO",
    "IGDBNotFoundError",
    "IGDBQuery",
    "IGDBQueryBuilder",
    "IGDBRateLimitError",
    "IGDBRequestError",
    "IGDBTransientError",
    "IGDBWrapperProtocol",
    "TokenBucketRateLimiter",
    "TwitchOAuthClient",
    "build_batch_client",
    "build_connection",
    "parse_game_record",
]
