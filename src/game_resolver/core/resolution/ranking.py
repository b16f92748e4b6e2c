"""タイトル検索結果の候補順位付け。"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from rapidfuzz import fuzz

from game_resolver.core.resolution.models import (
    GameDigest,
    ScoredCandidate,
    SearchHints,
    sort_candidates,
)
from game_resolver.infra.igdb.batch import DEFAULT_SEARCH_LIMIT, BatchResult
from game_resolver.infra.igdb.dto import PC_PLATFORMS, IGDBGameDTO
from game_resolver.shared.events import EventSinkProtocol, ResolveAction, ResolveEvent
from game_resolver.shared.logging import get_logger

try:  # pragma: no cover - 型ヒント専用
    from structlog.stdlib import BoundLogger
except Exception:  # pragma: no cover
    BoundLogger = object  # type: ignore[assignment]

TITLE_WEIGHT = 0.7
YEAR_WEIGHT = 0.15
PLATFORM_WEIGHT = 0.15
SCORE_PRECISION = 4

# ストアフロントから推定できるプラットフォーム
STOREFRONT_PLATFORMS: dict[str, frozenset[int]] = {
    "steam": PC_PLATFORMS,
    "gog": PC_PLATFORMS,
    "egs": PC_PLATFORMS,
}

_MARKS_PATTERN = re.compile(r"[™®©]")
_EDITION_PATTERN = re.compile(
    r"\b(?:game of the year|goty|definitive|deluxe|digital deluxe|complete|ultimate|"
    r"enhanced|gold|special|collector'?s|anniversary|standard)\s+edition\b"
    r"|\bgoty\b|\bdirector'?s cut\b"
)
_NON_WORD_PATTERN = re.compile(r"[^\w]+", re.UNICODE)


def normalize_title(title: str) -> str:
    """商標記号・記号類・エディション表記を除いた比較用タイトルを返す。"""

    # NFKC は ™ を "TM" へ展開するため先に記号を除く
    text = unicodedata.normalize("NFKC", _MARKS_PATTERN.sub("", title)).lower()
    text = _EDITION_PATTERN.sub(" ", text)
    text = _NON_WORD_PATTERN.sub(" ", text)
    return " ".join(text.split())


def title_similarity(left: str, right: str) -> float:
    return fuzz.token_sort_ratio(normalize_title(left), normalize_title(right)) / 100


def score_candidate(
    title: str,
    hints: SearchHints,
    digest: GameDigest,
    *,
    year_tolerance: int = 1,
) -> ScoredCandidate:
    """タイトル類似度に発売年・プラットフォームの一致を加味したスコアを付ける。

    ヒントが無い (またはカタログ側に値が無い) 項目は重みごと除外し、
    残りの重みで正規化する。結果は常に 0..1。
    """

    parts: list[tuple[float, float]] = [(TITLE_WEIGHT, title_similarity(title, digest.name))]

    if hints.release_year is not None and digest.release_year is not None:
        year_match = abs(hints.release_year - digest.release_year) <= year_tolerance
        parts.append((YEAR_WEIGHT, 1.0 if year_match else 0.0))

    platforms = set(hints.platforms)
    if hints.storefront:
        platforms |= STOREFRONT_PLATFORMS.get(hints.storefront, frozenset())
    if platforms and digest.platforms:
        overlap = not platforms.isdisjoint(digest.platforms)
        parts.append((PLATFORM_WEIGHT, 1.0 if overlap else 0.0))

    total_weight = sum(weight for weight, _ in parts)
    score = sum(weight * value for weight, value in parts) / total_weight
    return ScoredCandidate(digest=digest, score=round(score, SCORE_PRECISION))


def rank_candidates(
    title: str,
    hints: SearchHints,
    digests: Iterable[GameDigest],
    *,
    year_tolerance: int = 1,
) -> list[ScoredCandidate]:
    """候補をスコア降順・人気度降順・ID 昇順に並べる。同一 ID は 1 件に畳む。"""

    unique = {digest.id: digest for digest in digests}
    return sort_candidates(
        [
            score_candidate(title, hints, digest, year_tolerance=year_tolerance)
            for digest in unique.values()
        ]
    )


class TitleSearchClientProtocol(Protocol):
    async def search_titles(
        self, titles: Iterable[str], *, limit: int = DEFAULT_SEARCH_LIMIT
    ) -> BatchResult[str, tuple[IGDBGameDTO, ...]]:
        """タイトルごとの検索結果を返す。"""


class SearchProtocol(Protocol):
    async def search(
        self, title: str, hints: SearchHints | None = None
    ) -> list[ScoredCandidate]:
        """順位付け済みの候補を返す。該当なしは空リスト。ヒント省略時は制約なし。"""

    def score(self, title: str, hints: SearchHints, digest: GameDigest) -> ScoredCandidate:
        """単一ダイジェストを同じ基準で採点する。"""


@dataclass(slots=True)
class CatalogSearch(SearchProtocol):
    """カタログの全文検索結果を順位付けして返す。"""

    batch_client: TitleSearchClientProtocol
    year_tolerance: int = 1
    limit: int = DEFAULT_SEARCH_LIMIT
    event_sink: EventSinkProtocol | None = None
    logger: BoundLogger = field(
        default_factory=lambda: get_logger(__name__, component="catalog-search")
    )

    async def search(self, title: str, hints: SearchHints | None = None) -> list[ScoredCandidate]:
        hints = hints or SearchHints()
        batch = await self.batch_client.search_titles([title], limit=self.limit)
        result = batch[title]
        if result.is_err:
            raise result.unwrap_err()

        candidates = rank_candidates(
            title,
            hints,
            (GameDigest.from_igdb(game) for game in result.unwrap()),
            year_tolerance=self.year_tolerance,
        )
        self.logger.info(
            "catalog_search_completed",
            title=title,
            candidate_count=len(candidates),
            top_score=candidates[0].score if candidates else None,
        )
        if self.event_sink is not None:
            self.event_sink.emit(
                ResolveEvent(
                    action=ResolveAction.SEARCH,
                    subject=title,
                    outcome=f"{len(candidates)} candidates",
                    game_id=candidates[0].digest.id if candidates else None,
                )
            )
        return candidates

    def score(self, title: str, hints: SearchHints, digest: GameDigest) -> ScoredCandidate:
        return score_candidate(title, hints, digest, year_tolerance=self.year_tolerance)


def top_two_scores(candidates: Sequence[ScoredCandidate]) -> tuple[float, float]:
    """最上位と次点のスコア。次点が無ければ 0。"""

    if not candidates:
        return 0.0, 0.0
    second = candidates[1].score if len(candidates) > 1 else 0.0
    return candidates[0].score, second


__all__ = [
    "CatalogSearch",
    "SearchProtocol",
    "STOREFRONT_PLATFORMS",
    "TitleSearchClientProtocol",
    "normalize_title",
    "rank_candidates",
    "score_candidate",
    "title_similarity",
    "top_two_scores",
]
