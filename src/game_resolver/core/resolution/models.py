"""エントリ解決のドメインモデル。"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any

from game_resolver.infra.igdb.dto import IGDBGameDTO
from game_resolver.shared.types import Document, EntryKey

_KEY_PATTERN = re.compile(r"\s+")


@dataclass(slots=True, frozen=True)
class SearchHints:
    """タイトル検索時の補助情報。"""

    platforms: frozenset[int] = frozenset()
    storefront: str | None = None
    release_year: int | None = None


@dataclass(slots=True, frozen=True)
class StoreEntry:
    """ストアフロント 1 件分の所有記録。取り込み後は変更しない。"""

    title: str
    storefront: str
    external_id: int | None = None
    storefront_uid: str | None = None
    platforms: tuple[int, ...] = ()
    release_year: int | None = None
    url: str | None = None

    def __post_init__(self) -> None:
        if not self.title.strip():
            msg = "title is required"
            raise ValueError(msg)
        if not self.storefront.strip():
            msg = "storefront is required"
            raise ValueError(msg)
        object.__setattr__(self, "storefront", self.storefront.strip().lower())
        object.__setattr__(self, "platforms", tuple(self.platforms))

    @property
    def key(self) -> EntryKey:
        """ユーザー内でエントリを一意に識別するキー。"""

        if self.storefront_uid:
            return EntryKey(f"{self.storefront}:{self.storefront_uid}")
        return EntryKey(f"{self.storefront}:{_KEY_PATTERN.sub(' ', self.title.strip().lower())}")

    @property
    def hints(self) -> SearchHints:
        return SearchHints(
            platforms=frozenset(self.platforms),
            storefront=self.storefront,
            release_year=self.release_year,
        )

    def to_document(self) -> Document:
        return {
            "title": self.title,
            "storefront": self.storefront,
            "external_id": self.external_id,
            "storefront_uid": self.storefront_uid,
            "platforms": list(self.platforms),
            "release_year": self.release_year,
            "url": self.url,
        }

    @classmethod
    def from_document(cls, document: Document) -> StoreEntry:
        return cls(
            title=document["title"],
            storefront=document["storefront"],
            external_id=document.get("external_id"),
            storefront_uid=document.get("storefront_uid"),
            platforms=tuple(document.get("platforms") or ()),
            release_year=document.get("release_year"),
            url=document.get("url"),
        )


@dataclass(slots=True, frozen=True)
class GameDigest:
    """カタログレコードのコンパクトなスナップショット。

    正準 ID は `id` のみで、それ以外は再取得で置き換わる派生値。
    `updated_at` はカタログ側の更新時刻で、差分適用の順序判定に使う。
    """

    id: int
    name: str
    slug: str | None = None
    release_year: int | None = None
    category: int = 0
    platforms: tuple[int, ...] = ()
    popularity: int = 0
    rating: float | None = None
    summary: str | None = None
    parent_id: int | None = None
    version_parent_id: int | None = None
    cover_image_id: str | None = None
    updated_at: int | None = None

    @classmethod
    def from_igdb(cls, game: IGDBGameDTO) -> GameDigest:
        rating = game.aggregated_rating if game.aggregated_rating is not None else game.total_rating
        return cls(
            id=game.id,
            name=game.name,
            slug=game.slug,
            release_year=game.release_year,
            category=game.category,
            platforms=tuple(game.platforms),
            popularity=game.follows + game.hypes,
            rating=rating,
            summary=game.summary,
            parent_id=game.parent_game,
            version_parent_id=game.version_parent,
            cover_image_id=game.cover_image_id,
            updated_at=game.updated_at,
        )

    def is_older_than(self, other: GameDigest) -> bool:
        """`other` より古い版なら True。版情報が欠けていれば比較しない。"""

        if self.updated_at is None or other.updated_at is None:
            return False
        return self.updated_at < other.updated_at

    def to_document(self) -> Document:
        document = {item.name: getattr(self, item.name) for item in fields(self)}
        document["platforms"] = list(self.platforms)
        return document

    @classmethod
    def from_document(cls, document: Document) -> GameDigest:
        known = {item.name for item in fields(cls)}
        values = {key: value for key, value in document.items() if key in known}
        values["platforms"] = tuple(values.get("platforms") or ())
        return cls(**values)


@dataclass(slots=True, frozen=True)
class ScoredCandidate:
    """順位付け済みの候補。"""

    digest: GameDigest
    score: float

    def to_document(self) -> Document:
        return {"digest": self.digest.to_document(), "score": self.score}

    @classmethod
    def from_document(cls, document: Document) -> ScoredCandidate:
        return cls(
            digest=GameDigest.from_document(document["digest"]),
            score=float(document["score"]),
        )


def candidate_sort_key(candidate: ScoredCandidate) -> tuple[float, int, int]:
    """スコア降順・人気度降順・ID 昇順の全順序キー。"""

    return (-candidate.score, -candidate.digest.popularity, candidate.digest.id)


def sort_candidates(candidates: list[ScoredCandidate]) -> list[ScoredCandidate]:
    return sorted(candidates, key=candidate_sort_key)


class ResolutionState(str, Enum):
    RESOLVED = "resolved"
    NEEDS_APPROVAL = "needs_approval"
    UNKNOWN = "unknown"


@dataclass(slots=True, frozen=True)
class Resolved:
    digest: GameDigest

    state = ResolutionState.RESOLVED


@dataclass(slots=True, frozen=True)
class NeedsApproval:
    candidates: tuple[ScoredCandidate, ...]

    state = ResolutionState.NEEDS_APPROVAL


@dataclass(slots=True, frozen=True)
class Unknown:
    state = ResolutionState.UNKNOWN


ResolutionOutcome = Resolved | NeedsApproval | Unknown


@dataclass(slots=True, frozen=True)
class Transition:
    """保存 1 回分の遷移。`applied` が False なら何も書き込んでいない。"""

    previous: ResolutionState | None
    current: ResolutionState | None
    applied: bool = True


# 名前・カテゴリ・親/別版の付け替えは「同一作品か」の判断を変えうる
IDENTITY_FIELDS: tuple[str, ...] = ("name", "category", "parent_id", "version_parent_id")
_UNORDERED_FIELDS = frozenset({"platforms"})
_IGNORED_FIELDS = frozenset({"id", "updated_at"})


@dataclass(slots=True, frozen=True)
class IgdbGameDiff:
    """保存済みダイジェストと新しいレコードのフィールド単位の差分。"""

    game_id: int
    changed: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def between(cls, stored: GameDigest, fresh: GameDigest) -> IgdbGameDiff:
        if stored.id != fresh.id:
            msg = f"Cannot diff different games ({stored.id} != {fresh.id})"
            raise ValueError(msg)

        changed: list[str] = []
        for item in fields(GameDigest):
            if item.name in _IGNORED_FIELDS:
                continue
            before: Any = getattr(stored, item.name)
            after: Any = getattr(fresh, item.name)
            if item.name in _UNORDERED_FIELDS:
                before, after = frozenset(before), frozenset(after)
            if before != after:
                changed.append(item.name)
        return cls(game_id=stored.id, changed=tuple(changed))

    @property
    def is_empty(self) -> bool:
        return not self.changed

    @property
    def needs_resolve(self) -> bool:
        return any(name in IDENTITY_FIELDS for name in self.changed)

    def __str__(self) -> str:
        return json.dumps({name: True for name in self.changed}, sort_keys=True)


__all__ = [
    "GameDigest",
    "IDENTITY_FIELDS",
    "IgdbGameDiff",
    "NeedsApproval",
    "ResolutionOutcome",
    "ResolutionState",
    "Resolved",
    "ScoredCandidate",
    "SearchHints",
    "StoreEntry",
    "Transition",
    "Unknown",
    "candidate_sort_key",
    "sort_candidates",
]
