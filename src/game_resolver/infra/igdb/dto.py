"""IGDB API 向け DTO およびレスポンス整形ユーティリティ。"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from typing import Any

from game_resolver.shared.types import DTO, epoch_to_datetime


class GameCategory(IntEnum):
    """IGDB `games.category` の値。"""

    MAIN_GAME = 0
    DLC_ADDON = 1
    EXPANSION = 2
    BUNDLE = 3
    STANDALONE_EXPANSION = 4
    MOD = 5
    EPISODE = 6
    SEASON = 7
    REMAKE = 8
    REMASTER = 9
    EXPANDED_GAME = 10
    PORT = 11
    FORK = 12
    PACK = 13
    UPDATE = 14


KNOWN_CATEGORIES = frozenset(int(category) for category in GameCategory)

# PC / DOS / C64 / Amiga / Atari ST
PC_PLATFORMS = frozenset({6, 13, 15, 16, 63})


@dataclass(slots=True)
class IGDBGameDTO(DTO):
    """解決に必要な主要フィールドのみを保持する DTO。"""

    id: int
    name: str
    slug: str | None = None
    summary: str | None = None
    category: int = int(GameCategory.MAIN_GAME)
    status: int | None = None
    first_release_date: datetime | None = None
    platforms: tuple[int, ...] = ()
    parent_game: int | None = None
    version_parent: int | None = None
    follows: int = 0
    hypes: int = 0
    aggregated_rating: float | None = None
    total_rating: float | None = None
    cover_image_id: str | None = None
    regions: tuple[int, ...] = ()
    updated_at: int | None = None

    @property
    def release_year(self) -> int | None:
        return self.first_release_date.year if self.first_release_date else None

    @property
    def is_pc_game(self) -> bool:
        return any(platform in PC_PLATFORMS for platform in self.platforms)


@dataclass(slots=True)
class IGDBExternalGameDTO(DTO):
    """ストアフロント上の ID と IGDB ゲーム ID の対応。"""

    id: int
    game: int
    uid: str
    category: int | None = None


def parse_games_from_payload(payload: bytes) -> tuple[IGDBGameDTO, ...]:
    """`games` エンドポイントのレスポンスバイト列を DTO 群へ変換する。"""

    return tuple(parse_game_record(raw) for raw in _decode_array(payload, "game"))


def parse_external_games_from_payload(payload: bytes) -> tuple[IGDBExternalGameDTO, ...]:
    """`external_games` エンドポイントのレスポンスを DTO 群へ変換する。"""

    return tuple(
        parse_external_game_record(raw) for raw in _decode_array(payload, "external game")
    )


def parse_external_game_record(data: Mapping[str, Any]) -> IGDBExternalGameDTO:
    """1 件分の external_game レコード (API レスポンス / Webhook ペイロード) を DTO へ変換する。"""

    record_id = data.get("id")
    game = _coerce_id(data.get("game"))
    uid = data.get("uid")
    if (
        not isinstance(record_id, int)
        or isinstance(record_id, bool)
        or game is None
        or not isinstance(uid, (str, int))
        or isinstance(uid, bool)
        or not str(uid).strip()
    ):
        msg = "External game record must contain `id`, `game` and `uid`"
        raise ValueError(msg)
    category = data.get("category")
    return IGDBExternalGameDTO(
        id=record_id,
        game=game,
        uid=str(uid).strip(),
        category=category if isinstance(category, int) and not isinstance(category, bool) else None,
    )


def parse_game_record(data: Mapping[str, Any]) -> IGDBGameDTO:
    """1 件分の game レコード (API レスポンス / Webhook ペイロード) を DTO へ変換する。"""

    game_id = data.get("id")
    name = data.get("name")
    if not isinstance(game_id, int) or isinstance(game_id, bool) or not isinstance(name, str):
        msg = "Game record must contain `id` (int) and `name` (str)"
        raise ValueError(msg)

    cover_obj = data.get("cover") if isinstance(data.get("cover"), dict) else None
    cover_image_id = cover_obj.get("image_id") if cover_obj else None
    category = data.get("category")

    return IGDBGameDTO(
        id=game_id,
        name=name,
        slug=_optional_str(data.get("slug")),
        summary=_optional_str(data.get("summary")),
        category=category if isinstance(category, int) else int(GameCategory.MAIN_GAME),
        status=data.get("status") if isinstance(data.get("status"), int) else None,
        first_release_date=epoch_to_datetime(data.get("first_release_date")),
        platforms=coerce_ids(data.get("platforms")),
        parent_game=_coerce_id(data.get("parent_game")),
        version_parent=_coerce_id(data.get("version_parent")),
        follows=_coerce_count(data.get("follows")),
        hypes=_coerce_count(data.get("hypes")),
        aggregated_rating=_coerce_float(data.get("aggregated_rating")),
        total_rating=_coerce_float(data.get("total_rating")),
        cover_image_id=cover_image_id if isinstance(cover_image_id, str) else None,
        regions=coerce_regions(data.get("release_dates")),
        updated_at=_coerce_id(data.get("updated_at")),
    )


def _decode_array(payload: bytes, label: str) -> list[Mapping[str, Any]]:
    if not payload:
        return []

    try:
        decoded = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:  # noqa: PERF203 - 明確な例外
        msg = f"Invalid JSON payload for IGDB {label} response"
        raise ValueError(msg) from exc

    if not isinstance(decoded, list):
        msg = f"IGDB {label} payload must be an array"
        raise ValueError(msg)
    for item in decoded:
        if not isinstance(item, dict):
            msg = f"Each {label} record must be an object"
            raise ValueError(msg)
    return decoded


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _coerce_id(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, dict):
        return _coerce_id(value.get("id"))
    return None


def coerce_ids(raw: Any) -> tuple[int, ...]:
    if not raw:
        return ()
    if isinstance(raw, Mapping) or not isinstance(raw, Iterable) or isinstance(raw, (str, bytes)):
        raw = (raw,)
    return tuple(value for item in raw if (value := _coerce_id(item)) is not None)


def _coerce_count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return max(0, int(value))


def _coerce_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def coerce_regions(raw: Any) -> tuple[int, ...]:
    if not isinstance(raw, list):
        return ()
    regions: list[int] = []
    for release in raw:
        region = release.get("region") if isinstance(release, dict) else None
        if isinstance(region, int) and region not in regions:
            regions.append(region)
    return tuple(regions)


__all__ = [
    "GameCategory",
    "IGDBExternalGameDTO",
    "IGDBGameDTO",
    "KNOWN_CATEGORIES",
    "PC_PLATFORMS",
    "coerce_ids",
    "coerce_regions",
    "parse_external_game_record",
    "parse_external_games_from_payload",
    "parse_game_record",
    "parse_games_from_payload",
]
