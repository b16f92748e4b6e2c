"""Webhook の第 1 段: 構造上の事前フィルタ。"""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from typing import Any

from game_resolver.infra.igdb.dto import KNOWN_CATEGORIES, PC_PLATFORMS, GameCategory, coerce_ids

MAIN_CATEGORIES = frozenset(
    {
        int(GameCategory.MAIN_GAME),
        int(GameCategory.EXPANSION),
        int(GameCategory.STANDALONE_EXPANSION),
        int(GameCategory.REMAKE),
        int(GameCategory.REMASTER),
    }
)


class PrefilterRejectionReason(str, Enum):
    MISSING_FIELDS = "MissingFields"
    DELETED = "Deleted"
    UNKNOWN_CATEGORY = "UnknownCategory"
    NOT_PC_GAME = "NotPcGame"
    NOT_MAIN_CATEGORY = "NotMainCategory"
    NO_USER_METRICS = "NoUserMetrics"


def prefilter(payload: Mapping[str, Any]) -> PrefilterRejectionReason | None:
    """通過なら None、却下なら理由を返す。"""

    game_id = payload.get("id")
    if not isinstance(game_id, int) or isinstance(game_id, bool):
        return PrefilterRejectionReason.MISSING_FIELDS
    # 削除通知は id のみのペイロードで届く
    if set(payload) == {"id"}:
        return PrefilterRejectionReason.DELETED
    name = payload.get("name")
    if not isinstance(name, str) or not name.strip():
        return PrefilterRejectionReason.MISSING_FIELDS

    category = payload.get("category", int(GameCategory.MAIN_GAME))
    if not isinstance(category, int) or category not in KNOWN_CATEGORIES:
        return PrefilterRejectionReason.UNKNOWN_CATEGORY
    if PC_PLATFORMS.isdisjoint(coerce_ids(payload.get("platforms"))):
        return PrefilterRejectionReason.NOT_PC_GAME
    if category not in MAIN_CATEGORIES:
        return PrefilterRejectionReason.NOT_MAIN_CATEGORY
    if not _has_user_metrics(payload):
        return PrefilterRejectionReason.NO_USER_METRICS
    return None


def prefilter_external(payload: Mapping[str, Any]) -> PrefilterRejectionReason | None:
    """external_games ペイロード用の事前フィルタ。通過なら None。"""

    record_id = payload.get("id")
    if not isinstance(record_id, int) or isinstance(record_id, bool):
        return PrefilterRejectionReason.MISSING_FIELDS
    if set(payload) == {"id"}:
        return PrefilterRejectionReason.DELETED
    uid = payload.get("uid")
    if (
        not coerce_ids(payload.get("game"))
        or not isinstance(uid, (str, int))
        or isinstance(uid, bool)
        or not str(uid).strip()
    ):
        return PrefilterRejectionReason.MISSING_FIELDS
    category = payload.get("category")
    if not isinstance(category, int) or isinstance(category, bool):
        return PrefilterRejectionReason.UNKNOWN_CATEGORY
    return None


def _has_user_metrics(payload: Mapping[str, Any]) -> bool:
    def positive(key: str) -> bool:
        value = payload.get(key)
        return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0

    return positive("follows") or positive("hypes") or payload.get("aggregated_rating") is not None


__all__ = ["MAIN_CATEGORIES", "PrefilterRejectionReason", "prefilter", "prefilter_external"]
