"""Webhook の第 2 段: 意味上のフィルタ。"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from game_resolver.core.resolution.resolver import EXTERNAL_GAME_CATEGORIES
from game_resolver.infra.igdb.dto import GameCategory, coerce_regions
from game_resolver.shared.config import WebhookSettings
from game_resolver.shared.types import epoch_to_datetime


class RejectionReason(str, Enum):
    CATEGORY_NOT_TRACKED = "CategoryNotTracked"
    IMPLAUSIBLE_RELEASE_DATE = "ImplausibleReleaseDate"
    FUTURE_RELEASE_NO_HYPE = "FutureReleaseNoHype"
    REGION_EXCLUDED = "RegionExcluded"


@dataclass(slots=True, frozen=True)
class FilterPolicy:
    tracked_categories: frozenset[int] = frozenset({0, 2, 4, 8, 9})
    excluded_regions: frozenset[int] = frozenset()
    min_release_year: int = 1950
    max_years_ahead: int = 10
    tracked_external_categories: frozenset[int] = frozenset(EXTERNAL_GAME_CATEGORIES.values())

    @classmethod
    def from_settings(cls, settings: WebhookSettings) -> FilterPolicy:
        return cls(
            tracked_categories=frozenset(settings.tracked_categories),
            excluded_regions=frozenset(settings.excluded_regions),
            min_release_year=settings.min_release_year,
            max_years_ahead=settings.max_years_ahead,
        )


def filter_update(
    payload: Mapping[str, Any], policy: FilterPolicy, now: datetime
) -> RejectionReason | None:
    """通過なら None、却下なら理由を返す。事前フィルタ通過済みのペイロードを前提とする。"""

    category = payload.get("category", int(GameCategory.MAIN_GAME))
    if category not in policy.tracked_categories:
        return RejectionReason.CATEGORY_NOT_TRACKED

    raw_release = payload.get("first_release_date")
    released_at = epoch_to_datetime(raw_release)
    if released_at is None and raw_release is not None:
        return RejectionReason.IMPLAUSIBLE_RELEASE_DATE
    if released_at is not None:
        if not policy.min_release_year <= released_at.year <= now.year + policy.max_years_ahead:
            return RejectionReason.IMPLAUSIBLE_RELEASE_DATE
        hypes = payload.get("hypes")
        if released_at > now and not (isinstance(hypes, int) and hypes > 0):
            return RejectionReason.FUTURE_RELEASE_NO_HYPE

    regions = coerce_regions(payload.get("release_dates"))
    if regions and policy.excluded_regions.issuperset(regions):
        return RejectionReason.REGION_EXCLUDED
    return None


def filter_external_update(
    payload: Mapping[str, Any], policy: FilterPolicy, now: datetime
) -> RejectionReason | None:
    """external_games ペイロード用のフィルタ。対応していないストアフロントは却下する。"""

    if payload.get("category") not in policy.tracked_external_categories:
        return RejectionReason.CATEGORY_NOT_TRACKED
    return None


__all__ = ["FilterPolicy", "RejectionReason", "filter_external_update", "filter_update"]
