"""共有型・ユーティリティ。"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any, NewType

UserID = NewType("UserID", str)
# ストアフロント名 + uid (またはタイトル) でユーザー内のエントリを識別する
EntryKey = NewType("EntryKey", str)
# ドキュメントストアに保存する JSON 互換の dict
Document = dict[str, Any]


@dataclass(slots=True)
class DTO:
    """外部 API とやり取りするデータ転送オブジェクトのベース。"""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def utc_now() -> datetime:
    return datetime.now(UTC)


def epoch_to_datetime(value: Any) -> datetime | None:
    """IGDB の UNIX 秒を UTC datetime へ変換する。数値以外や表現できない値は None。"""

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None


__all__ = [
    "DTO",
    "Document",
    "EntryKey",
    "UserID",
    "epoch_to_datetime",
    "utc_now",
]
