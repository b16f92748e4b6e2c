"""監査用の構造化イベント。

解決・差分・Webhook 却下の各イベントはタグ付きの値オブジェクトとして表し、
テキスト化 (`encode_event`) は送出先に依存しない純粋関数として分離する。
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Protocol

from .logging import get_logger

try:  # pragma: no cover - 型ヒント専用
    from structlog.stdlib import BoundLogger
except Exception:  # pragma: no cover
    BoundLogger = object  # type: ignore[assignment]


class EventKind(str, Enum):
    RESOLVE = "resolve"
    DIFF = "diff"
    REJECT = "reject"


class ResolveAction(str, Enum):
    """ResolveEvent の種別。"""

    RETRIEVE = "retrieve"
    EXTERNAL = "external"
    SEARCH = "search"
    TRANSITION = "transition"


class RejectStage(str, Enum):
    PREFILTER = "prefilter"
    FILTER = "filter"
    EXCEPTION = "exception"


@dataclass(slots=True, frozen=True)
class ResolveEvent:
    """エントリ解決の各段階と状態遷移を表すイベント。"""

    action: ResolveAction
    subject: str
    outcome: str
    game_id: int | None = None
    previous: str | None = None
    detail: str | None = None

    kind = EventKind.RESOLVE


@dataclass(slots=True, frozen=True)
class DiffEvent:
    """カタログ更新時の差分イベント。"""

    game_id: int
    changed: tuple[str, ...]
    needs_resolve: bool
    stale: bool = False

    kind = EventKind.DIFF


@dataclass(slots=True, frozen=True)
class RejectEvent:
    """Webhook が処理されなかった理由。"""

    stage: RejectStage
    reason: str
    game_id: int | None = None
    detail: str | None = None

    kind = EventKind.REJECT


AuditEvent = ResolveEvent | DiffEvent | RejectEvent


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, tuple):
        return [_plain(item) for item in value]
    return value


def encode_event(event: AuditEvent) -> str:
    """イベントをタグ付き JSON 文字列へ変換する。"""

    payload = {key: _plain(value) for key, value in asdict(event).items() if value is not None}
    return json.dumps(
        {"kind": event.kind.value, type(event).__name__: payload},
        ensure_ascii=False,
        sort_keys=True,
    )


class EventSinkProtocol(Protocol):
    """監査イベントの送出先。"""

    def emit(self, event: AuditEvent) -> None:
        """イベントを 1 件記録する。"""


@dataclass(slots=True)
class StructlogEventSink(EventSinkProtocol):
    """エンコード済みイベントを structlog へ書き出すシンク。"""

    logger: BoundLogger = field(default_factory=lambda: get_logger(__name__, component="events"))

    def emit(self, event: AuditEvent) -> None:
        self.logger.info(f"{event.kind.value}_event", event_payload=encode_event(event))


__all__ = [
    "AuditEvent",
    "DiffEvent",
    "EventKind",
    "EventSinkProtocol",
    "RejectEvent",
    "RejectStage",
    "ResolveAction",
    "ResolveEvent",
    "StructlogEventSink",
    "encode_event",
]
