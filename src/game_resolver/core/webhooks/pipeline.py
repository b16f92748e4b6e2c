"""カタログ更新 Webhook の 3 段フィルタパイプライン。

事前フィルタ → フィルタ → 例外段の順に評価し、却下された時点で以降の段は
実行しない。例外段で発生した失敗は却下とは区別し、再処理キューへ退避する。
`handle` はいかなる入力に対しても例外を送出せず、必ず分類済みの結果を返す。

ペイロードは `games` と `external_games` の 2 種類のエンティティで届き、
それぞれ専用の事前フィルタ・フィルタを通った後に対応する更新処理へ渡る。
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from game_resolver.core.library.store import LibraryStore
from game_resolver.core.resolution.models import IgdbGameDiff
from game_resolver.core.webhooks.filtering import (
    FilterPolicy,
    RejectionReason,
    filter_external_update,
    filter_update,
)
from game_resolver.core.webhooks.prefilter import (
    PrefilterRejectionReason,
    prefilter,
    prefilter_external,
)
from game_resolver.infra.igdb.dto import (
    IGDBExternalGameDTO,
    IGDBGameDTO,
    coerce_ids,
    parse_external_game_record,
    parse_game_record,
)
from game_resolver.shared.events import (
    EventSinkProtocol,
    RejectEvent,
    RejectStage,
    StructlogEventSink,
)
from game_resolver.shared.exceptions import BaseAppError
from game_resolver.shared.logging import get_logger
from game_resolver.shared.types import Document, utc_now

try:  # pragma: no cover - 型ヒント専用
    from structlog.stdlib import BoundLogger
except Exception:  # pragma: no cover
    BoundLogger = object  # type: ignore[assignment]

PrefilterStage = Callable[[Mapping[str, Any]], PrefilterRejectionReason | None]
FilterStage = Callable[[Mapping[str, Any], FilterPolicy, datetime], RejectionReason | None]


class WebhookEntity(str, Enum):
    GAME = "games"
    EXTERNAL_GAME = "external_games"


@dataclass(slots=True, frozen=True)
class RejectionException:
    """例外段で発生した失敗。"""

    error_type: str
    message: str

    @classmethod
    def from_error(cls, error: BaseException) -> RejectionException:
        return cls(error_type=error.__class__.__name__, message=str(error))

    def __str__(self) -> str:
        return f"{self.error_type}: {self.message}"


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    UNTRACKED = "untracked"
    PREFILTERED = "prefiltered"
    FILTERED = "filtered"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class WebhookResult:
    outcome: WebhookOutcome
    game_id: int | None = None
    reason: PrefilterRejectionReason | RejectionReason | RejectionException | None = None
    diff: IgdbGameDiff | None = None
    entity: WebhookEntity = WebhookEntity.GAME
    # external_games の更新で新しい対応先へ移ったエントリ数
    moved: int | None = None


@dataclass(slots=True)
class StageCounters:
    """各段に到達したイベント数。"""

    prefilter: int = 0
    filter: int = 0
    exception: int = 0
    applied: int = 0


class UpdateHandlerProtocol(Protocol):
    async def apply_update(self, game: IGDBGameDTO) -> IgdbGameDiff | None:
        """カタログ更新を適用する。追跡外なら None。"""

    async def apply_external_update(self, external: IGDBExternalGameDTO) -> int | None:
        """external_games の更新を適用する。追跡外なら None。"""


@dataclass(slots=True)
class WebhookPipeline:
    handler: UpdateHandlerProtocol
    store: LibraryStore
    policy: FilterPolicy = field(default_factory=FilterPolicy)
    prefilter_stage: PrefilterStage = prefilter
    filter_stage: FilterStage = filter_update
    external_prefilter_stage: PrefilterStage = prefilter_external
    external_filter_stage: FilterStage = filter_external_update
    clock: Callable[[], datetime] = utc_now
    event_sink: EventSinkProtocol = field(default_factory=StructlogEventSink)
    counters: StageCounters = field(default_factory=StageCounters)
    logger: BoundLogger = field(default_factory=lambda: get_logger(__name__, component="webhooks"))
    _failures_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    async def handle(
        self, payload: Mapping[str, Any], entity: WebhookEntity = WebhookEntity.GAME
    ) -> WebhookResult:
        """1 件の Webhook ペイロードを分類・適用する。"""

        return await self._process(payload, entity, attempts=0)

    async def replay(self) -> list[WebhookResult]:
        """再処理キューの全件をパイプラインへ再投入する。

        各項目は再処理を終えてからキューから外すため、途中で中断しても
        未処理の項目はキューに残る。再び失敗したものは試行回数を増やして
        キューの末尾へ戻る。
        """

        async with self._failures_lock:
            items = await self.store.read_failures()

        self.logger.info("webhook_replay_started", queued=len(items))
        results: list[WebhookResult] = []
        for item in items:
            results.append(
                await self._process(
                    item.get("payload", {}),
                    _entity_of(item),
                    attempts=int(item.get("attempts", 1)),
                )
            )
            await self._dequeue(item)
        self.logger.info(
            "webhook_replay_completed",
            queued=len(items),
            failed=sum(1 for result in results if result.outcome is WebhookOutcome.FAILED),
        )
        return results

    async def _process(
        self, payload: Mapping[str, Any], entity: WebhookEntity, *, attempts: int
    ) -> WebhookResult:
        if not isinstance(payload, Mapping):
            self.counters.prefilter += 1
            return self._reject(
                RejectStage.PREFILTER,
                WebhookOutcome.PREFILTERED,
                PrefilterRejectionReason.MISSING_FIELDS,
                None,
                entity,
            )

        game_id = _subject_id(payload, entity)
        try:
            rejection = self._classify(payload, entity)
        except Exception as exc:  # noqa: BLE001 - 分類できない入力も例外段として保持する
            return await self._quarantine(payload, entity, game_id, exc, attempts=attempts + 1)
        if rejection is not None:
            stage, outcome, reason = rejection
            return self._reject(stage, outcome, reason, game_id, entity)

        self.counters.exception += 1
        diff: IgdbGameDiff | None = None
        moved: int | None = None
        try:
            if entity is WebhookEntity.EXTERNAL_GAME:
                moved = await self.handler.apply_external_update(
                    parse_external_game_record(payload)
                )
                tracked = moved is not None
            else:
                diff = await self.handler.apply_update(parse_game_record(payload))
                tracked = diff is not None
        except Exception as exc:  # noqa: BLE001 - 例外段で分類して保持する
            return await self._quarantine(payload, entity, game_id, exc, attempts=attempts + 1)

        self.counters.applied += 1
        outcome = WebhookOutcome.APPLIED if tracked else WebhookOutcome.UNTRACKED
        self.logger.info(
            "webhook_processed",
            entity=entity.value,
            game_id=game_id,
            outcome=outcome.value,
            needs_resolve=diff.needs_resolve if diff else None,
            moved=moved,
        )
        return WebhookResult(
            outcome=outcome, game_id=game_id, diff=diff, entity=entity, moved=moved
        )

    def _classify(
        self, payload: Mapping[str, Any], entity: WebhookEntity
    ) -> tuple[RejectStage, WebhookOutcome, PrefilterRejectionReason | RejectionReason] | None:
        external = entity is WebhookEntity.EXTERNAL_GAME
        prefilter_stage = self.external_prefilter_stage if external else self.prefilter_stage
        filter_stage = self.external_filter_stage if external else self.filter_stage

        self.counters.prefilter += 1
        prefilter_reason = prefilter_stage(payload)
        if prefilter_reason is not None:
            return RejectStage.PREFILTER, WebhookOutcome.PREFILTERED, prefilter_reason

        self.counters.filter += 1
        filter_reason = filter_stage(payload, self.policy, self.clock())
        if filter_reason is not None:
            return RejectStage.FILTER, WebhookOutcome.FILTERED, filter_reason
        return None

    def _reject(
        self,
        stage: RejectStage,
        outcome: WebhookOutcome,
        reason: PrefilterRejectionReason | RejectionReason,
        game_id: int | None,
        entity: WebhookEntity,
    ) -> WebhookResult:
        self.event_sink.emit(RejectEvent(stage=stage, reason=reason.value, game_id=game_id))
        self.logger.debug(
            "webhook_rejected",
            entity=entity.value,
            stage=stage.value,
            reason=reason.value,
            game_id=game_id,
        )
        return WebhookResult(outcome=outcome, game_id=game_id, reason=reason, entity=entity)

    async def _quarantine(
        self,
        payload: Mapping[str, Any],
        entity: WebhookEntity,
        game_id: int | None,
        error: Exception,
        *,
        attempts: int,
    ) -> WebhookResult:
        rejection = RejectionException.from_error(error)
        self.event_sink.emit(
            RejectEvent(
                stage=RejectStage.EXCEPTION,
                reason=rejection.error_type,
                game_id=game_id,
                detail=rejection.message,
            )
        )
        record: Document = {
            "entity": entity.value,
            "payload": dict(payload),
            "error_type": rejection.error_type,
            "message": rejection.message,
            "attempts": attempts,
            "failed_at": self.clock().isoformat(),
        }
        try:
            async with self._failures_lock:
                items = await self.store.read_failures()
                items.append(record)
                await self.store.write_failures(items)
        except BaseAppError as exc:
            self.logger.error(
                "webhook_failure_enqueue_failed",
                game_id=game_id,
                error_type=exc.__class__.__name__,
                message=str(exc),
            )
        self.logger.warning(
            "webhook_failed",
            entity=entity.value,
            game_id=game_id,
            attempts=attempts,
            error_type=rejection.error_type,
            message=rejection.message,
        )
        return WebhookResult(
            outcome=WebhookOutcome.FAILED, game_id=game_id, reason=rejection, entity=entity
        )

    async def _dequeue(self, item: Document) -> None:
        async with self._failures_lock:
            items = await self.store.read_failures()
            if item in items:
                items.remove(item)
                await self.store.write_failures(items)


def _subject_id(payload: Mapping[str, Any], entity: WebhookEntity) -> int | None:
    """ログ・イベントに載せるゲーム ID。external_games は対応先のゲーム ID。"""

    if entity is WebhookEntity.EXTERNAL_GAME:
        game_ids = coerce_ids(payload.get("game"))
        return game_ids[0] if game_ids else None
    raw_id = payload.get("id")
    return raw_id if isinstance(raw_id, int) and not isinstance(raw_id, bool) else None


def _entity_of(item: Document) -> WebhookEntity:
    try:
        return WebhookEntity(item.get("entity", WebhookEntity.GAME.value))
    except ValueError:
        return WebhookEntity.GAME


__all__ = [
    "RejectionException",
    "StageCounters",
    "UpdateHandlerProtocol",
    "WebhookEntity",
    "WebhookOutcome",
    "WebhookPipeline",
    "WebhookResult",
]
