"""未解決エントリの定期再照合ジョブ。"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from game_resolver.core.library.store import LibraryStore
from game_resolver.core.resolution.models import (
    ResolutionOutcome,
    ResolutionState,
    StoreEntry,
    Transition,
)
from game_resolver.core.resolution.resolver import ExpectedState, ResolutionError
from game_resolver.shared.concurrency import run_bounded
from game_resolver.shared.exceptions import BaseAppError, Result
from game_resolver.shared.logging import bind_context, clear_context, get_logger
from game_resolver.shared.types import UserID

try:  # pragma: no cover - 型ヒント専用
    from structlog.stdlib import BoundLogger
except Exception:  # pragma: no cover
    BoundLogger = object  # type: ignore[assignment]


@dataclass(slots=True)
class ReconReport:
    """1 回の再照合パスの集計。"""

    user_id: UserID
    unknown_to_approval: int = 0
    unknown_to_resolved: int = 0
    approval_to_resolved: int = 0
    approval_to_unknown: int = 0
    unchanged: int = 0
    errors: int = 0

    @property
    def total(self) -> int:
        return (
            self.unknown_to_approval
            + self.unknown_to_resolved
            + self.approval_to_resolved
            + self.approval_to_unknown
            + self.unchanged
            + self.errors
        )

    @property
    def newly_resolved(self) -> int:
        return self.unknown_to_resolved + self.approval_to_resolved

    @property
    def promoted(self) -> int:
        return self.unknown_to_approval

    @property
    def still_unresolved(self) -> int:
        return self.total - self.newly_resolved

    def record(self, before: ResolutionState | None, after: ResolutionState | None) -> None:
        if before is after:
            self.unchanged += 1
        elif after is ResolutionState.RESOLVED:
            if before is ResolutionState.UNKNOWN:
                self.unknown_to_resolved += 1
            else:
                self.approval_to_resolved += 1
        elif before is ResolutionState.UNKNOWN:
            self.unknown_to_approval += 1
        else:
            self.approval_to_unknown += 1


class ResolverProtocol(Protocol):
    async def attempt(
        self, entry: StoreEntry
    ) -> Result[ResolutionOutcome, ResolutionError]:
        """保存を伴わない解決試行。"""

    async def commit(
        self,
        user_id: UserID,
        entry: StoreEntry,
        outcome: ResolutionOutcome,
        *,
        expect: ExpectedState | None = None,
    ) -> Transition:
        """試行結果を保存する。`expect` と現在の状態が異なれば書き込まない。"""


@dataclass(slots=True)
class Reconciler:
    """ユーザーの未解決キューを再試行し、遷移を集計する。

    1 件の失敗はパス全体を止めない。致命的エラーのみ呼び出し元へ伝播し、
    その時点までに保存済みの遷移はそのまま残る。
    """

    resolver: ResolverProtocol
    store: LibraryStore
    concurrency: int = 4
    logger: BoundLogger = field(
        default_factory=lambda: get_logger(__name__, component="reconciler")
    )

    async def run(self, user_id: UserID) -> ReconReport:
        unresolved = await self.store.read_unresolved(user_id)
        backlog: list[tuple[StoreEntry, ResolutionState]] = [
            (item.store_entry, ResolutionState.NEEDS_APPROVAL) for item in unresolved.need_approval
        ]
        backlog.extend((entry, ResolutionState.UNKNOWN) for entry in unresolved.unknown)

        report = ReconReport(user_id=user_id)
        self.logger.info("reconcile_started", user_id=user_id, backlog=len(backlog))

        async def reconcile_one(item: tuple[StoreEntry, ResolutionState]) -> None:
            entry, before = item
            try:
                result = await self.resolver.attempt(entry)
                if result.is_err:
                    report.errors += 1
                    return
                transition = await self.resolver.commit(
                    user_id, entry, result.unwrap(), expect=ExpectedState(before)
                )
            except BaseAppError as exc:
                if exc.fatal:
                    raise
                report.errors += 1
                self.logger.warning(
                    "reconcile_entry_failed",
                    entry_key=entry.key,
                    error_type=exc.__class__.__name__,
                    message=str(exc),
                )
                return
            if not transition.applied:
                # 試行中に別経路で状態が変わったエントリは変化なしとして数える
                report.unchanged += 1
                return
            report.record(transition.previous, transition.current)

        await run_bounded(backlog, reconcile_one, concurrency=self.concurrency)

        self.logger.info(
            "reconcile_completed",
            user_id=user_id,
            newly_resolved=report.newly_resolved,
            promoted=report.promoted,
            still_unresolved=report.still_unresolved,
            errors=report.errors,
        )
        return report

    async def run_all(self, user_ids: Sequence[UserID]) -> list[ReconReport]:
        """ユーザーごとに順番にパスを実行する。"""

        reports: list[ReconReport] = []
        for user_id in user_ids:
            bind_context(user_id=user_id)
            try:
                reports.append(await self.run(user_id))
            finally:
                clear_context()
        return reports


@dataclass(slots=True)
class ReconcileScheduler:
    """一定間隔で再照合パスを繰り返す。"""

    reconciler: Reconciler
    interval_seconds: float
    sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep
    logger: BoundLogger = field(
        default_factory=lambda: get_logger(__name__, component="reconcile-scheduler")
    )

    async def run_forever(
        self, user_ids: Sequence[UserID], *, max_passes: int | None = None
    ) -> list[ReconReport]:
        """`max_passes` 回 (未指定なら無限に) パスを実行し、最後のパスの結果を返す。"""

        passes = 0
        reports: list[ReconReport] = []
        while max_passes is None or passes < max_passes:
            if passes:
                await self.sleep_func(self.interval_seconds)
            reports = await self.reconciler.run_all(user_ids)
            passes += 1
            self.logger.info("reconcile_pass_finished", passes=passes, users=len(user_ids))
        return reports


__all__ = ["ReconReport", "ReconcileScheduler", "Reconciler", "ResolverProtocol"]
