"""ストアエントリをカタログの正準レコードへ解決する状態機械。

1 回の解決試行 (`attempt`) は以下の順で判定する。

1. カタログ ID を持つエントリは直接取得する (見つからなければ Unknown)。
2. ストアフロント uid を持つエントリは external_games で ID を引き、
   ヒットすれば 1. と同様に直接取得する。外れた場合は検索へ進む。
3. タイトル検索の最上位が閾値以上かつ次点との差が最小ギャップ以上なら Resolved。
4. 候補があれば上位 K 件で NeedsApproval、無ければ Unknown。

試行結果の保存 (`commit`) はユーザー単位で直列化し、Resolved と未解決キューの
排他性を保つ。カタログ更新 (`apply_update`) はゲーム ID 単位で到着順に適用し、
external_games の更新 (`apply_external_update`) は同じ uid を持つエントリへ反映する。
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from game_resolver.core.library.models import LibraryEntry, external_doc_id
from game_resolver.core.library.store import LibraryStore
from game_resolver.core.resolution.models import (
    GameDigest,
    IgdbGameDiff,
    NeedsApproval,
    ResolutionOutcome,
    ResolutionState,
    Resolved,
    ScoredCandidate,
    StoreEntry,
    Transition,
    Unknown,
    sort_candidates,
)
from game_resolver.core.resolution.ranking import SearchProtocol, top_two_scores
from game_resolver.infra.igdb.batch import BatchResult
from game_resolver.infra.igdb.dto import IGDBExternalGameDTO, IGDBGameDTO
from game_resolver.infra.igdb.errors import IGDBNotFoundError
from game_resolver.shared.concurrency import KeyedLocks
from game_resolver.shared.config import ResolverSettings
from game_resolver.shared.events import (
    DiffEvent,
    EventSinkProtocol,
    ResolveAction,
    ResolveEvent,
    StructlogEventSink,
)
from game_resolver.shared.exceptions import BaseAppError, ConfigurationError, DomainError, Result
from game_resolver.shared.logging import get_logger
from game_resolver.shared.types import UserID

try:  # pragma: no cover - 型ヒント専用
    from structlog.stdlib import BoundLogger
except Exception:  # pragma: no cover
    BoundLogger = object  # type: ignore[assignment]

# IGDB external_games.category
EXTERNAL_GAME_CATEGORIES: dict[str, int] = {
    "steam": 1,
    "gog": 5,
    "egs": 26,
}


class ResolutionError(DomainError):
    """1 回の解決試行が失敗したことを示すエラー。エントリの状態は変わらない。"""

    default_message = "エントリの解決に失敗しました"


@dataclass(slots=True, frozen=True)
class ResolutionPolicy:
    """自動確定の閾値と候補数。"""

    high_confidence: float
    min_gap: float
    candidate_limit: int

    def __post_init__(self) -> None:
        if not 0.0 <= self.high_confidence <= 1.0:
            msg = "high_confidence must be within 0..1"
            raise ConfigurationError(msg)
        if not 0.0 <= self.min_gap <= 1.0:
            msg = "min_gap must be within 0..1"
            raise ConfigurationError(msg)
        if self.candidate_limit < 1:
            msg = "candidate_limit must be a positive integer"
            raise ConfigurationError(msg)

    @classmethod
    def from_settings(cls, settings: ResolverSettings) -> ResolutionPolicy:
        return cls(
            high_confidence=settings.high_confidence,
            min_gap=settings.min_gap,
            candidate_limit=settings.candidate_limit,
        )

    def accepts(self, top: float, second: float) -> bool:
        # 浮動小数の差分誤差で閾値ちょうどを取りこぼさないよう丸める
        return top >= self.high_confidence and round(top - second, 6) >= self.min_gap

    def decide(self, candidates: Sequence[ScoredCandidate]) -> ResolutionOutcome:
        if not candidates:
            return Unknown()
        top, second = top_two_scores(candidates)
        if self.accepts(top, second):
            return Resolved(digest=candidates[0].digest)
        return NeedsApproval(candidates=tuple(candidates[: self.candidate_limit]))


@dataclass(slots=True, frozen=True)
class ExpectedState:
    """保存時点でエントリが取っているべき状態。Resolved なら対応先 ID も照合する。"""

    state: ResolutionState | None
    game_id: int | None = None

    def matches(self, state: ResolutionState | None, entry: LibraryEntry | None) -> bool:
        if state is not self.state:
            return False
        return self.game_id is None or (entry is not None and entry.game_id == self.game_id)


class CatalogLookupProtocol(Protocol):
    async def fetch_games(self, game_ids: Iterable[int]) -> BatchResult[int, IGDBGameDTO]:
        """ID 指定でゲームを取得する。"""

    async def lookup_external_games(
        self, uids: Iterable[str], *, category: int
    ) -> BatchResult[str, int]:
        """ストアフロント uid からゲーム ID を引く。"""


@dataclass(slots=True)
class Resolver:
    """解決試行・結果の保存・カタログ更新の差分適用を担うドメインサービス。"""

    catalog: CatalogLookupProtocol
    search: SearchProtocol
    store: LibraryStore
    policy: ResolutionPolicy
    event_sink: EventSinkProtocol = field(default_factory=StructlogEventSink)
    locks: KeyedLocks = field(default_factory=KeyedLocks)
    logger: BoundLogger = field(default_factory=lambda: get_logger(__name__, component="resolver"))

    async def attempt(
        self,
        entry: StoreEntry,
        *,
        forced: Sequence[GameDigest] = (),
        game_id: int | None = None,
    ) -> Result[ResolutionOutcome, ResolutionError]:
        """保存を伴わない 1 回の解決試行。

        `game_id` を渡すと external_games の対応付けが判明済みとして直接取得する。
        致命的エラー (認証失敗など) はそのまま送出し、それ以外の失敗は
        `Result.err` として返す。
        """

        try:
            outcome = await self._attempt(entry, forced, game_id)
        except BaseAppError as exc:
            if exc.fatal:
                raise
            return self._fail("resolution_attempt_failed", entry, exc)
        return Result.ok(outcome)

    async def resolve(
        self, user_id: UserID, entry: StoreEntry
    ) -> Result[ResolutionOutcome, ResolutionError]:
        """解決を試行し、成功した場合は結果を保存する。"""

        result = await self.attempt(entry)
        if result.is_err:
            return result
        try:
            await self.commit(user_id, entry, result.unwrap())
        except BaseAppError as exc:
            if exc.fatal:
                raise
            return self._fail("resolution_commit_failed", entry, exc)
        return result

    async def commit(
        self,
        user_id: UserID,
        entry: StoreEntry,
        outcome: ResolutionOutcome,
        *,
        expect: ExpectedState | None = None,
    ) -> Transition:
        """試行結果を保存し、遷移を返す。

        `expect` を渡した場合、ユーザーロック下の現在の状態がそれと異なれば
        何も書き込まず `applied=False` の遷移を返す。試行の最中に別経路で
        状態が変わったエントリは古い試行結果で上書きしない。
        """

        key = entry.key
        async with self.locks.hold(("user", user_id)):
            library = await self.store.read_library(user_id)
            unresolved = await self.store.read_unresolved(user_id)

            previous_entry = library.get(key)
            previous_state = (
                ResolutionState.RESOLVED if previous_entry is not None else unresolved.state_of(key)
            )
            if expect is not None and not expect.matches(previous_state, previous_entry):
                self.logger.info(
                    "resolution_commit_skipped",
                    user_id=user_id,
                    entry_key=key,
                    expected=expect.state.value if expect.state else None,
                    actual=previous_state.value if previous_state else None,
                )
                return Transition(previous=previous_state, current=previous_state, applied=False)

            # 移動先を先に書き、移動元からの削除を後に書く
            if isinstance(outcome, Resolved):
                await self._remember_digest(outcome.digest)
                library.put(LibraryEntry(store_entry=entry, game_id=outcome.digest.id))
                unresolved.remove(key)
                await self.store.write_library(user_id, library)
                await self.store.write_unresolved(user_id, unresolved)
            else:
                if isinstance(outcome, NeedsApproval):
                    unresolved.set_need_approval(entry, list(outcome.candidates))
                else:
                    unresolved.set_unknown(entry)
                library.remove(key)
                await self.store.write_unresolved(user_id, unresolved)
                if previous_entry is not None:
                    await self.store.write_library(user_id, library)

            new_game_id = outcome.digest.id if isinstance(outcome, Resolved) else None
            if previous_entry is not None and previous_entry.game_id != new_game_id:
                await self._update_index(previous_entry.game_id, user_id, entry, add=False)
            if new_game_id is not None:
                await self._update_index(new_game_id, user_id, entry, add=True)
            await self._register_external(user_id, entry)

        self.event_sink.emit(
            ResolveEvent(
                action=ResolveAction.TRANSITION,
                subject=key,
                outcome=outcome.state.value,
                game_id=new_game_id,
                previous=previous_state.value if previous_state else None,
            )
        )
        self.logger.info(
            "resolution_committed",
            user_id=user_id,
            entry_key=key,
            state=outcome.state.value,
            previous=previous_state.value if previous_state else None,
            game_id=new_game_id,
        )
        return Transition(previous=previous_state, current=outcome.state)

    async def apply_update(self, game: IGDBGameDTO) -> IgdbGameDiff | None:
        """カタログ更新を保存済みダイジェストへ適用する。

        同一ゲーム ID への更新は到着順に直列化する。保存済みより古い版は
        破棄し、識別情報が変わった場合は当該 ID へ Resolved されている
        全エントリを新しいダイジェストを強制候補として再解決する。
        追跡していないゲームの場合は None を返す。
        """

        fresh = GameDigest.from_igdb(game)
        async with self.locks.hold(("game", fresh.id)):
            async with self.locks.hold(("digest", fresh.id)):
                stored = await self.store.read_digest(fresh.id)
                if stored is None:
                    self.logger.info("catalog_update_untracked", game_id=fresh.id)
                    return None
                if fresh.is_older_than(stored):
                    self.event_sink.emit(
                        DiffEvent(game_id=fresh.id, changed=(), needs_resolve=False, stale=True)
                    )
                    self.logger.info(
                        "catalog_update_stale",
                        game_id=fresh.id,
                        stored_version=stored.updated_at,
                        received_version=fresh.updated_at,
                    )
                    return None

                diff = IgdbGameDiff.between(stored, fresh)
                self.event_sink.emit(
                    DiffEvent(
                        game_id=fresh.id, changed=diff.changed, needs_resolve=diff.needs_resolve
                    )
                )
                if not diff.is_empty or fresh.updated_at != stored.updated_at:
                    await self.store.write_digest(fresh)

            self.logger.info(
                "catalog_update_applied",
                game_id=fresh.id,
                changed=list(diff.changed),
                needs_resolve=diff.needs_resolve,
            )
            if diff.needs_resolve:
                await self._reresolve(fresh)
            return diff

    async def apply_external_update(self, external: IGDBExternalGameDTO) -> int | None:
        """external_games の更新を、その uid を持つエントリへ反映する。

        uid を持つエントリが無ければ None を返す。それ以外は新しい対応先へ
        遷移したエントリ数を返す。カタログ ID を明示したエントリと、既に同じ
        ゲームへ Resolved 済みのエントリは対象外。
        """

        if external.category is None:
            return None
        async with self.locks.hold(("external", external.id)):
            refs = await self.store.read_external_refs(external.category, external.uid)
            if not refs.refs:
                self.logger.info(
                    "external_update_untracked",
                    uid=external.uid,
                    category=external.category,
                    game_id=external.game,
                )
                return None

            moved = 0
            for ref in refs.refs:
                if ref.store_entry.external_id is not None:
                    continue
                expect = await self._current_state(ref.user_id, ref.store_entry)
                if expect.state is ResolutionState.RESOLVED and expect.game_id == external.game:
                    continue
                result = await self.attempt(ref.store_entry, game_id=external.game)
                if result.is_err:
                    continue
                transition = await self.commit(
                    ref.user_id, ref.store_entry, result.unwrap(), expect=expect
                )
                if transition.applied and transition.current is ResolutionState.RESOLVED:
                    moved += 1

            self.logger.info(
                "external_update_applied",
                uid=external.uid,
                category=external.category,
                game_id=external.game,
                entries=len(refs.refs),
                moved=moved,
            )
            return moved

    async def _current_state(self, user_id: UserID, entry: StoreEntry) -> ExpectedState:
        async with self.locks.hold(("user", user_id)):
            current = (await self.store.read_library(user_id)).get(entry.key)
            if current is not None:
                return ExpectedState(ResolutionState.RESOLVED, game_id=current.game_id)
            unresolved = await self.store.read_unresolved(user_id)
            return ExpectedState(unresolved.state_of(entry.key))

    async def _attempt(
        self, entry: StoreEntry, forced: Sequence[GameDigest], game_id: int | None
    ) -> ResolutionOutcome:
        if game_id is not None:
            return await self._retrieve(entry, game_id, forced, ResolveAction.EXTERNAL)
        if entry.external_id is not None:
            return await self._retrieve(entry, entry.external_id, forced, ResolveAction.RETRIEVE)

        category = EXTERNAL_GAME_CATEGORIES.get(entry.storefront)
        if entry.storefront_uid and category is not None:
            game_id = await self._lookup_external(entry, entry.storefront_uid, category)
            if game_id is not None:
                return await self._retrieve(entry, game_id, forced, ResolveAction.EXTERNAL)

        candidates = await self.search.search(entry.title, entry.hints)
        if forced:
            candidates = self._merge_forced(entry, candidates, forced)
        return self.policy.decide(candidates)

    async def _retrieve(
        self,
        entry: StoreEntry,
        game_id: int,
        forced: Sequence[GameDigest],
        action: ResolveAction,
    ) -> ResolutionOutcome:
        digest = next((item for item in forced if item.id == game_id), None)
        if digest is None:
            result = (await self.catalog.fetch_games([game_id]))[game_id]
            if result.is_err:
                error = result.unwrap_err()
                if not isinstance(error, IGDBNotFoundError):
                    raise error
            else:
                digest = GameDigest.from_igdb(result.unwrap())

        self.event_sink.emit(
            ResolveEvent(
                action=action,
                subject=entry.key,
                outcome="found" if digest is not None else "not_found",
                game_id=game_id,
            )
        )
        return Resolved(digest=digest) if digest is not None else Unknown()

    async def _lookup_external(self, entry: StoreEntry, uid: str, category: int) -> int | None:
        result = (await self.catalog.lookup_external_games([uid], category=category))[uid]
        if result.is_err:
            error = result.unwrap_err()
            if not isinstance(error, IGDBNotFoundError):
                raise error
            self.logger.info("external_game_missing", entry_key=entry.key, uid=uid)
            return None
        return result.unwrap()

    def _merge_forced(
        self,
        entry: StoreEntry,
        candidates: list[ScoredCandidate],
        forced: Sequence[GameDigest],
    ) -> list[ScoredCandidate]:
        forced_ids = {digest.id for digest in forced}
        merged = [candidate for candidate in candidates if candidate.digest.id not in forced_ids]
        merged.extend(self.search.score(entry.title, entry.hints, digest) for digest in forced)
        return sort_candidates(merged)

    async def _reresolve(self, fresh: GameDigest) -> None:
        refs = await self.store.read_refs(fresh.id)
        self.logger.info("reresolution_started", game_id=fresh.id, entries=len(refs.refs))
        expect = ExpectedState(ResolutionState.RESOLVED, game_id=fresh.id)
        for ref in refs.refs:
            result = await self.attempt(ref.store_entry, forced=(fresh,))
            if result.is_err:
                continue
            await self.commit(ref.user_id, ref.store_entry, result.unwrap(), expect=expect)

    async def _remember_digest(self, digest: GameDigest) -> None:
        async with self.locks.hold(("digest", digest.id)):
            stored = await self.store.read_digest(digest.id)
            if stored is None or stored.is_older_than(digest):
                await self.store.write_digest(digest)

    async def _update_index(
        self, game_id: int, user_id: UserID, entry: StoreEntry, *, add: bool
    ) -> None:
        async with self.locks.hold(("index", game_id)):
            refs = await self.store.read_refs(game_id)
            if add:
                refs.add(user_id, entry)
            else:
                refs.discard(user_id, entry.key)
            await self.store.write_refs(refs)

    async def _register_external(self, user_id: UserID, entry: StoreEntry) -> None:
        category = EXTERNAL_GAME_CATEGORIES.get(entry.storefront)
        if category is None or not entry.storefront_uid:
            return
        async with self.locks.hold(("uid", external_doc_id(category, entry.storefront_uid))):
            refs = await self.store.read_external_refs(category, entry.storefront_uid)
            if refs.contains(user_id, entry.key):
                return
            refs.add(user_id, entry)
            await self.store.write_external_refs(refs)

    def _fail(
        self, event: str, entry: StoreEntry, error: Exception
    ) -> Result[ResolutionOutcome, ResolutionError]:
        self.logger.error(
            event,
            entry_key=entry.key,
            error_type=error.__class__.__name__,
            message=str(error),
        )
        wrapped = ResolutionError(str(error))
        wrapped.__cause__ = error
        return Result.err(wrapped)


__all__ = [
    "CatalogLookupProtocol",
    "EXTERNAL_GAME_CATEGORIES",
    "ExpectedState",
    "ResolutionError",
    "ResolutionPolicy",
    "Resolver",
]
