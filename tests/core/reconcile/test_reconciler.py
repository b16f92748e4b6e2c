"""再照合パスの遷移集計を検証する。"""

from __future__ import annotations

import pytest

from game_resolver.core.library.models import UnresolvedEntries
from game_resolver.core.library.store import InMemoryDocumentStore, LibraryStore
from game_resolver.core.reconcile.reconciler import ReconcileScheduler, Reconciler, ReconReport
from game_resolver.core.resolution.models import (
    GameDigest,
    ResolutionState,
    Resolved,
    ScoredCandidate,
    StoreEntry,
)
from game_resolver.core.resolution.resolver import ResolutionPolicy, Resolver
from game_resolver.infra.igdb.errors import IGDBAuthenticationError, IGDBTransientError
from game_resolver.shared.types import UserID

USER = UserID("user-1")


class NullSink:
    def emit(self, event) -> None:
        return None


class UnusedCatalog:
    async def fetch_games(self, game_ids):
        raise AssertionError("catalog should not be queried")

    async def lookup_external_games(self, uids, *, category):
        raise AssertionError("catalog should not be queried")


class TitleSearch:
    """タイトルごとに候補 (または例外) を返す検索スタブ。"""

    def __init__(self, table: dict[str, list[float] | Exception]) -> None:
        self.table = table

    async def search(self, title, hints):
        value = self.table.get(title, [])
        if isinstance(value, Exception):
            raise value
        return [
            ScoredCandidate(GameDigest(id=index + 1, name=title), score)
            for index, score in enumerate(value)
        ]

    def score(self, title, hints, digest):
        return ScoredCandidate(digest, 0.0)


def _entry(title: str) -> StoreEntry:
    return StoreEntry(title=title, storefront="steam")


async def _reconciler(table, *, unknown=(), approval=()) -> tuple[Reconciler, LibraryStore]:
    store = LibraryStore(InMemoryDocumentStore())
    unresolved = UnresolvedEntries()
    for title in unknown:
        unresolved.set_unknown(_entry(title))
    for title in approval:
        unresolved.set_need_approval(_entry(title), [ScoredCandidate(GameDigest(id=99, name=title), 0.5)])
    await store.write_unresolved(USER, unresolved)

    resolver = Resolver(
        catalog=UnusedCatalog(),
        search=TitleSearch(table),
        store=store,
        policy=ResolutionPolicy(high_confidence=0.9, min_gap=0.15, candidate_limit=5),
        event_sink=NullSink(),
    )
    return Reconciler(resolver=resolver, store=store, concurrency=2), store


async def test_pass_tallies_each_transition() -> None:
    table = {
        "Unknown To Resolved": [0.97],
        "Unknown To Approval": [0.7, 0.6],
        "Still Unknown": [],
        "Approval To Resolved": [0.95, 0.2],
        "Approval To Unknown": [],
        "Still Approval": [0.8, 0.79],
        "Flaky": IGDBTransientError(),
    }
    reconciler, store = await _reconciler(
        table,
        unknown=["Unknown To Resolved", "Unknown To Approval", "Still Unknown", "Flaky"],
        approval=["Approval To Resolved", "Approval To Unknown", "Still Approval"],
    )

    report = await reconciler.run(USER)

    assert report == ReconReport(
        user_id=USER,
        unknown_to_approval=1,
        unknown_to_resolved=1,
        approval_to_resolved=1,
        approval_to_unknown=1,
        unchanged=2,
        errors=1,
    )
    assert report.total == 7
    assert report.newly_resolved == 2
    assert report.still_unresolved == 5

    unresolved = await store.read_unresolved(USER)
    assert unresolved.state_of(_entry("Flaky").key) is ResolutionState.UNKNOWN
    assert unresolved.state_of(_entry("Unknown To Approval").key) is ResolutionState.NEEDS_APPROVAL
    assert unresolved.state_of(_entry("Approval To Unknown").key) is ResolutionState.UNKNOWN
    library = await store.read_library(USER)
    assert library.get(_entry("Unknown To Resolved").key).game_id == 1
    assert library.get(_entry("Approval To Resolved").key).game_id == 1


async def test_empty_backlog_produces_empty_report() -> None:
    reconciler, _ = await _reconciler({})

    report = await reconciler.run(USER)

    assert report.total == 0


async def test_fatal_error_aborts_the_pass() -> None:
    reconciler, _ = await _reconciler({"Doom": IGDBAuthenticationError()}, unknown=["Doom"])

    with pytest.raises(IGDBAuthenticationError):
        await reconciler.run(USER)


async def test_run_all_reports_each_user() -> None:
    reconciler, _ = await _reconciler({"Doom": [0.99]}, unknown=["Doom"])

    reports = await reconciler.run_all([USER, UserID("someone-else")])

    assert [report.user_id for report in reports] == [USER, "someone-else"]
    assert reports[0].newly_resolved == 1
    assert reports[1].total == 0


async def test_scheduler_sleeps_between_passes() -> None:
    reconciler, _ = await _reconciler({"Doom": [0.5]}, unknown=["Doom"])
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    scheduler = ReconcileScheduler(reconciler=reconciler, interval_seconds=30.0, sleep_func=fake_sleep)

    reports = await scheduler.run_forever([USER], max_passes=3)

    assert sleeps == [30.0, 30.0]
    assert reports[0].unchanged == 1


class ResolvingElsewhereSearch(TitleSearch):
    """検索の最中に、同じエントリが別経路で Resolved へ確定される。"""

    def __init__(self) -> None:
        super().__init__({})
        self.resolver: Resolver | None = None

    async def search(self, title, hints):
        await self.resolver.commit(USER, _entry(title), Resolved(GameDigest(id=7, name=title)))
        return await super().search(title, hints)


async def test_entry_resolved_during_attempt_is_not_demoted() -> None:
    reconciler, store = await _reconciler({}, unknown=["Doom"])
    search = ResolvingElsewhereSearch()
    search.resolver = reconciler.resolver
    reconciler.resolver.search = search

    report = await reconciler.run(USER)

    assert report == ReconReport(user_id=USER, unchanged=1)
    assert (await store.read_library(USER)).get(_entry("Doom").key).game_id == 7
    assert (await store.read_unresolved(USER)).state_of(_entry("Doom").key) is None
    assert [ref.user_id for ref in (await store.read_refs(7)).refs] == [USER]


class PromotingStore(LibraryStore):
    """最初の読み出しでスナップショットを返した直後に、承認待ちへ書き換える。"""

    def __init__(self, documents, promoted: UnresolvedEntries) -> None:
        super().__init__(documents)
        self.promoted: UnresolvedEntries | None = promoted

    async def read_unresolved(self, user_id):
        snapshot = await super().read_unresolved(user_id)
        if self.promoted is not None:
            promoted, self.promoted = self.promoted, None
            await self.write_unresolved(user_id, promoted)
        return snapshot


async def test_entry_promoted_after_snapshot_keeps_its_new_state() -> None:
    reconciler, seeded = await _reconciler({"Doom": [0.97]}, unknown=["Doom"])
    promoted = UnresolvedEntries()
    candidate = ScoredCandidate(GameDigest(id=3, name="Doom"), 0.4)
    promoted.set_need_approval(_entry("Doom"), [candidate])
    store = PromotingStore(seeded.documents, promoted)
    reconciler.store = store
    reconciler.resolver.store = store

    report = await reconciler.run(USER)

    assert report == ReconReport(user_id=USER, unchanged=1)
    unresolved = await store.read_unresolved(USER)
    assert unresolved.state_of(_entry("Doom").key) is ResolutionState.NEEDS_APPROVAL
    assert (await store.read_library(USER)).get(_entry("Doom").key) is None
