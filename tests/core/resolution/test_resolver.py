"""Resolver の状態遷移・差分適用を検証する。"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

import pytest

from game_resolver.core.library.store import InMemoryDocumentStore, LibraryStore
from game_resolver.core.resolution.models import (
    GameDigest,
    NeedsApproval,
    ResolutionState,
    Resolved,
    ScoredCandidate,
    SearchHints,
    StoreEntry,
    Transition,
    Unknown,
)
from game_resolver.core.resolution.ranking import score_candidate
from game_resolver.core.resolution.resolver import ExpectedState, ResolutionPolicy, Resolver
from game_resolver.infra.igdb.batch import BatchResult
from game_resolver.infra.igdb.dto import IGDBExternalGameDTO, IGDBGameDTO
from game_resolver.infra.igdb.errors import (
    IGDBAuthenticationError,
    IGDBNotFoundError,
    IGDBTransientError,
)
from game_resolver.shared.events import DiffEvent, ResolveAction, ResolveEvent
from game_resolver.shared.exceptions import ConfigurationError, Result
from game_resolver.shared.types import UserID

USER = UserID("user-1")


class RecordingSink:
    def __init__(self) -> None:
        self.events: list = []

    def emit(self, event) -> None:
        self.events.append(event)

    def of(self, kind: type) -> list:
        return [event for event in self.events if isinstance(event, kind)]


class StubCatalog:
    """fetch_games / lookup_external_games のスタブ。"""

    def __init__(
        self,
        games: Iterable[IGDBGameDTO] = (),
        external: dict[str, int] | None = None,
    ) -> None:
        self.games = {game.id: game for game in games}
        self.external = external or {}
        self.fetched: list[list[int]] = []
        self.looked_up: list[tuple[list[str], int]] = []

    async def fetch_games(self, game_ids):
        ids = list(game_ids)
        self.fetched.append(ids)
        return BatchResult(
            results={
                game_id: Result.ok(self.games[game_id])
                if game_id in self.games
                else Result.err(IGDBNotFoundError())
                for game_id in ids
            },
            pages=1,
        )

    async def lookup_external_games(self, uids, *, category):
        keys = list(uids)
        self.looked_up.append((keys, category))
        return BatchResult(
            results={
                uid: Result.ok(self.external[uid])
                if uid in self.external
                else Result.err(IGDBNotFoundError())
                for uid in keys
            },
            pages=1,
        )


class StubSearch:
    """タイトルごとに固定の候補を返す検索スタブ。"""

    def __init__(
        self,
        results: dict[str, list[ScoredCandidate]] | None = None,
        *,
        error: Exception | None = None,
        forced_score: float | None = None,
    ) -> None:
        self.results = results or {}
        self.error = error
        self.forced_score = forced_score
        self.calls: list[str] = []
        self.scored: list[int] = []

    async def search(self, title: str, hints: SearchHints | None = None) -> list[ScoredCandidate]:
        self.calls.append(title)
        if self.error is not None:
            raise self.error
        return list(self.results.get(title, []))

    def score(self, title: str, hints: SearchHints, digest: GameDigest) -> ScoredCandidate:
        self.scored.append(digest.id)
        if self.forced_score is not None:
            return ScoredCandidate(digest=digest, score=self.forced_score)
        return score_candidate(title, hints, digest)


def _candidate(game_id: int, score: float, *, name: str = "Doom", popularity: int = 0):
    return ScoredCandidate(
        digest=GameDigest(id=game_id, name=name, popularity=popularity), score=score
    )


def _policy() -> ResolutionPolicy:
    return ResolutionPolicy(high_confidence=0.9, min_gap=0.15, candidate_limit=5)


def _resolver(
    *,
    catalog: StubCatalog | None = None,
    search: StubSearch | None = None,
    store: LibraryStore | None = None,
    sink: RecordingSink | None = None,
) -> Resolver:
    return Resolver(
        catalog=catalog or StubCatalog(),
        search=search or StubSearch(),
        store=store or LibraryStore(InMemoryDocumentStore()),
        policy=_policy(),
        event_sink=sink or RecordingSink(),
    )


async def test_external_id_is_fetched_directly_without_search() -> None:
    """シナリオ 1: カタログ ID を持つエントリは検索せずに確定する。"""

    catalog = StubCatalog([IGDBGameDTO(id=220, name="Half-Life 2", follows=100)])
    search = StubSearch()
    resolver = _resolver(catalog=catalog, search=search)
    entry = StoreEntry(title="Half-Life 2", storefront="steam", external_id=220)

    result = await resolver.resolve(USER, entry)

    outcome = result.unwrap()
    assert isinstance(outcome, Resolved)
    assert outcome.digest.id == 220
    assert catalog.fetched == [[220]]
    assert search.calls == []


async def test_missing_external_id_is_unknown() -> None:
    resolver = _resolver(catalog=StubCatalog())
    entry = StoreEntry(title="Gone", storefront="gog", external_id=999)

    outcome = (await resolver.attempt(entry)).unwrap()

    assert isinstance(outcome, Unknown)


async def test_near_tie_needs_approval_with_ordered_candidates() -> None:
    """シナリオ 2: 1 位と 2 位の差が最小ギャップ未満なら承認待ちになる。"""

    search = StubSearch({"Doom": [_candidate(1, 0.91), _candidate(2, 0.89), _candidate(3, 0.40)]})
    store = LibraryStore(InMemoryDocumentStore())
    resolver = _resolver(search=search, store=store)
    entry = StoreEntry(title="Doom", storefront="steam")

    outcome = (await resolver.resolve(USER, entry)).unwrap()

    assert isinstance(outcome, NeedsApproval)
    assert [item.score for item in outcome.candidates] == [0.91, 0.89, 0.40]
    unresolved = await store.read_unresolved(USER)
    assert [item.digest.id for item in unresolved.need_approval[0].candidates] == [1, 2, 3]
    assert unresolved.unknown == []


async def test_empty_search_is_unknown() -> None:
    """シナリオ 3: 検索結果が空なら Unknown。"""

    store = LibraryStore(InMemoryDocumentStore())
    resolver = _resolver(search=StubSearch({}), store=store)
    entry = StoreEntry(title="xyzzy-no-such-game-42", storefront="steam")

    outcome = (await resolver.resolve(USER, entry)).unwrap()

    assert isinstance(outcome, Unknown)
    assert (await store.read_unresolved(USER)).state_of(entry.key) is ResolutionState.UNKNOWN


async def test_confident_match_is_resolved() -> None:
    search = StubSearch({"Quake": [_candidate(5, 0.98, name="Quake"), _candidate(6, 0.5)]})
    store = LibraryStore(InMemoryDocumentStore())
    resolver = _resolver(search=search, store=store)
    entry = StoreEntry(title="Quake", storefront="gog")

    outcome = (await resolver.resolve(USER, entry)).unwrap()

    assert isinstance(outcome, Resolved)
    assert (await store.read_library(USER)).get(entry.key).game_id == 5
    assert (await store.read_digest(5)).name == "Quake"
    assert [ref.user_id for ref in (await store.read_refs(5)).refs] == [USER]


async def test_candidate_list_is_truncated_to_limit() -> None:
    candidates = [_candidate(game_id, 0.8 - game_id / 100) for game_id in range(1, 9)]
    resolver = _resolver(search=StubSearch({"Doom": candidates}))

    outcome = (await resolver.attempt(StoreEntry(title="Doom", storefront="steam"))).unwrap()

    assert len(outcome.candidates) == 5


@pytest.mark.parametrize("high_confidence", [0.5, 0.8, 0.9, 0.95])
@pytest.mark.parametrize("min_gap", [0.05, 0.15, 0.3])
def test_threshold_just_below_never_resolves(high_confidence: float, min_gap: float) -> None:
    policy = ResolutionPolicy(high_confidence=high_confidence, min_gap=min_gap, candidate_limit=5)
    epsilon = 0.0001

    below_confidence = [_candidate(1, high_confidence - epsilon)]
    below_gap = [_candidate(1, high_confidence), _candidate(2, high_confidence - min_gap + epsilon)]
    at_threshold = [_candidate(1, high_confidence), _candidate(2, high_confidence - min_gap)]

    assert isinstance(policy.decide(below_confidence), NeedsApproval)
    assert isinstance(policy.decide(below_gap), NeedsApproval)
    assert isinstance(policy.decide(at_threshold), Resolved)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"high_confidence": 1.2, "min_gap": 0.1, "candidate_limit": 5},
        {"high_confidence": 0.9, "min_gap": -0.1, "candidate_limit": 5},
        {"high_confidence": 0.9, "min_gap": 0.1, "candidate_limit": 0},
    ],
)
def test_invalid_policy_is_configuration_error(kwargs: dict) -> None:
    with pytest.raises(ConfigurationError):
        ResolutionPolicy(**kwargs)


async def test_storefront_uid_is_mapped_through_external_games() -> None:
    catalog = StubCatalog([IGDBGameDTO(id=72, name="Portal")], external={"400": 72})
    search = StubSearch()
    sink = RecordingSink()
    resolver = _resolver(catalog=catalog, search=search, sink=sink)
    entry = StoreEntry(title="Portal", storefront="steam", storefront_uid="400")

    outcome = (await resolver.attempt(entry)).unwrap()

    assert outcome.digest.id == 72
    assert catalog.looked_up == [(["400"], 1)]
    assert search.calls == []
    assert [event.action for event in sink.of(ResolveEvent)] == [ResolveAction.EXTERNAL]


async def test_external_miss_falls_back_to_search() -> None:
    catalog = StubCatalog(external={})
    search = StubSearch({"Portal": [_candidate(72, 0.99, name="Portal")]})
    resolver = _resolver(catalog=catalog, search=search)
    entry = StoreEntry(title="Portal", storefront="gog", storefront_uid="1207658751")

    outcome = (await resolver.attempt(entry)).unwrap()

    assert catalog.looked_up == [(["1207658751"], 5)]
    assert search.calls == ["Portal"]
    assert isinstance(outcome, Resolved)


async def test_fatal_error_propagates_and_keeps_prior_state() -> None:
    store = LibraryStore(InMemoryDocumentStore())
    entry = StoreEntry(title="Doom", storefront="steam")
    await _resolver(search=StubSearch({}), store=store).resolve(USER, entry)

    failing = _resolver(search=StubSearch(error=IGDBAuthenticationError()), store=store)
    with pytest.raises(IGDBAuthenticationError):
        await failing.resolve(USER, entry)

    assert (await store.read_unresolved(USER)).state_of(entry.key) is ResolutionState.UNKNOWN


async def test_non_fatal_error_is_terminal_for_the_attempt() -> None:
    store = LibraryStore(InMemoryDocumentStore())
    resolver = _resolver(search=StubSearch(error=IGDBTransientError()), store=store)
    entry = StoreEntry(title="Doom", storefront="steam")

    result = await resolver.resolve(USER, entry)

    assert result.is_err
    assert isinstance(result.unwrap_err().__cause__, IGDBTransientError)
    assert len(await store.read_unresolved(USER)) == 0


async def test_resolving_removes_entry_from_unresolved_queues() -> None:
    store = LibraryStore(InMemoryDocumentStore())
    sink = RecordingSink()
    resolver = _resolver(store=store, sink=sink)
    entry = StoreEntry(title="Doom", storefront="steam")
    digest = GameDigest(id=1, name="Doom")

    await resolver.commit(USER, entry, NeedsApproval(candidates=(ScoredCandidate(digest, 0.7),)))
    transition = await resolver.commit(USER, entry, Resolved(digest=digest))

    assert transition == Transition(
        previous=ResolutionState.NEEDS_APPROVAL, current=ResolutionState.RESOLVED
    )
    assert len(await store.read_unresolved(USER)) == 0
    assert (await store.read_library(USER)).get(entry.key) is not None
    transitions = [event for event in sink.of(ResolveEvent) if event.action is ResolveAction.TRANSITION]
    assert [(event.previous, event.outcome) for event in transitions] == [
        (None, "needs_approval"),
        ("needs_approval", "resolved"),
    ]


async def _resolved_fixture(
    *, search: StubSearch, sink: RecordingSink
) -> tuple[Resolver, LibraryStore, StoreEntry]:
    store = LibraryStore(InMemoryDocumentStore())
    resolver = _resolver(search=search, store=store, sink=sink)
    entry = StoreEntry(title="Doom", storefront="steam")
    digest = GameDigest(id=42, name="Doom", rating=80.0, popularity=10, updated_at=100)
    await resolver.commit(USER, entry, Resolved(digest=digest))
    return resolver, store, entry


async def test_cosmetic_update_does_not_reresolve() -> None:
    """シナリオ 4: 評価値のみの更新は再解決しない。"""

    search = StubSearch()
    sink = RecordingSink()
    resolver, store, entry = await _resolved_fixture(search=search, sink=sink)

    diff = await resolver.apply_update(
        IGDBGameDTO(id=42, name="Doom", aggregated_rating=85.0, follows=10, updated_at=200)
    )

    assert diff.changed == ("rating",)
    assert diff.needs_resolve is False
    assert search.calls == []
    assert (await store.read_digest(42)).rating == 85.0
    assert (await store.read_library(USER)).get(entry.key).game_id == 42
    (event,) = sink.of(DiffEvent)
    assert event.needs_resolve is False


async def test_identity_update_reresolves_with_forced_candidate() -> None:
    """シナリオ 5: 名称変更は該当エントリ全件を新ダイジェスト込みで再解決する。"""

    search = StubSearch({"Doom": []})
    sink = RecordingSink()
    resolver, store, entry = await _resolved_fixture(search=search, sink=sink)
    other_user = UserID("user-2")
    other_entry = StoreEntry(title="Doom", storefront="gog")
    await resolver.commit(other_user, other_entry, Resolved(digest=GameDigest(id=42, name="Doom")))

    diff = await resolver.apply_update(
        IGDBGameDTO(id=42, name="Doom: Annihilation Tie-In", follows=10, updated_at=200)
    )

    assert diff.needs_resolve is True
    assert search.calls == ["Doom", "Doom"]
    assert search.scored == [42, 42]
    for user_id, store_entry in ((USER, entry), (other_user, other_entry)):
        unresolved = await store.read_unresolved(user_id)
        assert unresolved.state_of(store_entry.key) is ResolutionState.NEEDS_APPROVAL
        assert unresolved.need_approval[0].candidates[0].digest.name == "Doom: Annihilation Tie-In"
        assert (await store.read_library(user_id)).get(store_entry.key) is None
    assert (await store.read_refs(42)).refs == []


async def test_identity_update_can_keep_resolution() -> None:
    search = StubSearch({"Doom": []}, forced_score=0.97)
    resolver, store, entry = await _resolved_fixture(search=search, sink=RecordingSink())

    await resolver.apply_update(IGDBGameDTO(id=42, name="DOOM", updated_at=200))

    assert (await store.read_library(USER)).get(entry.key).game_id == 42
    assert [ref.store_entry.key for ref in (await store.read_refs(42)).refs] == [entry.key]


async def test_stale_update_is_discarded() -> None:
    search = StubSearch()
    sink = RecordingSink()
    resolver, store, _ = await _resolved_fixture(search=search, sink=sink)

    diff = await resolver.apply_update(IGDBGameDTO(id=42, name="Renamed", updated_at=50))

    assert diff is None
    assert (await store.read_digest(42)).name == "Doom"
    (event,) = sink.of(DiffEvent)
    assert event.stale is True
    assert search.calls == []


async def test_update_for_untracked_game_is_ignored() -> None:
    resolver = _resolver()

    assert await resolver.apply_update(IGDBGameDTO(id=7, name="Nobody owns this")) is None


async def test_commit_with_stale_expectation_leaves_entry_untouched() -> None:
    store = LibraryStore(InMemoryDocumentStore())
    sink = RecordingSink()
    resolver = _resolver(store=store, sink=sink)
    entry = StoreEntry(title="Doom", storefront="steam")
    await resolver.commit(USER, entry, Resolved(digest=GameDigest(id=7, name="Doom")))

    transition = await resolver.commit(
        USER, entry, Unknown(), expect=ExpectedState(ResolutionState.UNKNOWN)
    )

    assert transition == Transition(
        previous=ResolutionState.RESOLVED, current=ResolutionState.RESOLVED, applied=False
    )
    assert (await store.read_library(USER)).get(entry.key).game_id == 7
    assert len(await store.read_unresolved(USER)) == 0
    assert len(sink.of(ResolveEvent)) == 1


async def test_expectation_compares_resolved_game_id() -> None:
    store = LibraryStore(InMemoryDocumentStore())
    resolver = _resolver(store=store)
    entry = StoreEntry(title="Doom", storefront="steam")
    await resolver.commit(USER, entry, Resolved(digest=GameDigest(id=8, name="Doom")))

    transition = await resolver.commit(
        USER, entry, Unknown(), expect=ExpectedState(ResolutionState.RESOLVED, game_id=42)
    )

    assert transition.applied is False
    assert (await store.read_library(USER)).get(entry.key).game_id == 8


class ReassigningSearch(StubSearch):
    """検索の最中に、同じエントリを別のゲームへ確定させる。"""

    def __init__(self, entry: StoreEntry, game_id: int) -> None:
        super().__init__({}, forced_score=0.5)
        self.entry = entry
        self.game_id = game_id
        self.resolver: Resolver | None = None

    async def search(self, title: str, hints: SearchHints | None = None) -> list[ScoredCandidate]:
        await self.resolver.commit(
            USER, self.entry, Resolved(digest=GameDigest(id=self.game_id, name=title))
        )
        return await super().search(title, hints)


async def test_reresolution_does_not_overwrite_concurrent_reassignment() -> None:
    entry = StoreEntry(title="Doom", storefront="steam")
    search = ReassigningSearch(entry, game_id=8)
    resolver, store, _ = await _resolved_fixture(search=search, sink=RecordingSink())
    search.resolver = resolver

    diff = await resolver.apply_update(IGDBGameDTO(id=42, name="Doom 64", updated_at=200))

    assert diff.needs_resolve is True
    assert (await store.read_library(USER)).get(entry.key).game_id == 8
    assert (await store.read_unresolved(USER)).state_of(entry.key) is None
    assert [ref.user_id for ref in (await store.read_refs(8)).refs] == [USER]


class OrderLoggingStore(LibraryStore):
    """ダイジェスト書き込みの順序を記録し、書き込みごとに制御を手放す。"""

    def __init__(self, documents: InMemoryDocumentStore, log: list) -> None:
        super().__init__(documents)
        self.log = log

    async def write_digest(self, digest: GameDigest) -> None:
        await asyncio.sleep(0)
        self.log.append(("write", digest.updated_at))
        await super().write_digest(digest)


class OrderLoggingSearch(StubSearch):
    def __init__(self, log: list) -> None:
        super().__init__({}, forced_score=0.5)
        self.log = log

    async def search(self, title: str, hints: SearchHints | None = None) -> list[ScoredCandidate]:
        await asyncio.sleep(0)
        self.log.append(("search", title))
        return await super().search(title, hints)


async def test_updates_for_one_game_apply_in_arrival_order() -> None:
    log: list = []
    store = OrderLoggingStore(InMemoryDocumentStore(), log)
    resolver = _resolver(search=OrderLoggingSearch(log), store=store)
    entry = StoreEntry(title="Doom", storefront="steam")
    await resolver.commit(
        USER, entry, Resolved(digest=GameDigest(id=42, name="Doom", updated_at=100))
    )
    log.clear()

    renamed, rerated = await asyncio.gather(
        resolver.apply_update(IGDBGameDTO(id=42, name="Doom II", updated_at=200)),
        resolver.apply_update(
            IGDBGameDTO(id=42, name="Doom II", aggregated_rating=90.0, updated_at=300)
        ),
    )

    assert renamed.needs_resolve is True
    assert rerated.changed == ("rating",)
    # 2 件目の書き込みは 1 件目の再解決が終わるまで始まらない
    assert log == [("write", 200), ("search", "Doom"), ("write", 300)]
    stored = await store.read_digest(42)
    assert (stored.name, stored.rating, stored.updated_at) == ("Doom II", 90.0, 300)


def _portal(**overrides) -> StoreEntry:
    values = {"title": "Portal", "storefront": "steam", "storefront_uid": "400"}
    values.update(overrides)
    return StoreEntry(**values)


async def test_commit_indexes_entries_by_storefront_uid() -> None:
    store = LibraryStore(InMemoryDocumentStore())
    resolver = _resolver(store=store)
    entry = _portal()

    await resolver.commit(USER, entry, Unknown())
    await resolver.commit(USER, entry, Unknown())
    await resolver.commit(
        USER, StoreEntry(title="Portal", storefront="itch", storefront_uid="1"), Unknown()
    )

    refs = await store.read_external_refs(1, "400")
    assert [(ref.user_id, ref.store_entry.key) for ref in refs.refs] == [(USER, entry.key)]


async def test_external_update_resolves_entries_with_that_uid() -> None:
    catalog = StubCatalog([IGDBGameDTO(id=72, name="Portal")])
    store = LibraryStore(InMemoryDocumentStore())
    search = StubSearch()
    resolver = _resolver(catalog=catalog, search=search, store=store)
    entry = _portal()
    await resolver.commit(USER, entry, Unknown())

    moved = await resolver.apply_external_update(
        IGDBExternalGameDTO(id=9, game=72, uid="400", category=1)
    )

    assert moved == 1
    assert (await store.read_library(USER)).get(entry.key).game_id == 72
    assert (await store.read_unresolved(USER)).state_of(entry.key) is None
    assert catalog.fetched == [[72]]
    assert catalog.looked_up == []
    assert search.calls == []


async def test_external_update_skips_entries_already_on_that_game() -> None:
    catalog = StubCatalog([IGDBGameDTO(id=72, name="Portal")])
    resolver = _resolver(catalog=catalog)
    await resolver.commit(USER, _portal(), Resolved(digest=GameDigest(id=72, name="Portal")))

    moved = await resolver.apply_external_update(
        IGDBExternalGameDTO(id=9, game=72, uid="400", category=1)
    )

    assert moved == 0
    assert catalog.fetched == []


async def test_external_update_ignores_entries_with_explicit_catalog_id() -> None:
    catalog = StubCatalog([IGDBGameDTO(id=72, name="Portal")])
    store = LibraryStore(InMemoryDocumentStore())
    resolver = _resolver(catalog=catalog, store=store)
    entry = _portal(external_id=71)
    await resolver.commit(USER, entry, Resolved(digest=GameDigest(id=71, name="Portal")))

    moved = await resolver.apply_external_update(
        IGDBExternalGameDTO(id=9, game=72, uid="400", category=1)
    )

    assert moved == 0
    assert (await store.read_library(USER)).get(entry.key).game_id == 71


async def test_external_update_for_unknown_uid_is_untracked() -> None:
    resolver = _resolver()

    assert (
        await resolver.apply_external_update(
            IGDBExternalGameDTO(id=9, game=72, uid="999", category=1)
        )
        is None
    )
