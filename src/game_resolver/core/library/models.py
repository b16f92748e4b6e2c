"""ユーザーごとのライブラリ/未解決キュー/逆引きインデックスのドキュメント。"""

from __future__ import annotations

from dataclasses import dataclass, field

from game_resolver.core.resolution.models import (
    ResolutionState,
    ScoredCandidate,
    StoreEntry,
    sort_candidates,
)
from game_resolver.shared.types import Document, EntryKey, UserID


@dataclass(slots=True, frozen=True)
class LibraryEntry:
    """Resolved 済みエントリ。ダイジェスト本体は games コレクション側に置く。"""

    store_entry: StoreEntry
    game_id: int

    def to_document(self) -> Document:
        return {"store_entry": self.store_entry.to_document(), "game_id": self.game_id}

    @classmethod
    def from_document(cls, document: Document) -> LibraryEntry:
        return cls(
            store_entry=StoreEntry.from_document(document["store_entry"]),
            game_id=int(document["game_id"]),
        )


@dataclass(slots=True)
class LibraryEntries:
    entries: dict[EntryKey, LibraryEntry] = field(default_factory=dict)

    def get(self, key: EntryKey) -> LibraryEntry | None:
        return self.entries.get(key)

    def put(self, entry: LibraryEntry) -> None:
        self.entries[entry.store_entry.key] = entry

    def remove(self, key: EntryKey) -> LibraryEntry | None:
        return self.entries.pop(key, None)

    def to_document(self) -> Document:
        return {"entries": [entry.to_document() for entry in self.entries.values()]}

    @classmethod
    def from_document(cls, document: Document | None) -> LibraryEntries:
        library = cls()
        for raw in (document or {}).get("entries", []):
            library.put(LibraryEntry.from_document(raw))
        return library


@dataclass(slots=True)
class Unresolved:
    """承認待ちエントリと、その候補 (スコア降順)。"""

    store_entry: StoreEntry
    candidates: list[ScoredCandidate] = field(default_factory=list)

    def to_document(self) -> Document:
        return {
            "store_entry": self.store_entry.to_document(),
            "candidates": [candidate.to_document() for candidate in self.candidates],
        }

    @classmethod
    def from_document(cls, document: Document) -> Unresolved:
        return cls(
            store_entry=StoreEntry.from_document(document["store_entry"]),
            candidates=[ScoredCandidate.from_document(raw) for raw in document["candidates"]],
        )


@dataclass(slots=True)
class UnresolvedEntries:
    """ユーザーごとの未解決キュー。

    1 エントリは `need_approval` と `unknown` のどちらか一方にのみ存在する。
    """

    need_approval: list[Unresolved] = field(default_factory=list)
    unknown: list[StoreEntry] = field(default_factory=list)

    def state_of(self, key: EntryKey) -> ResolutionState | None:
        if any(item.store_entry.key == key for item in self.need_approval):
            return ResolutionState.NEEDS_APPROVAL
        if any(entry.key == key for entry in self.unknown):
            return ResolutionState.UNKNOWN
        return None

    def remove(self, key: EntryKey) -> bool:
        before = len(self.need_approval) + len(self.unknown)
        self.need_approval = [item for item in self.need_approval if item.store_entry.key != key]
        self.unknown = [entry for entry in self.unknown if entry.key != key]
        return before != len(self.need_approval) + len(self.unknown)

    def set_need_approval(self, entry: StoreEntry, candidates: list[ScoredCandidate]) -> None:
        self.remove(entry.key)
        self.need_approval.append(Unresolved(store_entry=entry, candidates=sort_candidates(candidates)))

    def set_unknown(self, entry: StoreEntry) -> None:
        self.remove(entry.key)
        self.unknown.append(entry)

    def entries(self) -> list[StoreEntry]:
        return [item.store_entry for item in self.need_approval] + list(self.unknown)

    def __len__(self) -> int:
        return len(self.need_approval) + len(self.unknown)

    def to_document(self) -> Document:
        return {
            "need_approval": [item.to_document() for item in self.need_approval],
            "unknown": [entry.to_document() for entry in self.unknown],
        }

    @classmethod
    def from_document(cls, document: Document | None) -> UnresolvedEntries:
        document = document or {}
        return cls(
            need_approval=[Unresolved.from_document(raw) for raw in document.get("need_approval", [])],
            unknown=[StoreEntry.from_document(raw) for raw in document.get("unknown", [])],
        )


@dataclass(slots=True, frozen=True)
class ResolvedRef:
    user_id: UserID
    store_entry: StoreEntry


@dataclass(slots=True)
class ResolvedRefs:
    """ゲーム ID ごとの逆引き: そのゲームへ Resolved されている (ユーザー, エントリ)。"""

    game_id: int
    refs: list[ResolvedRef] = field(default_factory=list)

    def add(self, user_id: UserID, entry: StoreEntry) -> None:
        self.discard(user_id, entry.key)
        self.refs.append(ResolvedRef(user_id=user_id, store_entry=entry))

    def discard(self, user_id: UserID, key: EntryKey) -> None:
        self.refs = [
            ref for ref in self.refs if not (ref.user_id == user_id and ref.store_entry.key == key)
        ]

    def to_document(self) -> Document:
        return {"game_id": self.game_id, "refs": _refs_to_document(self.refs)}

    @classmethod
    def from_document(cls, game_id: int, document: Document | None) -> ResolvedRefs:
        return cls(game_id=game_id, refs=_refs_from_document(document))


@dataclass(slots=True)
class ExternalRefs:
    """ストアフロント uid ごとの逆引き: その uid を持つ (ユーザー, エントリ)。

    解決状態に関わらず登録し、external_games の更新通知から該当エントリを引く。
    """

    category: int
    uid: str
    refs: list[ResolvedRef] = field(default_factory=list)

    @property
    def doc_id(self) -> str:
        return external_doc_id(self.category, self.uid)

    def contains(self, user_id: UserID, key: EntryKey) -> bool:
        return any(ref.user_id == user_id and ref.store_entry.key == key for ref in self.refs)

    def add(self, user_id: UserID, entry: StoreEntry) -> None:
        self.refs = [
            ref
            for ref in self.refs
            if not (ref.user_id == user_id and ref.store_entry.key == entry.key)
        ]
        self.refs.append(ResolvedRef(user_id=user_id, store_entry=entry))

    def to_document(self) -> Document:
        return {"category": self.category, "uid": self.uid, "refs": _refs_to_document(self.refs)}

    @classmethod
    def from_document(cls, category: int, uid: str, document: Document | None) -> ExternalRefs:
        return cls(category=category, uid=uid, refs=_refs_from_document(document))


def external_doc_id(category: int, uid: str) -> str:
    return f"{category}:{uid}"


def _refs_to_document(refs: list[ResolvedRef]) -> list[Document]:
    return [{"user_id": ref.user_id, "store_entry": ref.store_entry.to_document()} for ref in refs]


def _refs_from_document(document: Document | None) -> list[ResolvedRef]:
    return [
        ResolvedRef(
            user_id=UserID(raw["user_id"]),
            store_entry=StoreEntry.from_document(raw["store_entry"]),
        )
        for raw in (document or {}).get("refs", [])
    ]


__all__ = [
    "ExternalRefs",
    "LibraryEntries",
    "LibraryEntry",
    "ResolvedRef",
    "ResolvedRefs",
    "Unresolved",
    "UnresolvedEntries",
    "external_doc_id",
]
