"""ドキュメントストアの契約と、コレクション単位の読み書きヘルパー。"""

from __future__ import annotations

import copy
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol

from game_resolver.core.library.models import (
    ExternalRefs,
    LibraryEntries,
    ResolvedRefs,
    UnresolvedEntries,
    external_doc_id,
)
from game_resolver.core.resolution.models import GameDigest
from game_resolver.shared.exceptions import BaseAppError
from game_resolver.shared.types import Document, UserID

GAMES = "games"
LIBRARY = "library"
UNRESOLVED = "unresolved"
RESOLVED_INDEX = "resolved_index"
EXTERNAL_INDEX = "external_index"
WEBHOOK_FAILURES = "webhook_failures"
PENDING_FAILURES_ID = "pending"


class DocumentStoreError(BaseAppError):
    """ドキュメントストアの読み書き失敗。"""

    default_message = "Document store operation failed"
    transient = True


class DocumentStoreProtocol(Protocol):
    async def read(self, collection: str, doc_id: str) -> Document | None:
        """1 件読む。存在しなければ None。"""

    async def write(self, collection: str, doc_id: str, document: Document) -> None:
        """1 件を丸ごと書き込む。"""

    async def batch_read(
        self, collection: str, doc_ids: Iterable[str]
    ) -> dict[str, Document | None]:
        """ID ごとの読み取り結果を返す。"""


@dataclass(slots=True)
class InMemoryDocumentStore(DocumentStoreProtocol):
    """プロセス内 dict によるドキュメントストア。"""

    collections: dict[str, dict[str, Document]] = field(default_factory=dict)

    async def read(self, collection: str, doc_id: str) -> Document | None:
        document = self.collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(document) if document is not None else None

    async def write(self, collection: str, doc_id: str, document: Document) -> None:
        self.collections.setdefault(collection, {})[doc_id] = copy.deepcopy(document)

    async def batch_read(
        self, collection: str, doc_ids: Iterable[str]
    ) -> dict[str, Document | None]:
        return {doc_id: await self.read(collection, doc_id) for doc_id in doc_ids}


@dataclass(slots=True)
class LibraryStore:
    """解決エンジンが使うコレクションへの型付きアクセス。"""

    documents: DocumentStoreProtocol

    async def read_digest(self, game_id: int) -> GameDigest | None:
        document = await self.documents.read(GAMES, str(game_id))
        return GameDigest.from_document(document) if document is not None else None

    async def read_digests(self, game_ids: Iterable[int]) -> dict[int, GameDigest]:
        documents = await self.documents.batch_read(GAMES, [str(game_id) for game_id in game_ids])
        return {
            int(doc_id): GameDigest.from_document(document)
            for doc_id, document in documents.items()
            if document is not None
        }

    async def write_digest(self, digest: GameDigest) -> None:
        await self.documents.write(GAMES, str(digest.id), digest.to_document())

    async def read_library(self, user_id: UserID) -> LibraryEntries:
        return LibraryEntries.from_document(await self.documents.read(LIBRARY, user_id))

    async def write_library(self, user_id: UserID, library: LibraryEntries) -> None:
        await self.documents.write(LIBRARY, user_id, library.to_document())

    async def read_unresolved(self, user_id: UserID) -> UnresolvedEntries:
        return UnresolvedEntries.from_document(await self.documents.read(UNRESOLVED, user_id))

    async def write_unresolved(self, user_id: UserID, unresolved: UnresolvedEntries) -> None:
        await self.documents.write(UNRESOLVED, user_id, unresolved.to_document())

    async def read_refs(self, game_id: int) -> ResolvedRefs:
        return ResolvedRefs.from_document(
            game_id, await self.documents.read(RESOLVED_INDEX, str(game_id))
        )

    async def write_refs(self, refs: ResolvedRefs) -> None:
        await self.documents.write(RESOLVED_INDEX, str(refs.game_id), refs.to_document())

    async def read_external_refs(self, category: int, uid: str) -> ExternalRefs:
        document = await self.documents.read(EXTERNAL_INDEX, external_doc_id(category, uid))
        return ExternalRefs.from_document(category, uid, document)

    async def write_external_refs(self, refs: ExternalRefs) -> None:
        await self.documents.write(EXTERNAL_INDEX, refs.doc_id, refs.to_document())

    async def read_failures(self) -> list[Document]:
        document = await self.documents.read(WEBHOOK_FAILURES, PENDING_FAILURES_ID)
        return list((document or {}).get("items", []))

    async def write_failures(self, items: list[Document]) -> None:
        await self.documents.write(WEBHOOK_FAILURES, PENDING_FAILURES_ID, {"items": items})


__all__ = [
    "DocumentStoreError",
    "DocumentStoreProtocol",
    "EXTERNAL_INDEX",
    "GAMES",
    "InMemoryDocumentStore",
    "LIBRARY",
    "LibraryStore",
    "PENDING_FAILURES_ID",
    "RESOLVED_INDEX",
    "UNRESOLVED",
    "WEBHOOK_FAILURES",
]
