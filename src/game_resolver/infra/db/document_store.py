"""SQLAlchemy を用いたドキュメントストア実装。"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from game_resolver.core.library.store import DocumentStoreError, DocumentStoreProtocol
from game_resolver.infra.db.models import DocumentRecord
from game_resolver.shared.types import Document


class SQLAlchemyDocumentStore(DocumentStoreProtocol):
    """documents テーブルへの点参照と全体書き込みのみを提供する DAO。

    同期セッションの処理は `asyncio.to_thread` でイベントループ外へ逃がす。
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    async def read(self, collection: str, doc_id: str) -> Document | None:
        return await asyncio.to_thread(self._read, collection, doc_id)

    async def write(self, collection: str, doc_id: str, document: Document) -> None:
        await asyncio.to_thread(self._write, collection, doc_id, copy.deepcopy(document))

    async def batch_read(
        self, collection: str, doc_ids: Sequence[str]
    ) -> dict[str, Document | None]:
        return await asyncio.to_thread(self._batch_read, collection, list(doc_ids))

    def _read(self, collection: str, doc_id: str) -> Document | None:
        try:
            with self._session_factory() as session:
                record = session.get(DocumentRecord, (collection, doc_id))
                return copy.deepcopy(record.payload) if record else None
        except SQLAlchemyError as exc:
            msg = f"Failed to read {collection}/{doc_id}"
            raise DocumentStoreError(msg) from exc

    def _write(self, collection: str, doc_id: str, document: Document) -> None:
        try:
            with self._session_factory() as session, session.begin():
                record = session.get(DocumentRecord, (collection, doc_id))
                if record is None:
                    session.add(
                        DocumentRecord(collection=collection, doc_id=doc_id, payload=document)
                    )
                else:
                    record.payload = document
        except SQLAlchemyError as exc:
            msg = f"Failed to write {collection}/{doc_id}"
            raise DocumentStoreError(msg) from exc

    def _batch_read(self, collection: str, doc_ids: list[str]) -> dict[str, Document | None]:
        if not doc_ids:
            return {}
        try:
            with self._session_factory() as session:
                stmt = select(DocumentRecord).where(
                    DocumentRecord.collection == collection,
                    DocumentRecord.doc_id.in_(doc_ids),
                )
                rows = {row.doc_id: row.payload for row in session.scalars(stmt).all()}
        except SQLAlchemyError as exc:
            msg = f"Failed to batch read {collection}"
            raise DocumentStoreError(msg) from exc
        return {doc_id: copy.deepcopy(rows.get(doc_id)) for doc_id in doc_ids}


__all__ = ["SQLAlchemyDocumentStore"]
