"""CLI から使う依存オブジェクトの組み立て。"""

from __future__ import annotations

from dataclasses import dataclass

from game_resolver.core.library.store import (
    DocumentStoreProtocol,
    InMemoryDocumentStore,
    LibraryStore,
)
from game_resolver.core.reconcile.reconciler import Reconciler
from game_resolver.core.resolution.ranking import CatalogSearch
from game_resolver.core.resolution.resolver import ResolutionPolicy, Resolver
from game_resolver.core.webhooks.filtering import FilterPolicy
from game_resolver.core.webhooks.pipeline import WebhookPipeline
from game_resolver.infra.db.document_store import SQLAlchemyDocumentStore
from game_resolver.infra.db.session import DatabaseSessionManager
from game_resolver.infra.igdb.batch import IGDBBatchClient, build_batch_client
from game_resolver.shared.config import AppSettings
from game_resolver.shared.events import StructlogEventSink


@dataclass(slots=True)
class Runtime:
    settings: AppSettings
    batch_client: IGDBBatchClient
    search: CatalogSearch
    store: LibraryStore
    resolver: Resolver
    pipeline: WebhookPipeline
    reconciler: Reconciler
    db_manager: DatabaseSessionManager | None = None

    def close(self) -> None:
        if self.db_manager is not None:
            self.db_manager.close()


def build_runtime(settings: AppSettings, *, dry_run: bool = False) -> Runtime:
    """設定から解決エンジン一式を組み立てる。dry-run 時は保存先をメモリにする。"""

    db_manager: DatabaseSessionManager | None = None
    documents: DocumentStoreProtocol
    if dry_run:
        documents = InMemoryDocumentStore()
    else:
        db_manager = DatabaseSessionManager(settings=settings)
        documents = SQLAlchemyDocumentStore(db_manager.session_factory)

    event_sink = StructlogEventSink()
    store = LibraryStore(documents)
    batch_client = build_batch_client(settings=settings)
    search = CatalogSearch(
        batch_client=batch_client,
        year_tolerance=settings.resolver.year_tolerance,
        event_sink=event_sink,
    )
    resolver = Resolver(
        catalog=batch_client,
        search=search,
        store=store,
        policy=ResolutionPolicy.from_settings(settings.resolver),
        event_sink=event_sink,
    )
    return Runtime(
        settings=settings,
        batch_client=batch_client,
        search=search,
        store=store,
        resolver=resolver,
        pipeline=WebhookPipeline(
            handler=resolver,
            store=store,
            policy=FilterPolicy.from_settings(settings.webhooks),
            event_sink=event_sink,
        ),
        reconciler=Reconciler(
            resolver=resolver,
            store=store,
            concurrency=settings.reconciler.concurrency,
        ),
        db_manager=db_manager,
    )


__all__ = ["Runtime", "build_runtime"]
