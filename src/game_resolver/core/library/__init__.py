"""ユーザーライブラリと未解決キューの永続化。"""

from .models import (
    LibraryEntries,
    LibraryEntry,
    ResolvedRef,
    ResolvedRefs,
    Unresolved,
    UnresolvedEntries,
)
from .store import (
    DocumentStoreError,
    DocumentStoreProtocol,
    InMemoryDocumentStore,
    LibraryStore,
)

__all__ = [
    "DocumentStoreError",
    "DocumentStoreProtocol",
    "InMemoryDocumentStore",
    "LibraryEntries",
    "LibraryEntry",
    "LibraryStore",
    "ResolvedRef",
    "ResolvedRefs",
    "Unresolved",
    "UnresolvedEntries",
]
