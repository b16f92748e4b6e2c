"""DB 向けインフラ。"""

from .base import Base
from .document_store import SQLAlchemyDocumentStore
from .models import DocumentRecord
from .session import DatabaseError, DatabaseSessionManager

__all__ = [
    "Base",
    "DatabaseError",
    "DatabaseSessionManager",
    "DocumentRecord",
    "SQLAlchemyDocumentStore",
]
