"""ドキュメントストアの SQLAlchemy モデル。"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Index, String, text
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class DocumentRecord(Base):
    """コレクション名とドキュメント ID をキーに JSON を 1 件保持する。"""

    __tablename__ = "documents"

    collection: Mapped[str] = mapped_column(String, primary_key=True)
    doc_id: Mapped[str] = mapped_column(String, primary_key=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (Index("idx_documents_collection", "collection"),)


__all__ = ["Base", "DocumentRecord"]
