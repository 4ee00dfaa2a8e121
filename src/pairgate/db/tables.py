"""SQLAlchemy table definitions."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from pairgate.db.base import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
DocumentJSON = JSON().with_variant(JSONB(), "postgresql")


class DocumentTable(Base):
    """Documents table - every collection of the document store."""

    __tablename__ = "documents"

    collection: Mapped[str] = mapped_column(String(64), primary_key=True)
    doc_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Optimistic concurrency: bumped on every write, checked by conditional writes
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    data: Mapped[dict[str, Any]] = mapped_column(DocumentJSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_documents_collection_updated", "collection", "updated_at"),
    )
