"""
tally.database.models — SQLAlchemy 2.0 Data Models
===================================================

Tally persists everything as JSON documents grouped by collection path:

- ``events``                  — logged consumption events
- ``participants``            — running totals + profile
- ``contests``                — contest windows
- ``events/<id>/comments``    — comments nested under one event

One table holds them all so the store adapter can offer the same
get/add/update/query contract for every collection.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Tally ORM models."""


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
DocumentJSON = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# Documents — one row per stored record
# ---------------------------------------------------------------------------
class Document(Base):
    __tablename__ = "documents"

    collection: Mapped[str] = mapped_column(String(255), primary_key=True)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    data: Mapped[dict] = mapped_column(DocumentJSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_documents_collection", "collection"),
    )

    def __repr__(self) -> str:
        return f"<Document {self.collection}/{self.id}>"
