"""SQLAlchemy ORM model for the document store.

All collections live in a single table.  A row is addressed by the
``(collection, doc_id)`` pair and carries the document body as JSON.
Field level queries are evaluated against the JSON column; timestamps on
the row itself are bookkeeping only and are not exposed to callers.
"""

from __future__ import annotations

import datetime as dt

from sqlalchemy import JSON, Column, DateTime, String

from receiptgold.core.database import Base


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Document(Base):
    __tablename__ = "documents"

    collection = Column(String(128), primary_key=True)
    doc_id = Column(String(512), primary_key=True)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"<Document {self.collection}/{self.doc_id}>"
