"""Document store backed by a single SQLAlchemy JSON table.

The services persist schemaless records grouped by collection, addressed
by ``(collection, doc_id)``.  This module offers the small surface they
need on top of async SQLAlchemy:

* point reads and writes (``get``, ``set`` with optional deep merge,
  ``update`` with dotted field paths, ``delete``, ``add``)
* filtered queries with ``==``, ``!=``, ``in``, ``array-contains`` and
  range operators, ordered by document id with cursor paging
* atomic multi-document batches and read-modify-write transactions

Datetimes, enums and tuples are encoded on write (datetimes become UTC
ISO-8601 strings) so stored timestamps compare correctly as strings.
"""

from __future__ import annotations

import copy
import datetime as dt
import enum
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete as sa_delete
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from receiptgold.models.tables import Document
from receiptgold.utils.helpers import to_iso

logger = logging.getLogger(__name__)

_OPERATORS = {"==", "!=", "<", "<=", ">", ">=", "in", "array-contains"}

# Rows read per round trip by limited queries
SCAN_CHUNK_SIZE = 200


class DocumentNotFoundError(LookupError):
    def __init__(self, collection: str, doc_id: str) -> None:
        super().__init__(f"{collection}/{doc_id} does not exist")
        self.collection = collection
        self.doc_id = doc_id


def new_document_id() -> str:
    return uuid.uuid4().hex


def encode_value(value: Any) -> Any:
    """Convert ``value`` into something the JSON column can hold."""
    if isinstance(value, dt.datetime):
        return to_iso(value)
    if isinstance(value, dt.date):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return encode_value(value.value)
    if isinstance(value, dict):
        return {str(k): encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [encode_value(v) for v in value]
    return value


def get_path(data: Dict[str, Any], path: str, default: Any = None) -> Any:
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def _has_path(data: Dict[str, Any], path: str) -> bool:
    sentinel = object()
    return get_path(data, path, sentinel) is not sentinel


def _set_path(data: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = data
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def deep_merge(base: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``incoming`` into a copy of ``base``; nested maps merge, everything else replaces."""
    merged = copy.deepcopy(base)
    for key, value in incoming.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


@dataclass
class DocumentSnapshot:
    collection: str
    id: str
    data: Dict[str, Any] = field(default_factory=dict)

    def get(self, path: str, default: Any = None) -> Any:
        return get_path(self.data, path, default)


# -----------------------------------------------------------------------------
# Session level primitives shared by the store, batches and transactions


async def _load(session: AsyncSession, collection: str, doc_id: str, *, lock: bool = False) -> Optional[Document]:
    stmt = select(Document).where(Document.collection == collection, Document.doc_id == doc_id)
    if lock:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def _apply_set(
    session: AsyncSession, collection: str, doc_id: str, data: Dict[str, Any], merge: bool
) -> None:
    payload = encode_value(data)
    row = await _load(session, collection, doc_id)
    if row is None:
        session.add(Document(collection=collection, doc_id=doc_id, data=payload))
        await session.flush()
        return
    # JSON columns are not mutation tracked; always assign a fresh object
    row.data = deep_merge(row.data or {}, payload) if merge else payload
    await session.flush()


async def _apply_update(session: AsyncSession, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
    row = await _load(session, collection, doc_id)
    if row is None:
        raise DocumentNotFoundError(collection, doc_id)
    data = copy.deepcopy(row.data or {})
    for path, value in fields.items():
        _set_path(data, path, encode_value(value))
    row.data = data
    await session.flush()


async def _apply_delete(session: AsyncSession, collection: str, doc_id: str) -> None:
    await session.execute(
        sa_delete(Document).where(Document.collection == collection, Document.doc_id == doc_id)
    )


# -----------------------------------------------------------------------------
# Queries


class Query:
    """Filtered read over one collection.

    Results are always ordered by document id.  ``start_after`` and
    ``limit`` give cursor paging for the hourly and daily sweeps.
    """

    def __init__(self, store: "DocumentStore", collection: str) -> None:
        self._store = store
        self._collection = collection
        self._filters: List[Tuple[str, str, Any]] = []
        self._prefix: Optional[str] = None
        self._start_after: Optional[str] = None
        self._limit: Optional[int] = None

    def where(self, field_path: str, op: str, value: Any) -> "Query":
        if op not in _OPERATORS:
            raise ValueError(f"Unsupported operator: {op}")
        if op == "in":
            value = [encode_value(v) for v in value]
        else:
            value = encode_value(value)
        self._filters.append((field_path, op, value))
        return self

    def id_prefix(self, prefix: str) -> "Query":
        self._prefix = prefix
        return self

    def start_after(self, doc_id: Optional[str]) -> "Query":
        self._start_after = doc_id
        return self

    def limit(self, count: int) -> "Query":
        self._limit = count
        return self

    def _statement(self, after: Optional[str] = None):
        stmt = select(Document).where(Document.collection == self._collection)
        if self._prefix is not None:
            stmt = stmt.where(Document.doc_id >= self._prefix, Document.doc_id < self._prefix + "\uffff")
        if after is not None:
            stmt = stmt.where(Document.doc_id > after)
        for path, op, value in self._filters:
            # Narrow top level string matches in SQL; every filter is re-checked below
            if "." in path:
                continue
            if op == "==" and isinstance(value, str):
                stmt = stmt.where(Document.data[path].as_string() == value)
            elif op == "in" and value and all(isinstance(v, str) for v in value):
                stmt = stmt.where(Document.data[path].as_string().in_(value))
        return stmt.order_by(Document.doc_id)

    def _matches(self, data: Dict[str, Any]) -> bool:
        for path, op, expected in self._filters:
            if not _has_path(data, path):
                return False
            actual = get_path(data, path)
            try:
                if op == "==":
                    ok = actual == expected
                elif op == "!=":
                    ok = actual != expected
                elif op == "in":
                    ok = actual in expected
                elif op == "array-contains":
                    ok = isinstance(actual, list) and expected in actual
                elif actual is None or expected is None:
                    ok = False
                elif op == "<":
                    ok = actual < expected
                elif op == "<=":
                    ok = actual <= expected
                elif op == ">":
                    ok = actual > expected
                else:
                    ok = actual >= expected
            except TypeError:
                ok = False
            if not ok:
                return False
        return True

    async def get(self) -> List[DocumentSnapshot]:
        """Matching documents in id order.

        With a limit, rows are read in id-ordered chunks until the page is
        full, so a sweep page never loads the whole collection.
        """
        out: List[DocumentSnapshot] = []
        after = self._start_after
        chunk = None if self._limit is None else max(self._limit, SCAN_CHUNK_SIZE)
        async with self._store.session() as session:
            while True:
                stmt = self._statement(after)
                if chunk is not None:
                    stmt = stmt.limit(chunk)
                rows = (await session.execute(stmt)).scalars().all()
                for row in rows:
                    data = row.data or {}
                    if not self._matches(data):
                        continue
                    out.append(DocumentSnapshot(self._collection, row.doc_id, copy.deepcopy(data)))
                    if self._limit is not None and len(out) >= self._limit:
                        return out
                if chunk is None or len(rows) < chunk:
                    return out
                after = rows[-1].doc_id

    async def first(self) -> Optional[DocumentSnapshot]:
        self._limit = 1
        found = await self.get()
        return found[0] if found else None


# -----------------------------------------------------------------------------
# Batches and transactions


class WriteBatch:
    """Queue of writes committed atomically in one database transaction."""

    def __init__(self, store: "DocumentStore") -> None:
        self._store = store
        self._ops: List[Tuple[str, str, str, Any]] = []

    def __len__(self) -> int:
        return len(self._ops)

    def set(self, collection: str, doc_id: str, data: Dict[str, Any], *, merge: bool = False) -> "WriteBatch":
        self._ops.append(("set", collection, doc_id, (copy.deepcopy(data), merge)))
        return self

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> "WriteBatch":
        self._ops.append(("update", collection, doc_id, copy.deepcopy(fields)))
        return self

    def delete(self, collection: str, doc_id: str) -> "WriteBatch":
        self._ops.append(("delete", collection, doc_id, None))
        return self

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = new_document_id()
        self.set(collection, doc_id, data)
        return doc_id

    def extend(self, other: "WriteBatch") -> "WriteBatch":
        """Append the writes queued on ``other``; ``other`` is left empty."""
        self._ops.extend(other._ops)
        other._ops = []
        return self

    async def commit(self) -> None:
        if not self._ops:
            return
        async with self._store.session() as session:
            async with session.begin():
                for kind, collection, doc_id, payload in self._ops:
                    if kind == "set":
                        data, merge = payload
                        await _apply_set(session, collection, doc_id, data, merge)
                    elif kind == "update":
                        await _apply_update(session, collection, doc_id, payload)
                    else:
                        await _apply_delete(session, collection, doc_id)
        logger.debug("[store] committed batch of %d writes", len(self._ops))
        self._ops = []


class Transaction:
    """Read-modify-write scope; reads lock the rows they touch where the backend supports it."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        row = await _load(self._session, collection, doc_id, lock=True)
        return copy.deepcopy(row.data) if row is not None else None

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any], *, merge: bool = False) -> None:
        await _apply_set(self._session, collection, doc_id, data, merge)

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        await _apply_update(self._session, collection, doc_id, fields)

    async def delete(self, collection: str, doc_id: str) -> None:
        await _apply_delete(self._session, collection, doc_id)


class DocumentStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            yield session

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        async with self.session() as session:
            row = await _load(session, collection, doc_id)
            return copy.deepcopy(row.data) if row is not None else None

    async def exists(self, collection: str, doc_id: str) -> bool:
        return await self.get(collection, doc_id) is not None

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any], *, merge: bool = False) -> None:
        async with self.session() as session:
            async with session.begin():
                await _apply_set(session, collection, doc_id, data, merge)

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        async with self.session() as session:
            async with session.begin():
                await _apply_update(session, collection, doc_id, fields)

    async def delete(self, collection: str, doc_id: str) -> None:
        async with self.session() as session:
            async with session.begin():
                await _apply_delete(session, collection, doc_id)

    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = new_document_id()
        await self.set(collection, doc_id, data)
        return doc_id

    def query(self, collection: str) -> Query:
        return Query(self, collection)

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        async with self.session() as session:
            async with session.begin():
                yield Transaction(session)

    async def delete_many(self, collection: str, doc_ids: Iterable[str]) -> int:
        batch = self.batch()
        for doc_id in doc_ids:
            batch.delete(collection, doc_id)
        count = len(batch)
        await batch.commit()
        return count


__all__ = [
    "DocumentNotFoundError",
    "DocumentSnapshot",
    "DocumentStore",
    "Query",
    "Transaction",
    "WriteBatch",
    "deep_merge",
    "encode_value",
    "get_path",
    "new_document_id",
]
