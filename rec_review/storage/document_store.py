"""
Asynchronous document store over DuckDB.

The store is the storage boundary of the engine. It exposes the
primitives any document-oriented backend would offer:

1. get: fetch one document by (collection, doc_id)
2. set: replace or merge a document
3. query: equality filters, creation-order ordering, limit
4. watch: change subscription for one document
5. commit: atomic multi-document batch

Every operation is a coroutine. DuckDB calls run in the loop's default
executor while an ``asyncio.Lock`` is held, so the event loop keeps
serving other tasks, no two tasks touch the connection concurrently, and
change events for a document are published in write order.
"""
import asyncio
import functools
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from ..errors import TransportError
from .database import Database, get_database, reset_database


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredDocument:
    """A document as held by the store, with its store-level metadata."""
    collection: str
    doc_id: str
    data: Dict[str, Any]
    version: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class WriteOp:
    """One write inside a batch."""
    collection: str
    doc_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    merge: bool = False
    delete: bool = False


@dataclass(frozen=True)
class ChangeEvent:
    """
    Confirmed state of one document after a write.

    ``data`` is None when the document does not exist (never created or
    deleted).
    """
    collection: str
    doc_id: str
    version: int
    data: Optional[Dict[str, Any]]

    @property
    def exists(self) -> bool:
        return self.data is not None


_CLOSED = object()

WatchItem = Union[ChangeEvent, TransportError]


class DocumentWatch:
    """
    Upstream change listener for one document.

    Iterating yields ChangeEvent items and, on transport trouble,
    TransportError items; the watch stays open after an error. Iteration
    ends once the watch is closed.
    """

    def __init__(self, store: "DocumentStore", collection: str, doc_id: str):
        self.store = store
        self.collection = collection
        self.doc_id = doc_id
        self.closed = False
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()

    def push(self, item: WatchItem) -> None:
        if not self.closed:
            self._queue.put_nowait(item)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.store._unregister(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> WatchItem:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class DocumentStore:
    """
    Document store backed by a single DuckDB table.

    Writes bump the per-document ``version``; after a successful commit,
    every watcher of a written document receives a ChangeEvent carrying
    the full committed document.
    """

    def __init__(self, database: Database):
        """
        Initialize the store.

        Args:
            database: Database with an initialized schema
        """
        self.db = database
        self._lock = asyncio.Lock()
        self._watchers: Dict[Tuple[str, str], List[DocumentWatch]] = {}

    async def get(self, collection: str, doc_id: str) -> Optional[StoredDocument]:
        async with self._lock:
            return await self._run(self._fetch, collection, doc_id)

    async def set(
        self,
        collection: str,
        doc_id: str,
        data: Dict[str, Any],
        merge: bool = False,
    ) -> StoredDocument:
        results = await self.commit([WriteOp(collection, doc_id, data, merge=merge)])
        return results[0]

    async def delete(self, collection: str, doc_id: str) -> bool:
        async with self._lock:
            existed = await self._run(self._fetch, collection, doc_id) is not None
        if existed:
            await self.commit([WriteOp(collection, doc_id, delete=True)])
        return existed

    async def query(
        self,
        collection: str,
        where: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[StoredDocument]:
        """
        Query a collection with top-level equality filters.

        Results are ordered by creation (oldest first).

        Args:
            collection: Collection name
            where: Mapping of top-level document field to required value
            limit: Maximum number of documents returned
        """
        sql = [
            "SELECT collection, doc_id, data, version, created_at, updated_at",
            "FROM documents WHERE collection = ?",
        ]
        params: List[Any] = [collection]
        for field_name, value in (where or {}).items():
            sql.append("AND json_extract_string(data, ?) = ?")
            params.extend([f"$.{field_name}", _json_scalar(value)])
        sql.append("ORDER BY created_seq ASC")
        if limit is not None:
            sql.append("LIMIT ?")
            params.append(int(limit))

        async with self._lock:
            rows = await self._run(self._fetch_all, " ".join(sql), params)
        return [_row_to_document(row) for row in rows]

    async def commit(self, writes: Sequence[WriteOp]) -> List[StoredDocument]:
        """
        Apply a batch of writes atomically.

        Either every write is committed or none is: any failure rolls
        back the transaction and re-raises. Watchers are notified only
        after the commit succeeds.

        Returns:
            The stored documents in write order (deleted documents are
            returned with their last data and the bumped version)
        """
        if not writes:
            return []

        async with self._lock:
            applied = await self._run(self._commit_sync, list(writes))
            for op, document in zip(writes, applied):
                self._publish(ChangeEvent(
                    collection=document.collection,
                    doc_id=document.doc_id,
                    version=document.version,
                    data=None if op.delete else document.data,
                ))

        logger.debug(f"Committed batch of {len(writes)} writes")
        return applied

    async def watch(self, collection: str, doc_id: str, emit_initial: bool = True) -> DocumentWatch:
        """
        Register a change listener for one document.

        The current state is queued as the first event (the confirmation),
        read under the same lock as registration so no write is missed.
        """
        async with self._lock:
            watch = DocumentWatch(self, collection, doc_id)
            if emit_initial:
                current = await self._run(self._fetch, collection, doc_id)
                watch.push(ChangeEvent(
                    collection=collection,
                    doc_id=doc_id,
                    version=current.version if current else 0,
                    data=current.data if current else None,
                ))
            self._watchers.setdefault((collection, doc_id), []).append(watch)
        return watch

    def fail_watchers(self, collection: str, doc_id: str, error: TransportError) -> int:
        """
        Deliver a transport error to every watcher of a document.

        Used by transports that lose their connection; watchers stay
        registered and receive later changes normally.

        Returns:
            Number of watchers notified
        """
        watchers = list(self._watchers.get((collection, doc_id), []))
        for watch in watchers:
            watch.push(error)
        if watchers:
            logger.warning(f"Transport error on {collection}/{doc_id}: {error.message}")
        return len(watchers)

    def watcher_count(self, collection: str, doc_id: str) -> int:
        return len(self._watchers.get((collection, doc_id), []))

    def _unregister(self, watch: DocumentWatch) -> None:
        key = (watch.collection, watch.doc_id)
        watchers = self._watchers.get(key, [])
        if watch in watchers:
            watchers.remove(watch)
        if not watchers:
            self._watchers.pop(key, None)

    def _publish(self, event: ChangeEvent) -> None:
        for watch in list(self._watchers.get((event.collection, event.doc_id), [])):
            watch.push(event)

    async def _run(self, fn, *args):
        return await asyncio.get_running_loop().run_in_executor(None, functools.partial(fn, *args))

    def _commit_sync(self, writes: List[WriteOp]) -> List[StoredDocument]:
        conn = self.db.connect()
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        conn.execute("BEGIN TRANSACTION")
        try:
            applied = [self._apply(conn, op, now) for op in writes]
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        return applied

    def _fetch_all(self, sql: str, params: List[Any]) -> List[tuple]:
        return self.db.connect().execute(sql, params).fetchall()

    def _fetch(self, collection: str, doc_id: str) -> Optional[StoredDocument]:
        row = self.db.connect().execute("""
            SELECT collection, doc_id, data, version, created_at, updated_at
            FROM documents
            WHERE collection = ? AND doc_id = ?
        """, [collection, doc_id]).fetchone()
        return _row_to_document(row) if row else None

    def _apply(self, conn, op: WriteOp, now: datetime) -> StoredDocument:
        existing = self._fetch(op.collection, op.doc_id)

        if op.delete:
            if existing is None:
                raise KeyError(f"{op.collection}/{op.doc_id} does not exist")
            conn.execute(
                "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                [op.collection, op.doc_id],
            )
            return StoredDocument(
                op.collection, op.doc_id, existing.data,
                existing.version + 1, existing.created_at, now,
            )

        data = dict(op.data)
        if op.merge and existing is not None:
            data = {**existing.data, **data}

        if existing is None:
            conn.execute("""
                INSERT INTO documents
                (collection, doc_id, data, version, created_seq, created_at, updated_at)
                VALUES (?, ?, ?, 1, nextval('documents_seq'), ?, ?)
            """, [op.collection, op.doc_id, json.dumps(data), now, now])
            return StoredDocument(op.collection, op.doc_id, data, 1, now, now)

        version = existing.version + 1
        conn.execute("""
            UPDATE documents
            SET data = ?, version = ?, updated_at = ?
            WHERE collection = ? AND doc_id = ?
        """, [json.dumps(data), version, now, op.collection, op.doc_id])
        return StoredDocument(op.collection, op.doc_id, data, version, existing.created_at, now)


def _json_scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)


def _row_to_document(row) -> StoredDocument:
    collection, doc_id, data, version, created_at, updated_at = row
    if isinstance(data, str):
        data = json.loads(data)
    return StoredDocument(collection, doc_id, data, int(version), created_at, updated_at)


_store: Optional[DocumentStore] = None


def get_store(db_path: str = "rec_review.duckdb") -> DocumentStore:
    """
    Return the process-wide document store, creating it once.

    The store wraps the process-wide database from ``get_database``.
    Callers hand this handle to ``DataAccessLayer``; nothing inside the
    engine calls ``get_store`` itself.
    """
    global _store
    if _store is None:
        _store = DocumentStore(get_database(db_path))
    return _store


def reset_store():
    """Forget the process-wide store and close its database."""
    global _store
    _store = None
    reset_database()
