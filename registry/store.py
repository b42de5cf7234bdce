"""
Document store

Persistence collaborator used by every service: named collections of JSON
documents keyed by an opaque id, with get-all / get / add / set / partial
update / delete. All operations are coroutines; failures surface as StoreError.
"""
from __future__ import annotations

import asyncio
import copy
import json
import logging
import sqlite3
import threading
import uuid
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .db import close_connection, get_connection
from .errors import DocumentNotFoundError, StoreError
from .util import utc_now_iso

logger = logging.getLogger(__name__)

DocRef = Tuple[str, str]

DEFAULT_BATCH_SIZE = 400


def new_doc_id() -> str:
    return uuid.uuid4().hex[:20]


class DocumentStore:
    """Interface of the persistence collaborator."""

    async def get_all(self, collection: str) -> Dict[str, Dict[str, Any]]:
        """Return every document of a collection as {doc_id: data}, in insertion order"""
        raise NotImplementedError

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        """Insert a document under a generated id and return that id"""
        raise NotImplementedError

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Create or fully replace a document under a caller-chosen id"""
        raise NotImplementedError

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Merge top-level fields into an existing document"""
        raise NotImplementedError

    async def delete(self, collection: str, doc_id: str) -> None:
        """Delete a document; deleting a missing document is a no-op"""
        raise NotImplementedError

    async def delete_batch(self, refs: Sequence[DocRef]) -> None:
        """Delete one physical batch of documents"""
        raise NotImplementedError

    async def close(self) -> None:
        return None


async def delete_in_batches(
    store: DocumentStore, refs: Iterable[DocRef], batch_size: int = DEFAULT_BATCH_SIZE
) -> int:
    """
    Delete documents in sequential chunks

    Each chunk is awaited before the next one is issued so the store never
    sees more than ``batch_size`` deletions in one batch.

    Args:
        store: document store
        refs: (collection, doc_id) pairs
        batch_size: max deletions per physical batch

    Returns:
        number of references processed
    """
    if batch_size < 1:
        raise ValueError("batch_size must be positive")

    # duplicate refs would be deleted twice
    unique_refs = list(OrderedDict.fromkeys(refs))
    total = len(unique_refs)
    if total:
        logger.info("batch delete: %d documents in chunks of %d", total, batch_size)

    for start in range(0, total, batch_size):
        chunk = unique_refs[start:start + batch_size]
        await store.delete_batch(chunk)
        logger.debug("batch delete: %d/%d done", min(start + batch_size, total), total)
    return total


class MemoryDocumentStore(DocumentStore):
    """
    In-process store

    Reads and writes are deep copies, callers never share state with the store.
    """

    def __init__(self, max_batch_size: int = 500):
        self._collections: Dict[str, "OrderedDict[str, Dict[str, Any]]"] = {}
        self.max_batch_size = max_batch_size
        self.batch_sizes: List[int] = []

    def _collection(self, name: str) -> "OrderedDict[str, Dict[str, Any]]":
        return self._collections.setdefault(name, OrderedDict())

    async def get_all(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return copy.deepcopy(dict(self._collection(collection)))

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        data = self._collection(collection).get(doc_id)
        return copy.deepcopy(data) if data is not None else None

    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = new_doc_id()
        self._collection(collection)[doc_id] = copy.deepcopy(data)
        return doc_id

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self._collection(collection)[doc_id] = copy.deepcopy(data)

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        docs = self._collection(collection)
        if doc_id not in docs:
            raise DocumentNotFoundError(collection, doc_id)
        docs[doc_id].update(copy.deepcopy(fields))

    async def delete(self, collection: str, doc_id: str) -> None:
        self._collection(collection).pop(doc_id, None)

    async def delete_batch(self, refs: Sequence[DocRef]) -> None:
        if len(refs) > self.max_batch_size:
            raise StoreError(f"batch of {len(refs)} exceeds limit {self.max_batch_size}")
        self.batch_sizes.append(len(refs))
        for collection, doc_id in refs:
            self._collection(collection).pop(doc_id, None)


class SqliteDocumentStore(DocumentStore):
    """
    SQLite backed store

    Documents are stored as JSON text; blocking sqlite calls run in a worker
    thread and are serialized by a lock.
    """

    def __init__(self, db_path: str, wal: bool = True):
        self.db_path = db_path
        try:
            self._conn = get_connection(db_path, wal)
        except sqlite3.Error as e:
            raise StoreError(f"cannot open {db_path}: {e}") from e
        self._lock = threading.Lock()

    async def _run(self, func, *args):
        def call():
            with self._lock:
                try:
                    return func(*args)
                except sqlite3.Error as e:
                    self._conn.rollback()
                    raise StoreError(str(e)) from e

        return await asyncio.to_thread(call)

    @staticmethod
    def _dumps(data: Dict[str, Any]) -> str:
        try:
            return json.dumps(data, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise StoreError(f"document is not JSON serializable: {e}") from e

    def _load_one(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        row = self._conn.execute(
            "SELECT data FROM documents WHERE collection = ? AND doc_id = ?",
            (collection, doc_id),
        ).fetchone()
        return json.loads(row[0]) if row else None

    def _upsert(self, collection: str, doc_id: str, payload: str) -> None:
        self._conn.execute(
            """
            INSERT INTO documents (collection, doc_id, data, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(collection, doc_id) DO UPDATE SET
                data = excluded.data,
                updated_at = excluded.updated_at
            """,
            (collection, doc_id, payload, utc_now_iso()),
        )
        self._conn.commit()

    async def get_all(self, collection: str) -> Dict[str, Dict[str, Any]]:
        def query():
            cursor = self._conn.execute(
                "SELECT doc_id, data FROM documents WHERE collection = ? ORDER BY rowid",
                (collection,),
            )
            return {doc_id: json.loads(data) for doc_id, data in cursor.fetchall()}

        return await self._run(query)

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return await self._run(self._load_one, collection, doc_id)

    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = new_doc_id()
        await self._run(self._upsert, collection, doc_id, self._dumps(data))
        return doc_id

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        await self._run(self._upsert, collection, doc_id, self._dumps(data))

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        self._dumps(fields)

        def merge():
            current = self._load_one(collection, doc_id)
            if current is None:
                raise DocumentNotFoundError(collection, doc_id)
            current.update(fields)
            self._upsert(collection, doc_id, json.dumps(current, ensure_ascii=False))

        await self._run(merge)

    async def delete(self, collection: str, doc_id: str) -> None:
        def remove():
            self._conn.execute(
                "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            )
            self._conn.commit()

        await self._run(remove)

    async def delete_batch(self, refs: Sequence[DocRef]) -> None:
        def remove_all():
            # one transaction per batch
            self._conn.executemany(
                "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                list(refs),
            )
            self._conn.commit()

        await self._run(remove_all)

    async def close(self) -> None:
        with self._lock:
            close_connection(self._conn)
