from __future__ import annotations

import json
import sqlite3
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .documents import Change, Document, Write, apply_writes, collection_id, filter_documents
from .errors import TransportError
from .hub import Callback, ErrorCallback, Watch, WatchHub
from .models import _now_ms
from .sqlite_backend import SQLiteBackend


class SQLiteDocumentStore:
    """Durable document store backed by SQLite.

    Batches run inside ``BEGIN IMMEDIATE`` so conditional creates and
    preconditions are checked and applied under one write lock. Watches see
    the commits made through this store instance.
    """

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend
        self._hub = WatchHub()
        self._closed = False

    @property
    def hub(self) -> WatchHub:
        return self._hub

    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        self._require_open()
        try:
            with self._backend.lock:
                return self._read(self._backend.connection, path)
        except sqlite3.OperationalError as exc:
            raise TransportError(str(exc)) from exc

    async def query(self, collection: str, where: Optional[Mapping[str, Any]] = None) -> List[Document]:
        self._require_open()
        return self._snapshot(collection, where)

    async def commit(self, writes: Sequence[Write]) -> List[Change]:
        self._require_open()
        now_ms = _now_ms()
        try:
            with self._backend.transaction() as cursor:
                changes = apply_writes(lambda path: self._read(cursor, path), writes)
                for change in changes:
                    if change.after is None:
                        cursor.execute("DELETE FROM documents WHERE path=?", (change.path,))
                        continue
                    parent = change.path.rsplit("/", 1)[0]
                    cursor.execute(
                        """
                        INSERT INTO documents (path, collection, collection_id, data_json, updated_at_ms)
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT(path) DO UPDATE SET
                            data_json = excluded.data_json,
                            updated_at_ms = excluded.updated_at_ms
                        """,
                        (change.path, parent, collection_id(parent), json.dumps(change.after, sort_keys=True), now_ms),
                    )
        except sqlite3.OperationalError as exc:
            raise TransportError(str(exc)) from exc
        self._hub.publish(changes)
        return changes

    async def watch(
        self,
        collection: str,
        where: Optional[Mapping[str, Any]],
        callback: Callback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Watch:
        self._require_open()
        documents = self._snapshot(collection, where)
        watch = self._hub.register(collection, where, callback, on_error)
        for document in documents:
            watch.deliver("added", document.path, document.data)
        return watch

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._hub.fail_all(TransportError("store closed"))
        self._backend.close()

    def _snapshot(self, collection: str, where: Optional[Mapping[str, Any]]) -> List[Document]:
        if "*" in collection:
            query = "SELECT path, data_json FROM documents WHERE collection_id=? ORDER BY path ASC"
            params: tuple = (collection_id(collection),)
        else:
            query = "SELECT path, data_json FROM documents WHERE collection=? ORDER BY path ASC"
            params = (collection,)
        try:
            with self._backend.lock:
                rows = self._backend.connection.execute(query, params).fetchall()
        except sqlite3.OperationalError as exc:
            raise TransportError(str(exc)) from exc
        documents = [Document(path=row[0], data=json.loads(row[1])) for row in rows]
        return filter_documents(documents, collection, where)

    @staticmethod
    def _read(conn, path: str) -> Optional[Dict[str, Any]]:
        row = conn.execute("SELECT data_json FROM documents WHERE path=?", (path,)).fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    def _require_open(self) -> None:
        if self._closed:
            raise TransportError("store closed")
