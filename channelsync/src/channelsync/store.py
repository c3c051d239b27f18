from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .documents import Change, Document, Write, apply_writes, filter_documents
from .errors import TransportError
from .hub import Callback, ErrorCallback, Watch, WatchHub


class InMemoryDocumentStore:
    """Process-local document store with atomic batches and live watches.

    Every commit is applied in full or not at all; change events are
    dispatched to watches only after the batch has landed.
    """

    def __init__(self) -> None:
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._hub = WatchHub()
        self._closed = False

    @property
    def hub(self) -> WatchHub:
        return self._hub

    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        self._require_open()
        data = self._documents.get(path)
        return copy.deepcopy(data) if data is not None else None

    async def query(self, collection: str, where: Optional[Mapping[str, Any]] = None) -> List[Document]:
        self._require_open()
        return self._snapshot(collection, where)

    async def commit(self, writes: Sequence[Write]) -> List[Change]:
        self._require_open()
        changes = apply_writes(self._documents.get, writes)
        for change in changes:
            if change.after is None:
                self._documents.pop(change.path, None)
            else:
                self._documents[change.path] = change.after
        self._hub.publish(changes)
        return changes

    async def watch(
        self,
        collection: str,
        where: Optional[Mapping[str, Any]],
        callback: Callback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Watch:
        """Register a live query; matching documents are replayed as ``added`` first."""

        self._require_open()
        watch = self._hub.register(collection, where, callback, on_error)
        for document in self._snapshot(collection, where):
            watch.deliver("added", document.path, document.data)
        return watch

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._hub.fail_all(TransportError("store closed"))

    def _snapshot(self, collection: str, where: Optional[Mapping[str, Any]]) -> List[Document]:
        documents = (Document(path=path, data=copy.deepcopy(data)) for path, data in sorted(self._documents.items()))
        return filter_documents(documents, collection, where)

    def _require_open(self) -> None:
        if self._closed:
            raise TransportError("store closed")
