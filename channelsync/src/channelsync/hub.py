from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .documents import Change, ChangeEvent, Document, collection_id, collection_matches, where_matches
from .errors import TransportError


logger = logging.getLogger(__name__)

Callback = Callable[[ChangeEvent], None]
ErrorCallback = Callable[[TransportError], None]


@dataclass(eq=False)
class Watch:
    collection: str
    where: Optional[Mapping[str, Any]]
    callback: Callback
    on_error: Optional[ErrorCallback] = None
    _hub: Optional["WatchHub"] = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return self._hub is not None

    def matches(self, path: str, data: Optional[Mapping[str, Any]]) -> bool:
        if data is None:
            return False
        return collection_matches(self.collection, path.rsplit("/", 1)[0]) and where_matches(self.where, data)

    def deliver(self, kind: str, path: str, data: Mapping[str, Any]) -> None:
        if not self.active:
            return
        event = ChangeEvent(kind=kind, document=Document(path=path, data=copy.deepcopy(dict(data))))
        try:
            self.callback(event)
        except Exception:
            logger.exception("watch callback failed for %s", self.collection)

    def fail(self, exc: TransportError) -> None:
        if not self.active:
            return
        self.cancel()
        if self.on_error is not None:
            self.on_error(exc)

    def cancel(self) -> None:
        hub = self._hub
        if hub is None:
            return
        self._hub = None
        hub.unregister(self)


class WatchHub:
    """Registers live watches and fans committed changes out to them."""

    def __init__(self) -> None:
        self._watches: Dict[str, List[Watch]] = {}

    def register(
        self,
        collection: str,
        where: Optional[Mapping[str, Any]],
        callback: Callback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Watch:
        watch = Watch(collection=collection, where=dict(where or {}), callback=callback, on_error=on_error, _hub=self)
        self._watches.setdefault(collection_id(collection), []).append(watch)
        return watch

    def unregister(self, watch: Watch) -> None:
        key = collection_id(watch.collection)
        watches = self._watches.get(key)
        if not watches:
            return
        try:
            watches.remove(watch)
        except ValueError:
            return
        if not watches:
            self._watches.pop(key, None)

    def watch_count(self) -> int:
        return sum(len(watches) for watches in self._watches.values())

    def publish(self, changes: Sequence[Change]) -> None:
        for change in changes:
            parent = change.path.rsplit("/", 1)[0]
            for watch in list(self._watches.get(collection_id(parent), [])):
                was_match = watch.matches(change.path, change.before)
                is_match = watch.matches(change.path, change.after)
                if is_match and not was_match:
                    watch.deliver("added", change.path, change.after)
                elif is_match:
                    watch.deliver("modified", change.path, change.after)
                elif was_match:
                    watch.deliver("removed", change.path, change.before)

    def fail_all(self, exc: TransportError) -> None:
        for watches in list(self._watches.values()):
            for watch in list(watches):
                watch.fail(exc)
