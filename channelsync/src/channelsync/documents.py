"""Document records, batched writes and filter matching shared by every store."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union


class StoreError(Exception):
    pass


class AlreadyExists(StoreError):
    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"document already exists: {path}")


class PreconditionFailed(StoreError):
    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        super().__init__(f"precondition failed for {path}: {reason}")


@dataclass(frozen=True)
class Document:
    path: str
    data: Dict[str, Any]

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def collection(self) -> str:
        return self.path.rsplit("/", 1)[0]


@dataclass(frozen=True)
class ChangeEvent:
    """A change delivered to a watch: ``added``, ``modified`` or ``removed``."""

    kind: str
    document: Document


@dataclass(frozen=True)
class Change:
    path: str
    before: Optional[Dict[str, Any]]
    after: Optional[Dict[str, Any]]


class ArrayUnion:
    def __init__(self, *values: Any) -> None:
        self.values = tuple(values)

    def apply(self, current: Any) -> list:
        items = list(current or [])
        for value in self.values:
            if value not in items:
                items.append(value)
        return items


class ArrayRemove:
    def __init__(self, *values: Any) -> None:
        self.values = tuple(values)

    def apply(self, current: Any) -> list:
        return [item for item in (current or []) if item not in self.values]


class Increment:
    def __init__(self, amount: int = 1) -> None:
        self.amount = amount

    def apply(self, current: Any) -> int:
        return int(current or 0) + self.amount


Transform = Union[ArrayUnion, ArrayRemove, Increment]


@dataclass(frozen=True)
class Create:
    """Write that fails the whole batch when the document already exists."""

    path: str
    data: Mapping[str, Any]


@dataclass(frozen=True)
class Set:
    path: str
    data: Mapping[str, Any]


@dataclass(frozen=True)
class Update:
    """Field merge on an existing document.

    ``expect`` maps field names to the values they must hold at commit time;
    any mismatch fails the whole batch.
    """

    path: str
    fields: Mapping[str, Any]
    expect: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class Delete:
    path: str


Write = Union[Create, Set, Update, Delete]


def split_path(path: str) -> List[str]:
    segments = path.strip("/").split("/")
    if any(segment == "" for segment in segments):
        raise ValueError(f"invalid path: {path!r}")
    return segments


def collection_id(collection: str) -> str:
    last = collection.rsplit("/", 1)[-1]
    if last == "*":
        raise ValueError("the last collection segment cannot be a wildcard")
    return last


def collection_matches(pattern: str, collection: str) -> bool:
    """Match a collection path against a pattern where ``*`` stands for one segment."""

    pattern_parts = split_path(pattern)
    parts = split_path(collection)
    if len(pattern_parts) != len(parts):
        return False
    return all(expected in ("*", actual) for expected, actual in zip(pattern_parts, parts))


def where_matches(where: Optional[Mapping[str, Any]], data: Optional[Mapping[str, Any]]) -> bool:
    """Equality filter; list fields match when they contain the wanted value."""

    if data is None:
        return False
    if not where:
        return True
    for field_name, wanted in where.items():
        actual = data.get(field_name)
        if isinstance(actual, list) and not isinstance(wanted, list):
            if wanted not in actual:
                return False
        elif actual != wanted:
            return False
    return True


def apply_writes(read: Callable[[str], Optional[Dict[str, Any]]], writes: Sequence[Write]) -> List[Change]:
    """Stage ``writes`` against ``read`` and return the net per-document changes.

    Raises :class:`AlreadyExists` or :class:`PreconditionFailed` without any
    side effect; callers persist the returned changes as one unit.
    """

    originals: Dict[str, Optional[Dict[str, Any]]] = {}
    staged: Dict[str, Optional[Dict[str, Any]]] = {}

    def current(path: str) -> Optional[Dict[str, Any]]:
        if path not in staged:
            value = read(path)
            originals[path] = value
            staged[path] = copy.deepcopy(value)
        return staged[path]

    for write in writes:
        split_path(write.path)
        existing = current(write.path)
        if isinstance(write, Create):
            if existing is not None:
                raise AlreadyExists(write.path)
            staged[write.path] = _resolve_fields({}, write.data)
        elif isinstance(write, Set):
            staged[write.path] = _resolve_fields({}, write.data)
        elif isinstance(write, Update):
            if existing is None:
                raise PreconditionFailed(write.path, "document does not exist")
            for field_name, wanted in (write.expect or {}).items():
                if existing.get(field_name) != wanted:
                    raise PreconditionFailed(write.path, f"{field_name} changed")
            staged[write.path] = _resolve_fields(existing, write.fields)
        elif isinstance(write, Delete):
            staged[write.path] = None
        else:
            raise TypeError(f"unsupported write: {write!r}")

    return [
        Change(path=path, before=originals[path], after=after)
        for path, after in staged.items()
        if originals[path] != after
    ]


def _resolve_fields(base: Dict[str, Any], fields: Mapping[str, Any]) -> Dict[str, Any]:
    resolved = copy.deepcopy(base)
    for field_name, value in fields.items():
        if isinstance(value, (ArrayUnion, ArrayRemove, Increment)):
            resolved[field_name] = value.apply(resolved.get(field_name))
        else:
            resolved[field_name] = copy.deepcopy(value)
    return resolved


def filter_documents(
    documents: Iterable[Document], collection: str, where: Optional[Mapping[str, Any]]
) -> List[Document]:
    return [
        document
        for document in documents
        if collection_matches(collection, document.collection) and where_matches(where, document.data)
    ]
