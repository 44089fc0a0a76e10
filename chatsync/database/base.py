"""
Abstract document store consumed by the synchronizer.

A store offers point reads, filtered and ordered queries delivered as live
snapshot streams, and all-or-nothing multi-document writes. Collections are
slash separated paths, so ``chats/{id}/messages`` names the message
sub-collection of one conversation.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple


ASCENDING = "asc"
DESCENDING = "desc"


@dataclass(frozen=True)
class FieldFilter:
    field: str
    op: str  # "==" | "array_contains"
    value: Any

    def matches(self, data: Dict[str, Any]) -> bool:
        current = get_path(data, self.field)
        if self.op == "==":
            return current == self.value
        if self.op == "array_contains":
            return isinstance(current, (list, tuple)) and self.value in current
        raise ValueError(f"Unsupported filter operator: {self.op}")


@dataclass(frozen=True)
class QueryDescriptor:
    collection: str
    filters: Tuple[FieldFilter, ...] = ()
    order_by: Tuple[Tuple[str, str], ...] = ()
    limit: Optional[int] = None


class WriteKind(str, Enum):
    SET = "set"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Increment:
    """Atomic numeric increment for an UPDATE payload value."""

    amount: int = 1


@dataclass(frozen=True)
class WriteOperation:
    collection: str
    id: str
    kind: WriteKind
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Document:
    id: str
    data: Dict[str, Any]

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


def get_path(data: Dict[str, Any], path: str) -> Any:
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def set_path(data: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = data
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    if isinstance(value, Increment):
        existing = current.get(parts[-1]) or 0
        current[parts[-1]] = existing + value.amount
    else:
        current[parts[-1]] = value


def subcollection(parent: str, parent_id: str, name: str) -> str:
    return f"{parent}/{parent_id}/{name}"


class DocumentStore(ABC):

    @abstractmethod
    async def get_document(self, collection: str, doc_id: str) -> Optional[Document]:
        """Return the document or None when it does not exist."""

    @abstractmethod
    async def query(self, query: QueryDescriptor) -> List[Document]:
        """One-shot read of the current result set."""

    @abstractmethod
    def subscribe(self, query: QueryDescriptor) -> AsyncIterator[List[Document]]:
        """
        Live subscription to a query.

        The returned async iterator yields the complete, ordered result set
        once on start and again after every change that may affect it. It
        never finishes on its own; closing it (or cancelling the task that
        consumes it) ends the subscription. Transport failures surface as
        StoreError raised from the iterator.
        """

    @abstractmethod
    async def atomic_write(self, operations: List[WriteOperation]) -> None:
        """
        Apply every operation or none of them.

        Raises StoreError when the batch is rejected. UPDATE on a missing
        document rejects the whole batch.
        """

    @abstractmethod
    def new_document_id(self, collection: str) -> str:
        """Pre-allocate an id for batch composition."""

    async def close(self) -> None:
        return
