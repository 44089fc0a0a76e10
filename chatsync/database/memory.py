import asyncio
import copy
import itertools
import logging
import uuid
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set, Tuple

from chatsync.core.errors import StoreError
from chatsync.database.base import (
    DESCENDING,
    Document,
    DocumentStore,
    QueryDescriptor,
    WriteKind,
    WriteOperation,
    get_path,
    set_path,
)


logger = logging.getLogger(__name__)

_CHANGED = object()


class InMemoryDocumentStore(DocumentStore):
    """
    Process-local store with the same contract as the remote adapters.

    Every committed batch is published to subscribers in one step, so no
    reader can see a partially applied batch.
    """

    def __init__(self) -> None:
        # collection -> doc_id -> (insert_seq, data)
        self._collections: Dict[str, Dict[str, Tuple[int, Dict[str, Any]]]] = {}
        self._seq = itertools.count()
        self._watchers: List[Tuple[QueryDescriptor, asyncio.Queue]] = []

    async def get_document(self, collection: str, doc_id: str) -> Optional[Document]:
        entry = self._collections.get(collection, {}).get(doc_id)
        if entry is None:
            return None
        return Document(id=doc_id, data=copy.deepcopy(entry[1]))

    async def query(self, query: QueryDescriptor) -> List[Document]:
        return self._run_query(query)

    async def subscribe(self, query: QueryDescriptor) -> AsyncIterator[List[Document]]:
        queue: asyncio.Queue = asyncio.Queue()
        watcher = (query, queue)
        self._watchers.append(watcher)
        try:
            yield self._run_query(query)
            while True:
                item = await queue.get()
                # coalesce bursts of commits into a single snapshot
                while item is _CHANGED and not queue.empty():
                    item = queue.get_nowait()
                if isinstance(item, BaseException):
                    raise item
                yield self._run_query(query)
        finally:
            if watcher in self._watchers:
                self._watchers.remove(watcher)

    async def atomic_write(self, operations: List[WriteOperation]) -> None:
        touched: Set[str] = set()
        staged = {name: dict(docs) for name, docs in self._collections.items()}
        for op in operations:
            docs = staged.setdefault(op.collection, {})
            if op.kind == WriteKind.SET:
                data: Dict[str, Any] = {}
                for key, value in op.payload.items():
                    set_path(data, key, copy.deepcopy(value))
                seq = docs[op.id][0] if op.id in docs else next(self._seq)
                docs[op.id] = (seq, data)
            elif op.kind == WriteKind.UPDATE:
                if op.id not in docs:
                    raise StoreError(f"No document to update: {op.collection}/{op.id}")
                seq, current = docs[op.id]
                data = copy.deepcopy(current)
                for key, value in op.payload.items():
                    set_path(data, key, copy.deepcopy(value))
                docs[op.id] = (seq, data)
            elif op.kind == WriteKind.DELETE:
                docs.pop(op.id, None)
            else:
                raise StoreError(f"Unknown write kind: {op.kind}")
            touched.add(op.collection)
        self._commit(staged, touched)

    def new_document_id(self, collection: str) -> str:
        return uuid.uuid4().hex

    def _commit(self, staged: Dict[str, Dict[str, Tuple[int, Dict[str, Any]]]], touched: Set[str]) -> None:
        self._collections = staged
        for query, queue in list(self._watchers):
            if query.collection in touched:
                queue.put_nowait(_CHANGED)

    def interrupt(self, exc: BaseException, collections: Optional[Iterable[str]] = None) -> int:
        """Fail the live subscriptions on the given collections (all when None)."""
        wanted = set(collections) if collections is not None else None
        count = 0
        for query, queue in list(self._watchers):
            if wanted is None or query.collection in wanted:
                queue.put_nowait(exc)
                count += 1
        logger.debug("Interrupted %s subscriptions", count)
        return count

    @property
    def subscriber_count(self) -> int:
        return len(self._watchers)

    def _run_query(self, query: QueryDescriptor) -> List[Document]:
        entries = [
            (doc_id, seq, data)
            for doc_id, (seq, data) in self._collections.get(query.collection, {}).items()
            if all(f.matches(data) for f in query.filters)
        ]
        # stable sorts applied from the least significant key; insertion
        # order breaks ties in the direction of the primary key
        primary_desc = bool(query.order_by) and query.order_by[0][1] == DESCENDING
        entries.sort(key=lambda e: e[1], reverse=primary_desc)
        for field_name, direction in reversed(query.order_by):
            entries.sort(
                key=lambda e: _sort_key(get_path(e[2], field_name)),
                reverse=direction == DESCENDING,
            )
        if query.limit is not None:
            entries = entries[: query.limit]
        return [Document(id=doc_id, data=copy.deepcopy(data)) for doc_id, _, data in entries]


def _sort_key(value: Any) -> Tuple[int, Any]:
    # missing values sort before present ones
    if value is None:
        return (0, 0)
    return (1, value)
