import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING as MONGO_ASCENDING, DESCENDING as MONGO_DESCENDING
from pymongo.errors import PyMongoError

from chatsync.core.errors import StoreError
from chatsync.database.base import (
    DESCENDING,
    Document,
    DocumentStore,
    Increment,
    QueryDescriptor,
    WriteKind,
    WriteOperation,
)


logger = logging.getLogger(__name__)

PARENT_FIELD = "_parent"


class MongoDocumentStore(DocumentStore):
    """
    DocumentStore backed by MongoDB through motor.

    Sub-collection paths such as ``chats/{id}/messages`` map to the physical
    collection ``chats.messages`` with the parent id kept in ``_parent``. The
    physical ``_id`` there is ``{parent_id}/{doc_id}`` so that one logical id
    can live under many parents.
    Batches run inside a multi-document transaction and live subscriptions
    are change streams, so the server must run as a replica set.
    """

    def __init__(self, client: AsyncIOMotorClient, db: AsyncIOMotorDatabase) -> None:
        self._client = client
        self._db = db

    async def ensure_indexes(self) -> None:
        await self._db["chats"].create_index([("participants", MONGO_ASCENDING)])
        await self._db["chats"].create_index([("updated_at", MONGO_DESCENDING)])
        await self._db["chats.messages"].create_index(
            [(PARENT_FIELD, MONGO_ASCENDING), ("timestamp", MONGO_DESCENDING), ("_id", MONGO_DESCENDING)]
        )
        await self._db["groups.members"].create_index([(PARENT_FIELD, MONGO_ASCENDING)])

    def _resolve(self, path: str) -> Tuple[Any, Dict[str, Any]]:
        parts = path.split("/")
        if len(parts) == 1:
            return self._db[parts[0]], {}
        if len(parts) == 3:
            parent, parent_id, child = parts
            return self._db[f"{parent}.{child}"], {PARENT_FIELD: parent_id}
        raise StoreError(f"Unsupported collection path: {path}")

    @staticmethod
    def _physical_id(scope: Dict[str, Any], doc_id: str) -> str:
        if PARENT_FIELD in scope:
            return f"{scope[PARENT_FIELD]}/{doc_id}"
        return doc_id

    def _to_document(self, raw: Dict[str, Any]) -> Document:
        raw = dict(raw)
        doc_id = str(raw.pop("_id"))
        parent = raw.pop(PARENT_FIELD, None)
        if parent is not None:
            doc_id = doc_id[len(parent) + 1 :]
        return Document(id=doc_id, data=raw)

    async def get_document(self, collection: str, doc_id: str) -> Optional[Document]:
        coll, scope = self._resolve(collection)
        try:
            raw = await coll.find_one({"_id": self._physical_id(scope, doc_id), **scope})
        except PyMongoError as exc:
            raise StoreError(f"Read failed for {collection}/{doc_id}: {exc}") from exc
        return self._to_document(raw) if raw else None

    async def query(self, query: QueryDescriptor) -> List[Document]:
        coll, scope = self._resolve(query.collection)
        mongo_filter: Dict[str, Any] = dict(scope)
        for f in query.filters:
            if f.op not in ("==", "array_contains"):
                raise StoreError(f"Unsupported filter operator: {f.op}")
            # equality on an array field matches any element
            mongo_filter[f.field] = f.value
        sort = [
            (name, MONGO_DESCENDING if direction == DESCENDING else MONGO_ASCENDING)
            for name, direction in query.order_by
        ]
        if sort:
            sort.append(("_id", sort[0][1]))
        try:
            cursor = coll.find(mongo_filter)
            if sort:
                cursor = cursor.sort(sort)
            if query.limit is not None:
                cursor = cursor.limit(query.limit)
            items = await cursor.to_list(length=query.limit)
        except PyMongoError as exc:
            raise StoreError(f"Query failed on {query.collection}: {exc}") from exc
        return [self._to_document(it) for it in items]

    async def subscribe(self, query: QueryDescriptor) -> AsyncIterator[List[Document]]:
        coll, _ = self._resolve(query.collection)
        try:
            # open the stream before the first read so no change falls between
            async with coll.watch() as stream:
                current = await self.query(query)
                yield current
                async for _change in stream:
                    fresh = await self.query(query)
                    if fresh != current:
                        current = fresh
                        yield current
        except PyMongoError as exc:
            raise StoreError(f"Change stream failed on {query.collection}: {exc}") from exc

    async def atomic_write(self, operations: List[WriteOperation]) -> None:
        try:
            async with await self._client.start_session() as session:
                async with session.start_transaction():
                    for op in operations:
                        await self._apply(op, session)
        except PyMongoError as exc:
            raise StoreError(f"Batch write rejected: {exc}") from exc

    async def _apply(self, op: WriteOperation, session) -> None:
        coll, scope = self._resolve(op.collection)
        selector = {"_id": self._physical_id(scope, op.id), **scope}
        if op.kind == WriteKind.SET:
            body: Dict[str, Any] = {}
            for key, value in op.payload.items():
                _assign(body, key, value)
            await coll.replace_one(selector, {**body, **scope}, upsert=True, session=session)
        elif op.kind == WriteKind.UPDATE:
            update: Dict[str, Dict[str, Any]] = {}
            for key, value in op.payload.items():
                if isinstance(value, Increment):
                    update.setdefault("$inc", {})[key] = value.amount
                else:
                    update.setdefault("$set", {})[key] = value
            result = await coll.update_one(selector, update, session=session)
            if result.matched_count == 0:
                # raising inside the transaction block aborts it
                raise StoreError(f"No document to update: {op.collection}/{op.id}")
        elif op.kind == WriteKind.DELETE:
            await coll.delete_one(selector, session=session)
        else:
            raise StoreError(f"Unknown write kind: {op.kind}")

    def new_document_id(self, collection: str) -> str:
        return str(ObjectId())

    async def close(self) -> None:
        self._client.close()


def _assign(body: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = body
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = value.amount if isinstance(value, Increment) else value
