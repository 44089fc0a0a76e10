import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient

from chatsync.core.config import settings
from chatsync.database.base import DocumentStore
from chatsync.database.memory import InMemoryDocumentStore
from chatsync.database.mongo import MongoDocumentStore


logger = logging.getLogger(__name__)

_store: Optional[DocumentStore] = None


async def connect_store() -> DocumentStore:
    global _store
    if _store is not None:
        return _store
    backend = settings.STORE_BACKEND.lower()
    if backend == "memory":
        _store = InMemoryDocumentStore()
    elif backend == "mongo":
        client = AsyncIOMotorClient(settings.MONGODB_URL)
        store = MongoDocumentStore(client, client[settings.MONGODB_DB])
        await store.ensure_indexes()
        _store = store
    else:
        raise ValueError(f"Unknown store backend: {settings.STORE_BACKEND}. Available: memory, mongo")
    logger.info("Connected %s document store", backend)
    return _store


async def close_store() -> None:
    global _store
    if _store is not None:
        await _store.close()
        _store = None
