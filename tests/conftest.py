import asyncio
import copy
import json
from typing import Any, Dict, Iterable, List, Optional, Set

import pytest

from chatsync.core.config import Settings
from chatsync.core.errors import StoreError
from chatsync.database.base import WriteKind, WriteOperation
from chatsync.database.memory import InMemoryDocumentStore
from chatsync.services.chat_service import ConversationSynchronizer
from chatsync.services.session import SessionProvider


class FakeStore(InMemoryDocumentStore):
    """In-memory store with failure injection, write gating and commit history."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_writes = 0
        self.gate: Optional[asyncio.Event] = None
        self.read_gate: Optional[asyncio.Event] = None
        self.fail_reads: Set[str] = set()
        self.read_failures = 0
        self.broken_subscriptions: Dict[str, int] = {}
        self.states: List[Dict[str, Dict[str, Any]]] = []

    async def get_document(self, collection, doc_id):
        if self.read_gate is not None:
            await self.read_gate.wait()
        if collection in self.fail_reads:
            self.read_failures += 1
            raise StoreError(f"read of {collection}/{doc_id} timed out")
        return await super().get_document(collection, doc_id)

    async def atomic_write(self, operations):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_writes:
            self.fail_writes -= 1
            raise StoreError("write rejected: quota exceeded")
        await super().atomic_write(operations)

    def _commit(self, staged, touched):
        super()._commit(staged, touched)
        self.states.append(
            {name: {doc_id: copy.deepcopy(data) for doc_id, (_, data) in docs.items()} for name, docs in staged.items()}
        )

    async def subscribe(self, query):
        remaining = self.broken_subscriptions.get(query.collection, 0)
        if remaining:
            self.broken_subscriptions[query.collection] = remaining - 1
            raise StoreError(f"transport down for {query.collection}")
        async for snapshot in super().subscribe(query):
            yield snapshot


class RecordingBus:

    enabled = True

    def __init__(self) -> None:
        self.events: List[tuple] = []

    async def publish(self, channel: str, message: str) -> None:
        self.events.append((channel, json.loads(message)))

    async def close(self) -> None:
        return


class Clock:
    """Deterministic millisecond clock; scripted values first, then counting up."""

    def __init__(self, start: int = 1_000, values: Iterable[int] = ()) -> None:
        self._values = list(values)
        self._current = start

    def __call__(self) -> int:
        if self._values:
            return self._values.pop(0)
        self._current += 1
        return self._current


async def seed_conversation(store, conversation_id: str, participants: List[str], updated_at: int = 1, **extra) -> None:
    payload = {
        "participants": participants,
        "last_message": None,
        "unread_count": {p: 0 for p in participants},
        "updated_at": updated_at,
        **extra,
    }
    await store.atomic_write([WriteOperation("chats", conversation_id, WriteKind.SET, payload)])


async def next_view(feed, timeout: float = 2.0):
    return await asyncio.wait_for(anext(feed), timeout)


async def view_matching(feed, predicate, timeout: float = 2.0):
    async def scan():
        async for view in feed:
            if predicate(view):
                return view
        raise AssertionError("feed ended before a matching view arrived")

    return await asyncio.wait_for(scan(), timeout)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        SUBSCRIPTION_MAX_RETRIES=2,
        SUBSCRIPTION_RETRY_DELAY_SECONDS=0,
        MAX_MESSAGE_SUBSCRIPTIONS=100,
        MESSAGE_WINDOW=50,
    )


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def session() -> SessionProvider:
    return SessionProvider("alice")


@pytest.fixture
async def sync(store, session, settings, clock):
    synchronizer = ConversationSynchronizer(store, session, settings=settings, clock=clock)
    yield synchronizer
    synchronizer.close()


@pytest.fixture
async def make_sync(store, settings, clock):
    created = []

    def factory(identity: str, bus=None, **overrides) -> ConversationSynchronizer:
        session = SessionProvider(identity)
        synchronizer = ConversationSynchronizer(
            store, session, bus=bus, settings=overrides.get("settings", settings), clock=overrides.get("clock", clock)
        )
        created.append(synchronizer)
        return synchronizer

    yield factory
    for synchronizer in created:
        synchronizer.close()
