"""
Self-healing live query subscription.

Wraps ``DocumentStore.subscribe`` in a background task that walks the state
machine UNSUBSCRIBED -> SUBSCRIBING -> LIVE -> (ERROR -> LIVE | UNSUBSCRIBED).
Transport failures are retried transparently; once the retry budget is spent
the subscription stops and reports a terminal SubscriptionError.
"""
import asyncio
import logging
from enum import Enum
from typing import Callable, List, Optional

from chatsync.core.errors import StoreError, SubscriptionError
from chatsync.database.base import Document, DocumentStore, QueryDescriptor


logger = logging.getLogger(__name__)


class SubscriptionState(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    LIVE = "live"
    ERROR = "error"


class LiveSubscription:

    def __init__(
        self,
        store: DocumentStore,
        query: QueryDescriptor,
        on_snapshot: Callable[[List[Document]], None],
        *,
        on_error: Optional[Callable[[SubscriptionError], None]] = None,
        max_retries: int = 3,
        retry_delay: float = 0.5,
        name: Optional[str] = None,
    ) -> None:
        self._store = store
        self._query = query
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self.name = name or query.collection
        self.state = SubscriptionState.UNSUBSCRIBED
        self.error: Optional[SubscriptionError] = None
        self.ready = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False

    @property
    def query(self) -> QueryDescriptor:
        return self._query

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done() and not self._cancelled

    def start(self) -> "LiveSubscription":
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"live:{self.name}")
        return self

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._set_state(SubscriptionState.UNSUBSCRIBED)
        self.ready.set()

    async def wait_ready(self) -> None:
        await self.ready.wait()
        if self.error is not None:
            raise self.error
        if self._cancelled:
            raise SubscriptionError(f"Live subscription on {self.name} was cancelled")

    def _set_state(self, state: SubscriptionState) -> None:
        if self.state != state:
            logger.debug("[%s] %s -> %s", self.name, self.state.value, state.value)
            self.state = state

    async def _run(self) -> None:
        failures = 0
        while not self._cancelled:
            self._set_state(SubscriptionState.SUBSCRIBING)
            try:
                async for documents in self._store.subscribe(self._query):
                    if self._cancelled:
                        return
                    if self.state != SubscriptionState.LIVE:
                        if failures:
                            logger.info("[%s] subscription re-established", self.name)
                        self._set_state(SubscriptionState.LIVE)
                    failures = 0
                    self._on_snapshot(documents)
                    self.ready.set()
                raise StoreError(f"Subscription stream for {self.name} ended")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if self._cancelled:
                    return
                failures += 1
                self._set_state(SubscriptionState.ERROR)
                if failures > self._max_retries:
                    logger.error("[%s] giving up after %s failed attempts: %s", self.name, failures, exc)
                    self.error = SubscriptionError(f"Live subscription on {self.name} failed: {exc}")
                    self._set_state(SubscriptionState.UNSUBSCRIBED)
                    self.ready.set()
                    if self._on_error is not None:
                        self._on_error(self.error)
                    return
                logger.warning(
                    "[%s] subscription dropped (%s), reconnecting in %ss (attempt %s/%s)",
                    self.name, exc, self._retry_delay, failures, self._max_retries,
                )
                await asyncio.sleep(self._retry_delay)
