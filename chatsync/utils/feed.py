import asyncio
from typing import Any, Callable, Generic, Optional, TypeVar


T = TypeVar("T")

_END = object()


class SnapshotFeed(Generic[T]):
    """
    Async iterator of immutable snapshots with a synchronous disposer.

    ``close()`` drops anything not yet consumed and ends iteration. A terminal
    error pushed with ``fail()`` is raised from the iterator once, after the
    snapshots queued before it.
    """

    def __init__(self, on_close: Optional[Callable[["SnapshotFeed[T]"], None]] = None) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_close = on_close
        self._closed = False
        self.latest: Optional[T] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, snapshot: T) -> None:
        if self._closed:
            return
        self.latest = snapshot
        self._queue.put_nowait(snapshot)

    def fail(self, exc: BaseException) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(exc)
        self._queue.put_nowait(_END)
        self._notify_closed()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_END)
        self._notify_closed()

    def _notify_closed(self) -> None:
        if self._on_close is not None:
            callback, self._on_close = self._on_close, None
            callback(self)

    def __aiter__(self) -> "SnapshotFeed[T]":
        return self

    async def __anext__(self) -> T:
        item: Any = await self._queue.get()
        if item is _END:
            # keep later calls terminating as well
            self._queue.put_nowait(_END)
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item
