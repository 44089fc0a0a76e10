import pytest

from chatsync.core.errors import StoreError, SubscriptionError
from chatsync.database.base import QueryDescriptor, WriteKind, WriteOperation
from chatsync.utils.feed import SnapshotFeed
from chatsync.utils.live_subscription import LiveSubscription, SubscriptionState
from tests.conftest import wait_until


async def test_reconnects_after_transport_failure(store):
    snapshots = []
    sub = LiveSubscription(store, QueryDescriptor("chats"), snapshots.append, max_retries=2, retry_delay=0).start()
    await sub.wait_ready()
    assert sub.state == SubscriptionState.LIVE

    store.interrupt(StoreError("connection reset"))
    await wait_until(lambda: len(snapshots) == 2)
    await store.atomic_write([WriteOperation("chats", "c1", WriteKind.SET, {"participants": ["alice"]})])
    await wait_until(lambda: len(snapshots) == 3)

    assert sub.state == SubscriptionState.LIVE
    assert sub.error is None
    assert [d.id for d in snapshots[-1]] == ["c1"]
    sub.cancel()


async def test_gives_up_after_retry_budget(store):
    errors = []
    store.broken_subscriptions["chats"] = 3
    sub = LiveSubscription(
        store, QueryDescriptor("chats"), lambda docs: None, on_error=errors.append, max_retries=2, retry_delay=0
    ).start()

    with pytest.raises(SubscriptionError):
        await sub.wait_ready()

    assert len(errors) == 1
    assert sub.state == SubscriptionState.UNSUBSCRIBED
    assert not sub.active


async def test_recovers_within_retry_budget(store):
    store.broken_subscriptions["chats"] = 2
    sub = LiveSubscription(store, QueryDescriptor("chats"), lambda docs: None, max_retries=2, retry_delay=0).start()

    await sub.wait_ready()

    assert sub.state == SubscriptionState.LIVE
    sub.cancel()


async def test_cancel_releases_store_subscription(store):
    sub = LiveSubscription(store, QueryDescriptor("chats"), lambda docs: None, retry_delay=0).start()
    await sub.wait_ready()
    assert store.subscriber_count == 1

    sub.cancel()

    assert sub.state == SubscriptionState.UNSUBSCRIBED
    await wait_until(lambda: store.subscriber_count == 0)


async def test_wait_ready_after_cancel_does_not_hang(store):
    sub = LiveSubscription(store, QueryDescriptor("chats"), lambda docs: None)
    sub.cancel()

    with pytest.raises(SubscriptionError):
        await sub.wait_ready()


async def test_feed_close_drops_unconsumed_snapshots():
    closed = []
    feed = SnapshotFeed(on_close=closed.append)
    feed.push("first")
    feed.push("second")

    feed.close()
    feed.close()

    assert [item async for item in feed] == []
    assert closed == [feed]
    assert feed.latest == "second"


async def test_feed_failure_is_raised_after_queued_snapshots():
    feed = SnapshotFeed()
    feed.push("first")
    feed.fail(SubscriptionError("gone"))
    feed.push("ignored")

    assert await anext(feed) == "first"
    with pytest.raises(SubscriptionError):
        await anext(feed)
    with pytest.raises(StopAsyncIteration):
        await anext(feed)
