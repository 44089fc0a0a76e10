"""
Conversation synchronizer.

Keeps, for the signed-in identity, a live view of its conversations and of a
bounded window of recent messages per conversation, and turns commands into
atomic store writes so that unread counters and ``last_message`` never drift
from the message log.
"""
import asyncio
import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from chatsync.core.config import Settings, settings as default_settings
from chatsync.core.errors import (
    CreateError,
    NotFoundError,
    PermissionDeniedError,
    SendError,
    SessionError,
    StoreError,
    SubscriptionError,
    WriteError,
)
from chatsync.database.base import Document, DocumentStore
from chatsync.models.conversation import LastMessageDocument
from chatsync.repositories.conversation_repository import ConversationRepository, unread_for
from chatsync.repositories.group_repository import GroupRepository
from chatsync.repositories.message_repository import MessageRepository
from chatsync.repositories.user_repository import UserRepository
from chatsync.schemas.chat import (
    ConversationItem,
    ConversationListView,
    GroupSummary,
    MessageListView,
    MessagePreview,
    MessageView,
    ParticipantSummary,
)
from chatsync.services.session import SessionProvider
from chatsync.utils.clock import now_ms
from chatsync.utils.feed import SnapshotFeed
from chatsync.utils.live_subscription import LiveSubscription
from chatsync.utils.realtime_bus import NoopBus, publish_event


logger = logging.getLogger(__name__)

ConversationFeed = SnapshotFeed[ConversationListView]
MessageFeed = SnapshotFeed[MessageListView]


class ConversationSynchronizer:

    def __init__(
        self,
        store: DocumentStore,
        session: SessionProvider,
        *,
        bus=None,
        settings: Optional[Settings] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._session = session
        self._bus = bus or NoopBus()
        self._settings = settings or default_settings
        self._clock = clock

        self._conversation_repo = ConversationRepository(store)
        self._message_repo = MessageRepository(store)
        self._group_repo = GroupRepository(store)
        self._user_repo = UserRepository(store)

        self._identity: Optional[str] = session.identity
        # bumped on every teardown; callbacks carrying an older value are dropped
        self._generation = 0

        self._list_sub: Optional[LiveSubscription] = None
        self._list_feeds: List[ConversationFeed] = []
        self._conversations: List[Document] = []
        self._view: Optional[ConversationListView] = None

        self._message_subs: "OrderedDict[str, LiveSubscription]" = OrderedDict()
        self._messages: Dict[str, List[Document]] = {}
        self._message_feeds: Dict[str, List[MessageFeed]] = {}
        self._pending: Dict[str, Dict[str, MessageView]] = {}

        self._references: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}
        self._reference_tasks: Set[asyncio.Task] = set()

        self._detach_session = session.subscribe(self._on_identity_changed)

    @property
    def identity(self) -> Optional[str]:
        return self._identity

    @property
    def conversations(self) -> List[Document]:
        return list(self._conversations)

    @property
    def view(self) -> Optional[ConversationListView]:
        return self._view

    @property
    def open_message_subscriptions(self) -> List[str]:
        return list(self._message_subs)

    # -- session -----------------------------------------------------------

    def _on_identity_changed(self, identity: Optional[str]) -> None:
        if identity == self._identity:
            return
        self._teardown()
        self._identity = identity

    def _teardown(self) -> None:
        self._generation += 1
        if self._list_sub is not None:
            self._list_sub.cancel()
            self._list_sub = None
        for sub in self._message_subs.values():
            sub.cancel()
        count = len(self._message_subs)
        self._message_subs.clear()

        feeds: List[SnapshotFeed] = list(self._list_feeds)
        for conversation_feeds in self._message_feeds.values():
            feeds.extend(conversation_feeds)
        self._list_feeds = []
        self._message_feeds = {}
        for feed in feeds:
            feed.close()

        for task in self._reference_tasks:
            task.cancel()
        self._reference_tasks.clear()
        self._references.clear()
        self._conversations = []
        self._view = None
        self._messages.clear()
        self._pending.clear()
        if self._identity is not None:
            logger.info("Cleared chat state for %s (%s message subscriptions)", self._identity, count)

    def _require(self, identity: str) -> None:
        if self._identity is None:
            raise SessionError("No signed-in identity")
        if identity != self._identity:
            raise SessionError(f"{identity} is not the signed-in identity", status_code=403)

    def close(self) -> None:
        self._detach_session()
        self._teardown()
        self._identity = None

    # -- conversation list -------------------------------------------------

    def observe(self, identity: str) -> ConversationFeed:
        self._require(identity)
        feed: ConversationFeed = SnapshotFeed(on_close=self._detach_list_feed)
        self._list_feeds.append(feed)
        if self._list_sub is None:
            generation = self._generation
            self._list_sub = LiveSubscription(
                self._store,
                self._conversation_repo.participant_query(identity),
                on_snapshot=lambda docs: self._on_conversations(generation, identity, docs),
                on_error=lambda err: self._on_list_error(generation, err),
                max_retries=self._settings.SUBSCRIPTION_MAX_RETRIES,
                retry_delay=self._settings.SUBSCRIPTION_RETRY_DELAY_SECONDS,
                name=f"chats:{identity}",
            ).start()
            logger.info("Opened conversation list subscription for %s", identity)
        elif self._view is not None:
            feed.push(self._view)
        return feed

    def _detach_list_feed(self, feed: SnapshotFeed) -> None:
        if feed in self._list_feeds:
            self._list_feeds.remove(feed)
        if not self._list_feeds and self._list_sub is not None:
            self._list_sub.cancel()
            self._list_sub = None
            logger.debug("Closed conversation list subscription for %s", self._identity)

    def _on_conversations(self, generation: int, identity: str, documents: List[Document]) -> None:
        if generation != self._generation or identity != self._identity:
            return
        self._conversations = [d for d in documents if identity in (d.get("participants") or [])]
        newest = [d.id for d in self._conversations[: self._settings.MAX_MESSAGE_SUBSCRIPTIONS]]
        protect = set(newest)
        for conversation_id in newest:
            self._ensure_message_subscription(conversation_id, protect)
        self._request_references(self._conversations)
        self._publish_list()

    def _on_list_error(self, generation: int, error: SubscriptionError) -> None:
        if generation != self._generation:
            return
        self._list_sub = None
        for feed in list(self._list_feeds):
            feed.fail(error)

    def _publish_list(self) -> None:
        view = self._build_list_view()
        self._view = view
        for feed in list(self._list_feeds):
            feed.push(view)

    def _build_list_view(self) -> ConversationListView:
        identity = self._identity or ""
        items = []
        for doc in self._conversations:
            participants = doc.get("participants") or []
            other = None
            group = None
            group_id = doc.get("group_id")
            if group_id:
                info = self._references.get(("groups", group_id)) or {}
                group = GroupSummary(id=group_id, name=info.get("name"), member_count=len(participants))
            else:
                other_id = next((p for p in participants if p != identity), None)
                if other_id is not None:
                    profile = self._references.get(("users", other_id)) or {}
                    other = ParticipantSummary(
                        id=other_id,
                        display_name=profile.get("display_name"),
                        photo_url=profile.get("photo_url"),
                    )
            last = doc.get("last_message")
            items.append(
                ConversationItem(
                    id=doc.id,
                    other_participant=other,
                    group=group,
                    last_message=MessagePreview(**last) if last else None,
                    unread_count=unread_for(doc.data, identity),
                    updated_at=doc.get("updated_at") or 0,
                )
            )
        items.sort(key=lambda item: item.updated_at, reverse=True)
        return ConversationListView(identity=identity, conversations=tuple(items))

    def _request_references(self, documents: Iterable[Document]) -> None:
        wanted = []
        for doc in documents:
            if doc.get("group_id"):
                wanted.append(("groups", doc.get("group_id")))
                continue
            for participant in doc.get("participants") or []:
                if participant != self._identity:
                    wanted.append(("users", participant))
        for key in wanted:
            if key in self._references:
                continue
            self._references[key] = None
            task = asyncio.create_task(self._load_reference(self._generation, key))
            self._reference_tasks.add(task)
            task.add_done_callback(self._reference_tasks.discard)

    async def _load_reference(self, generation: int, key: Tuple[str, str]) -> None:
        collection, doc_id = key
        try:
            if collection == "groups":
                group = await self._group_repo.get(doc_id)
                data = group.data if group else None
            else:
                data = await self._user_repo.get_profile(doc_id)
        except StoreError as exc:
            logger.warning("Could not load %s/%s: %s", collection, doc_id, exc)
            if generation == self._generation:
                # retried on the next snapshot
                self._references.pop(key, None)
            return
        if generation != self._generation or data is None:
            return
        self._references[key] = data
        if self._view is not None:
            self._publish_list()

    # -- messages ----------------------------------------------------------

    def _ensure_message_subscription(self, conversation_id: str, protect: Iterable[str] = ()) -> LiveSubscription:
        sub = self._message_subs.get(conversation_id)
        if sub is not None:
            return sub
        generation = self._generation
        sub = LiveSubscription(
            self._store,
            self._message_repo.recent_query(conversation_id, self._settings.MESSAGE_WINDOW),
            on_snapshot=lambda docs: self._on_messages(generation, conversation_id, docs),
            on_error=lambda err: self._on_messages_error(generation, conversation_id, err),
            max_retries=self._settings.SUBSCRIPTION_MAX_RETRIES,
            retry_delay=self._settings.SUBSCRIPTION_RETRY_DELAY_SECONDS,
            name=f"messages:{conversation_id}",
        )
        self._message_subs[conversation_id] = sub
        sub.start()
        self._evict({conversation_id, *protect})
        return sub

    def _evict(self, protect: Set[str]) -> None:
        cap = self._settings.MAX_MESSAGE_SUBSCRIPTIONS
        protect = protect | set(self._message_feeds)
        while len(self._message_subs) > cap:
            victim = next((cid for cid in self._message_subs if cid not in protect), None)
            if victim is None:
                victim = next(iter(self._message_subs))
            logger.info("Evicting message subscription for %s", victim)
            self._drop_message_subscription(victim)

    def _drop_message_subscription(self, conversation_id: str) -> None:
        sub = self._message_subs.pop(conversation_id, None)
        if sub is not None:
            sub.cancel()
        self._messages.pop(conversation_id, None)
        for feed in self._message_feeds.pop(conversation_id, []):
            feed.close()

    def _on_messages(self, generation: int, conversation_id: str, documents: List[Document]) -> None:
        if generation != self._generation:
            return
        self._messages[conversation_id] = documents
        pending = self._pending.get(conversation_id)
        if pending:
            for doc in documents:
                pending.pop(doc.id, None)
        self._publish_messages(conversation_id)

    def _on_messages_error(self, generation: int, conversation_id: str, error: SubscriptionError) -> None:
        if generation != self._generation:
            return
        self._message_subs.pop(conversation_id, None)
        self._messages.pop(conversation_id, None)
        for feed in self._message_feeds.pop(conversation_id, []):
            feed.fail(error)

    def _publish_messages(self, conversation_id: str) -> None:
        feeds = self._message_feeds.get(conversation_id)
        if not feeds:
            return
        view = self._message_view(conversation_id)
        for feed in list(feeds):
            feed.push(view)

    def _to_message_view(self, doc: Document) -> MessageView:
        read_by = doc.get("read_by")
        if read_by is not None:
            read = bool(read_by.get(self._identity or "", False))
        else:
            read = bool(doc.get("read", False))
        return MessageView(
            id=doc.id,
            sender_id=doc.get("sender_id"),
            text=doc.get("text"),
            image_ref=doc.get("image_ref"),
            timestamp=doc.get("timestamp") or 0,
            read=read,
        )

    def _message_view(self, conversation_id: str) -> MessageListView:
        views = [self._to_message_view(d) for d in self._messages.get(conversation_id, [])]
        pending = list(self._pending.get(conversation_id, {}).values())
        if pending:
            # stable sort keeps pending entries ahead of equal timestamps
            views = sorted(pending + views, key=lambda m: m.timestamp, reverse=True)
        return MessageListView(conversation_id=conversation_id, messages=tuple(views))

    async def _participating_conversation(
        self, conversation_id: str, identity: str, error_cls=WriteError
    ) -> Document:
        generation = self._generation
        conversation = await self._load_conversation(conversation_id, error_cls)
        if generation != self._generation:
            raise SessionError(f"Session changed while {identity} was loading {conversation_id}")
        if identity not in (conversation.get("participants") or []):
            raise PermissionDeniedError(f"{identity} is not a participant of {conversation_id}")
        return conversation

    async def messages(self, conversation_id: str) -> MessageListView:
        """Current message window of one conversation, newest first."""
        identity = self._session_identity()
        await self._participating_conversation(conversation_id, identity)
        sub = self._ensure_message_subscription(conversation_id)
        self._message_subs.move_to_end(conversation_id)
        await sub.wait_ready()
        return self._message_view(conversation_id)

    async def watch_messages(self, conversation_id: str) -> MessageFeed:
        identity = self._session_identity()
        await self._participating_conversation(conversation_id, identity)
        feed: MessageFeed = SnapshotFeed(on_close=lambda f: self._detach_message_feed(conversation_id, f))
        self._message_feeds.setdefault(conversation_id, []).append(feed)
        self._ensure_message_subscription(conversation_id)
        self._message_subs.move_to_end(conversation_id)
        if conversation_id in self._messages:
            feed.push(self._message_view(conversation_id))
        return feed

    def _detach_message_feed(self, conversation_id: str, feed: SnapshotFeed) -> None:
        feeds = self._message_feeds.get(conversation_id)
        if feeds and feed in feeds:
            feeds.remove(feed)
            if not feeds:
                del self._message_feeds[conversation_id]

    def _session_identity(self) -> str:
        if self._identity is None:
            raise SessionError("No signed-in identity")
        return self._identity

    # -- commands ----------------------------------------------------------

    def _cached_conversation(self, conversation_id: str) -> Optional[Document]:
        return next((d for d in self._conversations if d.id == conversation_id), None)

    async def _load_conversation(self, conversation_id: str, error_cls=WriteError) -> Document:
        conversation = self._cached_conversation(conversation_id)
        if conversation is not None:
            return conversation
        try:
            conversation = await self._conversation_repo.get(conversation_id)
        except StoreError as exc:
            raise error_cls(f"Could not read conversation {conversation_id}: {exc.message}") from exc
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    async def send_message(
        self,
        conversation_id: str,
        identity: str,
        text: Optional[str] = None,
        image_ref: Optional[str] = None,
    ) -> str:
        """
        Append a message in one atomic batch.

        The batch inserts the message, replaces ``last_message``, bumps
        ``updated_at``, resets the sender's unread counter and increments
        every other participant's. Nothing is retried; on rejection the
        optimistic entry is discarded and SendError is raised.
        """
        self._require(identity)
        if not (text and text.strip()) and not image_ref:
            raise ValueError("Message must carry text or an image")
        generation = self._generation
        conversation = await self._participating_conversation(conversation_id, identity, SendError)
        participants = list(conversation.get("participants") or [])

        now = self._clock()
        message_id = self._message_repo.new_id(conversation_id)
        is_group = bool(conversation.get("group_id"))
        message = self._message_repo.build_message(
            identity, text, image_ref, now, group_participants=participants if is_group else None
        )
        last_message: LastMessageDocument = {
            "id": message_id,
            "sender_id": identity,
            "text": text,
            "image_ref": image_ref,
            "timestamp": now,
        }
        operations = [
            self._message_repo.insert_operation(conversation_id, message_id, message),
            self._conversation_repo.new_message_operation(conversation, identity, last_message, now),
        ]

        self._pending.setdefault(conversation_id, {})[message_id] = MessageView(
            id=message_id,
            sender_id=identity,
            text=text,
            image_ref=image_ref,
            timestamp=now,
            read=False,
            pending=True,
        )
        self._publish_messages(conversation_id)

        try:
            await self._store.atomic_write(operations)
        except StoreError as exc:
            if generation == self._generation:
                self._pending.get(conversation_id, {}).pop(message_id, None)
                self._publish_messages(conversation_id)
            logger.warning("Send to %s rejected: %s", conversation_id, exc.message)
            raise SendError(f"Message could not be sent: {exc.message}") from exc

        if generation == self._generation and conversation_id not in self._message_subs:
            self._pending.get(conversation_id, {}).pop(message_id, None)

        for participant in participants:
            if participant != identity:
                await publish_event(
                    self._bus,
                    participant,
                    {
                        "type": "message",
                        "conversation_id": conversation_id,
                        "message_id": message_id,
                        "from": identity,
                        "text": (text or "")[:100],
                    },
                )
        return message_id

    async def mark_read(self, conversation_id: str, identity: str) -> None:
        """Reset the identity's unread counter; repeated calls are harmless."""
        self._require(identity)
        conversation = await self._participating_conversation(conversation_id, identity)
        operations = [self._conversation_repo.reset_unread_operation(conversation_id, identity)]
        if conversation.get("group_id"):
            window = self._messages.get(conversation_id)
            if window is None:
                try:
                    window = await self._store.query(
                        self._message_repo.recent_query(conversation_id, self._settings.MESSAGE_WINDOW)
                    )
                except StoreError as exc:
                    raise WriteError(f"Could not read messages of {conversation_id}: {exc.message}") from exc
            unread = [d.id for d in window if not (d.get("read_by") or {}).get(identity, False)]
            operations.extend(self._message_repo.mark_read_by_operations(conversation_id, unread, identity))
        try:
            await self._store.atomic_write(operations)
        except StoreError as exc:
            logger.warning("Mark-read on %s rejected: %s", conversation_id, exc.message)
            raise WriteError(f"Could not mark {conversation_id} as read: {exc.message}") from exc

    async def create_conversation(self, self_identity: str, other_identity: str) -> str:
        """
        Lookup-or-create a 1:1 conversation.

        The lookup only consults the cached conversation list; two calls that
        both miss it before either snapshot arrives create two conversations.
        """
        self._require(self_identity)
        if not other_identity or other_identity == self_identity:
            raise ValueError("A conversation needs another participant")
        existing = ConversationRepository.find_one_to_one(self._conversations, self_identity, other_identity)
        if existing is not None:
            return existing.id

        conversation_id = self._conversation_repo.new_id()
        operation = self._conversation_repo.create_operation(
            conversation_id, [self_identity, other_identity], self._clock()
        )
        try:
            await self._store.atomic_write([operation])
        except StoreError as exc:
            logger.warning("Creating conversation with %s rejected: %s", other_identity, exc.message)
            raise CreateError(f"Conversation could not be created: {exc.message}") from exc
        logger.info("Created conversation %s between %s and %s", conversation_id, self_identity, other_identity)
        return conversation_id
