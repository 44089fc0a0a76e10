import logging
from dataclasses import dataclass
from typing import Dict, Optional

from chatsync.core.config import Settings
from chatsync.database.base import DocumentStore
from chatsync.services.chat_service import ConversationSynchronizer
from chatsync.services.group_service import GroupService
from chatsync.services.session import SessionProvider


logger = logging.getLogger(__name__)


@dataclass
class ChatSession:
    identity: str
    session: SessionProvider
    synchronizer: ConversationSynchronizer
    groups: GroupService


class SessionRegistry:
    """One session and synchronizer per identity served by the bridge."""

    def __init__(self, store: DocumentStore, bus=None, settings: Optional[Settings] = None) -> None:
        self._store = store
        self._bus = bus
        self._settings = settings
        self._sessions: Dict[str, ChatSession] = {}

    def get(self, identity: str) -> ChatSession:
        chat = self._sessions.get(identity)
        if chat is None:
            session = SessionProvider()
            synchronizer = ConversationSynchronizer(self._store, session, bus=self._bus, settings=self._settings)
            session.sign_in(identity)
            chat = ChatSession(identity, session, synchronizer, GroupService(self._store, session))
            self._sessions[identity] = chat
        return chat

    def end(self, identity: str) -> bool:
        chat = self._sessions.pop(identity, None)
        if chat is None:
            return False
        chat.session.sign_out()
        chat.synchronizer.close()
        return True

    def close_all(self) -> None:
        for identity in list(self._sessions):
            self.end(identity)
