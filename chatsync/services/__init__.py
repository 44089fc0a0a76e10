from .chat_service import ConversationSynchronizer
from .group_service import GroupService
from .session import SessionProvider

__all__ = ["ConversationSynchronizer", "GroupService", "SessionProvider"]
