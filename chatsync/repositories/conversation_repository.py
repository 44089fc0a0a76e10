from typing import Any, Dict, Iterable, List, Optional

from chatsync.database.base import (
    DESCENDING,
    Document,
    DocumentStore,
    FieldFilter,
    Increment,
    QueryDescriptor,
    WriteKind,
    WriteOperation,
)
from chatsync.models.conversation import ConversationDocument, LastMessageDocument


def unread_for(conversation: Dict[str, Any], identity: str) -> int:
    """Unread counter of a participant; absent entries count as zero."""
    if identity not in conversation.get("participants", []):
        raise ValueError(f"{identity} is not a participant of this conversation")
    return int((conversation.get("unread_count") or {}).get(identity, 0))


class ConversationRepository:

    collection = "chats"

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def participant_query(self, identity: str) -> QueryDescriptor:
        return QueryDescriptor(
            collection=self.collection,
            filters=(FieldFilter("participants", "array_contains", identity),),
            order_by=(("updated_at", DESCENDING),),
        )

    async def get(self, conversation_id: str) -> Optional[Document]:
        return await self._store.get_document(self.collection, conversation_id)

    def new_id(self) -> str:
        return self._store.new_document_id(self.collection)

    def create_operation(
        self,
        conversation_id: str,
        participants: List[str],
        now: int,
        group_id: Optional[str] = None,
    ) -> WriteOperation:
        payload: ConversationDocument = {
            "participants": list(participants),
            "last_message": None,
            "unread_count": {p: 0 for p in participants},
            "updated_at": now,
        }
        if group_id:
            payload["group_id"] = group_id
        return WriteOperation(self.collection, conversation_id, WriteKind.SET, payload)

    def new_message_operation(
        self,
        conversation: Document,
        sender_id: str,
        last_message: LastMessageDocument,
        now: int,
    ) -> WriteOperation:
        payload: Dict[str, Any] = {
            "last_message": last_message,
            "updated_at": now,
            f"unread_count.{sender_id}": 0,
        }
        for participant in conversation.get("participants", []):
            if participant != sender_id:
                payload[f"unread_count.{participant}"] = Increment(1)
        return WriteOperation(self.collection, conversation.id, WriteKind.UPDATE, payload)

    def reset_unread_operation(self, conversation_id: str, identity: str) -> WriteOperation:
        return WriteOperation(
            self.collection, conversation_id, WriteKind.UPDATE, {f"unread_count.{identity}": 0}
        )

    @staticmethod
    def find_one_to_one(conversations: Iterable[Document], user_a: str, user_b: str) -> Optional[Document]:
        wanted = {user_a, user_b}
        for convo in conversations:
            participants = convo.get("participants") or []
            if convo.get("group_id") or len(participants) != 2:
                continue
            if set(participants) == wanted:
                return convo
        return None
