from typing import Iterable, List, Optional

from chatsync.database.base import (
    DESCENDING,
    DocumentStore,
    QueryDescriptor,
    WriteKind,
    WriteOperation,
    subcollection,
)
from chatsync.models.message import MessageDocument


class MessageRepository:

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    @staticmethod
    def collection_for(conversation_id: str) -> str:
        return subcollection("chats", conversation_id, "messages")

    def recent_query(self, conversation_id: str, limit: int = 50) -> QueryDescriptor:
        return QueryDescriptor(
            collection=self.collection_for(conversation_id),
            order_by=(("timestamp", DESCENDING),),
            limit=limit,
        )

    def new_id(self, conversation_id: str) -> str:
        return self._store.new_document_id(self.collection_for(conversation_id))

    def build_message(
        self,
        sender_id: str,
        text: Optional[str],
        image_ref: Optional[str],
        now: int,
        group_participants: Optional[List[str]] = None,
    ) -> MessageDocument:
        doc: MessageDocument = {
            "sender_id": sender_id,
            "text": text,
            "image_ref": image_ref,
            "timestamp": now,
            "read": False,
        }
        if group_participants is not None:
            doc["read_by"] = {p: p == sender_id for p in group_participants}
        return doc

    def insert_operation(self, conversation_id: str, message_id: str, message: MessageDocument) -> WriteOperation:
        return WriteOperation(self.collection_for(conversation_id), message_id, WriteKind.SET, message)

    def mark_read_by_operations(
        self, conversation_id: str, message_ids: Iterable[str], identity: str
    ) -> List[WriteOperation]:
        collection = self.collection_for(conversation_id)
        return [
            WriteOperation(collection, mid, WriteKind.UPDATE, {f"read_by.{identity}": True})
            for mid in message_ids
        ]
