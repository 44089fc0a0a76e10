from typing import List, Optional

from chatsync.database.base import (
    Document,
    DocumentStore,
    QueryDescriptor,
    WriteKind,
    WriteOperation,
    subcollection,
)
from chatsync.models.group import GroupDocument, GroupMemberDocument, GroupRole


class GroupRepository:

    collection = "groups"

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    @staticmethod
    def members_collection(group_id: str) -> str:
        return subcollection("groups", group_id, "members")

    def new_id(self) -> str:
        return self._store.new_document_id(self.collection)

    async def get(self, group_id: str) -> Optional[Document]:
        return await self._store.get_document(self.collection, group_id)

    async def get_member(self, group_id: str, identity: str) -> Optional[Document]:
        return await self._store.get_document(self.members_collection(group_id), identity)

    async def list_members(self, group_id: str) -> List[Document]:
        return await self._store.query(QueryDescriptor(collection=self.members_collection(group_id)))

    def create_operation(
        self,
        group_id: str,
        chat_id: str,
        created_by: str,
        name: str,
        description: str,
        image_ref: Optional[str],
        now: int,
    ) -> WriteOperation:
        payload: GroupDocument = {
            "name": name,
            "description": description,
            "image_ref": image_ref,
            "created_by": created_by,
            "created_at": now,
            "updated_at": now,
            "chat_id": chat_id,
        }
        return WriteOperation(self.collection, group_id, WriteKind.SET, payload)

    def member_operation(self, group_id: str, identity: str, role: GroupRole, now: int) -> WriteOperation:
        member: GroupMemberDocument = {"identity": identity, "role": role, "joined_at": now}
        return WriteOperation(self.members_collection(group_id), identity, WriteKind.SET, dict(member))

    def touch_operation(self, group_id: str, now: int) -> WriteOperation:
        return WriteOperation(self.collection, group_id, WriteKind.UPDATE, {"updated_at": now})
