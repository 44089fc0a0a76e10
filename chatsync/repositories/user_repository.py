from typing import Optional

from chatsync.database.base import DocumentStore
from chatsync.models.user import UserDocument


class UserRepository:

    collection = "users"

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def get_profile(self, user_id: str) -> Optional[UserDocument]:
        doc = await self._store.get_document(self.collection, user_id)
        return doc.data if doc else None
