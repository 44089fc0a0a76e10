import logging
from typing import Callable, List, Optional, Tuple

from chatsync.core.errors import (
    CreateError,
    NotFoundError,
    PermissionDeniedError,
    SessionError,
    StoreError,
    WriteError,
)
from chatsync.database.base import DocumentStore
from chatsync.repositories.conversation_repository import ConversationRepository
from chatsync.repositories.group_repository import GroupRepository
from chatsync.schemas.chat import GroupMember
from chatsync.services.session import SessionProvider
from chatsync.utils.clock import now_ms


logger = logging.getLogger(__name__)


class GroupService:

    def __init__(
        self,
        store: DocumentStore,
        session: SessionProvider,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._session = session
        self._clock = clock
        self._group_repo = GroupRepository(store)
        self._conversation_repo = ConversationRepository(store)

    def _require(self, identity: str) -> None:
        current = self._session.require_identity()
        if identity != current:
            raise SessionError(f"{identity} is not the signed-in identity", status_code=403)

    async def create_group(
        self,
        creator: str,
        name: str,
        member_ids: List[str],
        description: str = "",
        image_ref: Optional[str] = None,
    ) -> Tuple[str, str]:
        """
        Create a group, its member entries and its conversation in one batch.

        The creator joins as admin, everyone else as member. Returns the group
        id and the id of the group's conversation.
        """
        self._require(creator)
        if not name or not name.strip():
            raise ValueError("Group name cannot be empty")
        members = [creator] + [m for m in dict.fromkeys(member_ids) if m and m != creator]
        if len(members) < 2:
            raise ValueError("A group needs at least one other member")

        now = self._clock()
        group_id = self._group_repo.new_id()
        conversation_id = self._conversation_repo.new_id()
        operations = [
            self._group_repo.create_operation(
                group_id, conversation_id, creator, name.strip(), description.strip(), image_ref, now
            )
        ]
        for member in members:
            role = "admin" if member == creator else "member"
            operations.append(self._group_repo.member_operation(group_id, member, role, now))
        operations.append(
            self._conversation_repo.create_operation(conversation_id, members, now, group_id=group_id)
        )
        try:
            await self._store.atomic_write(operations)
        except StoreError as exc:
            logger.warning("Creating group %r rejected: %s", name, exc.message)
            raise CreateError(f"Group could not be created: {exc.message}") from exc
        logger.info("Created group %s with %s members", group_id, len(members))
        return group_id, conversation_id

    async def add_members(self, group_id: str, identity: str, member_ids: List[str]) -> List[str]:
        """
        Add member entries to a group; returns the identities actually added.

        The group conversation's participant list is immutable and is not
        extended here.
        """
        self._require(identity)
        group = await self._group_repo.get(group_id)
        if group is None:
            raise NotFoundError(f"Group {group_id} not found")
        caller = await self._group_repo.get_member(group_id, identity)
        if caller is None or caller.get("role") != "admin":
            raise PermissionDeniedError(f"{identity} is not an admin of group {group_id}")
        existing = {m.id for m in await self._group_repo.list_members(group_id)}

        added = [m for m in dict.fromkeys(member_ids) if m and m not in existing]
        if not added:
            return []
        now = self._clock()
        operations = [self._group_repo.member_operation(group_id, m, "member", now) for m in added]
        operations.append(self._group_repo.touch_operation(group_id, now))
        try:
            await self._store.atomic_write(operations)
        except StoreError as exc:
            logger.warning("Adding members to %s rejected: %s", group_id, exc.message)
            raise WriteError(f"Members could not be added: {exc.message}") from exc
        return added

    async def members(self, group_id: str, identity: str) -> List[GroupMember]:
        self._require(identity)
        if await self._group_repo.get_member(group_id, identity) is None:
            raise PermissionDeniedError(f"{identity} is not a member of group {group_id}")
        docs = await self._group_repo.list_members(group_id)
        return [GroupMember(identity=d.get("identity") or d.id, role=d.get("role") or "member") for d in docs]
