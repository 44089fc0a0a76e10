from typing import Literal, Optional, TypedDict


GroupRole = Literal["admin", "member"]


class GroupDocument(TypedDict, total=False):
    name: str
    description: str
    image_ref: Optional[str]
    created_by: str
    created_at: int
    updated_at: int
    chat_id: str


class GroupMemberDocument(TypedDict, total=False):
    identity: str
    role: GroupRole
    joined_at: int
