from typing import Dict, List, Optional, TypedDict


class LastMessageDocument(TypedDict, total=False):
    id: str
    sender_id: str
    text: Optional[str]
    image_ref: Optional[str]
    timestamp: int


class ConversationDocument(TypedDict, total=False):
    participants: List[str]
    last_message: Optional[LastMessageDocument]
    # per-user unread counters (user_id -> count)
    unread_count: Dict[str, int]
    updated_at: int
    group_id: Optional[str]
