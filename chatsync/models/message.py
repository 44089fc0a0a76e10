from typing import Dict, Optional, TypedDict


class MessageDocument(TypedDict, total=False):
    sender_id: str
    text: Optional[str]
    image_ref: Optional[str]
    timestamp: int
    read: bool
    # group conversations only (user_id -> read)
    read_by: Dict[str, bool]
