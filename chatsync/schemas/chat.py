from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


class View(BaseModel):

    model_config = ConfigDict(frozen=True)


class ParticipantSummary(View):

    id: str
    display_name: Optional[str] = None
    photo_url: Optional[str] = None


class GroupSummary(View):

    id: str
    name: Optional[str] = None
    member_count: int


class MessagePreview(View):

    sender_id: str
    text: Optional[str] = None
    image_ref: Optional[str] = None
    timestamp: int


class ConversationItem(View):

    id: str
    other_participant: Optional[ParticipantSummary] = None
    group: Optional[GroupSummary] = None
    last_message: Optional[MessagePreview] = None
    unread_count: int = 0
    updated_at: int


class ConversationListView(View):

    identity: str
    conversations: Tuple[ConversationItem, ...] = ()

    @property
    def total_unread(self) -> int:
        return sum(c.unread_count for c in self.conversations)


class MessageView(View):

    id: str
    sender_id: str
    text: Optional[str] = None
    image_ref: Optional[str] = None
    timestamp: int
    read: bool = False
    pending: bool = False


class MessageListView(View):

    conversation_id: str
    messages: Tuple[MessageView, ...] = ()


class SendMessageRequest(BaseModel):

    text: Optional[str] = None
    image_ref: Optional[str] = None

    @model_validator(mode="after")
    def require_content(self) -> "SendMessageRequest":
        if not (self.text and self.text.strip()) and not self.image_ref:
            raise ValueError("Message must carry text or an image")
        return self


class SendMessageResponse(BaseModel):

    message_id: str
    conversation_id: str


class CreateConversationRequest(BaseModel):

    other_id: str = Field(min_length=1)


class CreateConversationResponse(BaseModel):

    conversation_id: str


class CreateGroupRequest(BaseModel):

    name: str = Field(min_length=1)
    member_ids: List[str] = Field(default_factory=list)
    description: str = ""
    image_ref: Optional[str] = None


class CreateGroupResponse(BaseModel):

    group_id: str
    conversation_id: str


class AddMembersRequest(BaseModel):

    member_ids: List[str] = Field(min_length=1)


class GroupMember(BaseModel):

    identity: str
    role: str
