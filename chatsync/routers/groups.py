from typing import List

from fastapi import APIRouter, Depends

from chatsync.schemas.chat import AddMembersRequest, CreateGroupRequest, CreateGroupResponse, GroupMember
from chatsync.services.registry import ChatSession
from chatsync.utils.dependencies import get_chat_session


router = APIRouter(prefix="/groups", tags=["groups"])


@router.post("", response_model=CreateGroupResponse, status_code=201)
async def create_group(body: CreateGroupRequest, chat: ChatSession = Depends(get_chat_session)):
    group_id, conversation_id = await chat.groups.create_group(
        chat.identity, body.name, body.member_ids, description=body.description, image_ref=body.image_ref
    )
    return CreateGroupResponse(group_id=group_id, conversation_id=conversation_id)


@router.post("/{group_id}/members")
async def add_members(group_id: str, body: AddMembersRequest, chat: ChatSession = Depends(get_chat_session)):
    added = await chat.groups.add_members(group_id, chat.identity, body.member_ids)
    return {"added": added}


@router.get("/{group_id}/members", response_model=List[GroupMember])
async def list_members(group_id: str, chat: ChatSession = Depends(get_chat_session)):
    return await chat.groups.members(group_id, chat.identity)
