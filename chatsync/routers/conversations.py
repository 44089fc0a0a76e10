import asyncio
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from chatsync.core.errors import SubscriptionError
from chatsync.schemas.chat import (
    ConversationListView,
    CreateConversationRequest,
    CreateConversationResponse,
    MessageListView,
    SendMessageRequest,
    SendMessageResponse,
)
from chatsync.services.registry import ChatSession
from chatsync.utils.dependencies import get_chat_session


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations", tags=["chat"])


@router.get("", response_model=ConversationListView)
async def list_conversations(chat: ChatSession = Depends(get_chat_session)):
    feed = chat.synchronizer.observe(chat.identity)
    try:
        return await anext(feed)
    finally:
        feed.close()


@router.post("", response_model=CreateConversationResponse, status_code=201)
async def create_conversation(body: CreateConversationRequest, chat: ChatSession = Depends(get_chat_session)):
    conversation_id = await chat.synchronizer.create_conversation(chat.identity, body.other_id)
    return CreateConversationResponse(conversation_id=conversation_id)


@router.get("/{conversation_id}/messages", response_model=MessageListView)
async def list_messages(conversation_id: str, chat: ChatSession = Depends(get_chat_session)):
    return await chat.synchronizer.messages(conversation_id)


@router.post("/{conversation_id}/messages", response_model=SendMessageResponse, status_code=201)
async def send_message(conversation_id: str, body: SendMessageRequest, chat: ChatSession = Depends(get_chat_session)):
    message_id = await chat.synchronizer.send_message(
        conversation_id, chat.identity, text=body.text, image_ref=body.image_ref
    )
    return SendMessageResponse(message_id=message_id, conversation_id=conversation_id)


@router.post("/{conversation_id}/read")
async def mark_read(conversation_id: str, chat: ChatSession = Depends(get_chat_session)):
    await chat.synchronizer.mark_read(conversation_id, chat.identity)
    return {"conversation_id": conversation_id, "unread_count": 0}


@router.websocket("/ws")
async def conversations_socket(websocket: WebSocket):
    identity = websocket.query_params.get("user_id")
    if not identity:
        await websocket.close(code=4401)
        return
    chat = websocket.app.state.registry.get(identity)
    await websocket.accept()
    feed = chat.synchronizer.observe(identity)

    async def pump() -> None:
        try:
            async for view in feed:
                await websocket.send_text(view.model_dump_json())
            await websocket.close(code=1000)
        except SubscriptionError as exc:
            logger.error("Conversation stream for %s failed: %s", identity, exc.message)
            await websocket.close(code=1011)

    pump_task = asyncio.create_task(pump())
    try:
        while True:
            # client messages are ignored; receiving detects the disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        feed.close()
        pump_task.cancel()
