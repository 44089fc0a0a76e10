from fastapi import Depends, Header, Request

from chatsync.core.errors import SessionError
from chatsync.services.registry import ChatSession, SessionRegistry


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


async def get_current_identity(x_user_id: str | None = Header(default=None)) -> str:
    # authentication is done upstream; the gateway forwards the verified id
    if not x_user_id:
        raise SessionError("Missing X-User-Id header")
    return x_user_id


def get_chat_session(
    identity: str = Depends(get_current_identity),
    registry: SessionRegistry = Depends(get_registry),
) -> ChatSession:
    return registry.get(identity)
