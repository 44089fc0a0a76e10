from fastapi import APIRouter, Depends, Response

from chatsync.services.registry import SessionRegistry
from chatsync.utils.dependencies import get_current_identity, get_registry


router = APIRouter(prefix="/session", tags=["session"])


@router.delete("", status_code=204)
async def sign_out(identity: str = Depends(get_current_identity), registry: SessionRegistry = Depends(get_registry)):
    registry.end(identity)
    return Response(status_code=204)
