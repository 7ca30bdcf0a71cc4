from fastapi import APIRouter, Query
import logging

from services.errors import ServiceError
from services.voice_session import get_conversation_credentials

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/voice", tags=["voice"])


@router.get("/conversation-token")
async def conversation_token(mode: str = Query("websocket", pattern="^(websocket|webrtc)$")):
    """Short-lived voice agent credentials: a signed websocket URL or a WebRTC token."""
    try:
        return await get_conversation_credentials(mode)
    except ServiceError as e:
        raise e.to_http()
