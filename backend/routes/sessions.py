"""Session routes. Every call is scoped by the session's email (query param)."""
from fastapi import APIRouter, Query
import logging

from models import AppendTurnRequest, SaveDocumentsRequest, SessionEventRequest
from services.errors import ServiceError
from services.session_service import session_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/sessions", tags=["sessions"])

EmailQuery = Query(..., min_length=3)


async def _run(call):
    try:
        return await call
    except ServiceError as e:
        raise e.to_http()


@router.get("/paused")
async def paused_sessions(email: str = EmailQuery):
    return {"sessions": await session_service.get_paused_sessions(email)}


@router.get("/{session_id}")
async def get_session(session_id: str, email: str = EmailQuery):
    return await _run(session_service.get_session(session_id, email))


@router.put("/{session_id}/documents")
async def save_documents(session_id: str, request: SaveDocumentsRequest, email: str = EmailQuery):
    return await _run(session_service.save_documents(session_id, email, request))


@router.get("/{session_id}/history")
async def get_history(session_id: str, email: str = EmailQuery):
    return await _run(session_service.get_history(session_id, email))


@router.post("/{session_id}/turns")
async def append_turn(session_id: str, request: AppendTurnRequest, email: str = EmailQuery):
    return await _run(session_service.append_turn(session_id, email, request))


@router.post("/{session_id}/events")
async def log_event(session_id: str, request: SessionEventRequest, email: str = EmailQuery):
    return await _run(session_service.log_event(session_id, email, request))


@router.post("/{session_id}/pause")
async def pause_session(session_id: str, email: str = EmailQuery):
    return await _run(session_service.pause_session(session_id, email))


@router.post("/{session_id}/resume")
async def resume_session(session_id: str, email: str = EmailQuery):
    return await _run(session_service.resume_session(session_id, email))


@router.post("/{session_id}/abandon")
async def abandon_session(session_id: str, email: str = EmailQuery):
    return await _run(session_service.abandon_session(session_id, email))
