"""Pro subscription routes.

GET  /api/pro/status?email=     - Stripe-synced Pro status and remaining sessions
POST /api/pro/check-limit       - can this session type start (no side effects)
POST /api/pro/start             - atomically consume one capped session (and activate a reserved one)
POST /api/pro/increment         - unconditional usage increment (admin only)
GET  /api/pro/remaining?email=  - remaining sessions for the current window
"""
from fastapi import APIRouter, Depends, HTTPException, Query, status
import logging

from middleware import require_admin
from models import ProSessionRequest
from services.entitlement_service import SessionLimitResult, entitlement_service
from services.errors import ServiceError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/pro", tags=["pro"])


def _require_type(request: ProSessionRequest):
    if not request.session_type:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "invalid_input", "message": "session_type is required"},
        )
    return request.session_type


@router.get("/status")
async def pro_status(email: str = Query(..., min_length=3)):
    try:
        return await entitlement_service.check_pro_status(email)
    except ServiceError as e:
        raise e.to_http()


@router.post("/check-limit", response_model=SessionLimitResult)
async def check_limit(request: ProSessionRequest):
    return await entitlement_service.check_session_limit(request.email, _require_type(request))


@router.post("/start", response_model=SessionLimitResult)
async def start_session(request: ProSessionRequest):
    session_type = _require_type(request)
    if not request.session_id:
        return await entitlement_service.start_session(request.email, session_type)
    try:
        return await entitlement_service.start_pro_session(request.email, session_type, request.session_id)
    except ServiceError as e:
        raise e.to_http()


@router.post("/increment")
async def increment_session(request: ProSessionRequest, admin: dict = Depends(require_admin)):
    logger.info(f"Manual Pro usage increment for {request.email} by {admin.get('email')}")
    return await entitlement_service.increment_session_count(request.email, _require_type(request))


@router.get("/remaining")
async def remaining(email: str = Query(..., min_length=3)):
    return await entitlement_service.get_remaining_sessions(email)
