from fastapi import APIRouter
import logging

from models import CoachTurnRequest, CoachTurnResponse
from services.coach_service import coach_service
from services.errors import ServiceError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/coach", tags=["coach"])


@router.post("/turn", response_model=CoachTurnResponse)
async def coach_turn(request: CoachTurnRequest):
    """One conversational turn with the AI coach."""
    try:
        return await coach_service.send_turn(request)
    except ServiceError as e:
        raise e.to_http()
