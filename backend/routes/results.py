from fastapi import APIRouter
import logging

from models import SendResultsRequest
from services.errors import ServiceError
from services.results_service import results_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/results", tags=["results"])


@router.post("/send")
async def send_results(request: SendResultsRequest):
    """Compose, store and email the session report; a completed session returns its stored report."""
    try:
        return await results_service.send_results(request.session_id, request.email)
    except ServiceError as e:
        raise e.to_http()
