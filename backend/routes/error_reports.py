from fastapi import APIRouter
import logging

from models import ErrorReportRequest
from services.error_resolution import error_resolution_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/errors", tags=["errors"])


@router.post("/report")
async def report_error(request: ErrorReportRequest):
    """Client-side error report; the resolution attempt and emails happen inline."""
    error_id, resolution = await error_resolution_service.report_error(
        error_type=request.error_type.value,
        error_code=request.error_code.value if request.error_code else None,
        error_message=request.error_message,
        user_email=request.user_email,
        session_id=request.session_id,
        context=request.context,
        background=False,
    )
    return {"ok": True, "error_id": error_id, "resolution": resolution}
