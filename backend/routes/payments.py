from fastapi import APIRouter
import logging

from models import VerificationResult, VerifyPaymentRequest
from services.errors import ServiceError
from services.payment_verifier import payment_verifier

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/verify", response_model=VerificationResult)
async def verify_payment(request: VerifyPaymentRequest):
    """Confirm a checkout (or, without one, an existing session or Pro subscription).

    Safe to call repeatedly: a completed session returns its stored results
    with verified=false and is never reactivated.
    """
    try:
        return await payment_verifier.verify(
            email=request.email,
            session_type=request.session_type,
            checkout_session_id=request.checkout_session_id,
        )
    except ServiceError as e:
        raise e.to_http()
