"""Checkout routes: hosted checkout creation, billing portal, discount validation.

POST /api/checkout/create   - pending session + Stripe checkout URL
POST /api/checkout/portal   - Stripe billing portal for Pro subscribers
POST /api/discounts/validate - read-only discount code check
"""
from fastapi import APIRouter
import logging

from models import CheckoutResponse, CreateCheckoutRequest, DiscountValidationResponse, PortalRequest, ValidateDiscountRequest
from services.discount_service import discount_service
from services.errors import ServiceError
from services.stripe_service import stripe_service

logger = logging.getLogger(__name__)
router = APIRouter(tags=["checkout"])


@router.post("/api/checkout/create", response_model=CheckoutResponse)
async def create_checkout(request: CreateCheckoutRequest):
    try:
        return await stripe_service.create_checkout(
            product_type=request.session_type,
            email=request.email,
            origin=request.origin,
            discount_code_id=request.discount_code_id,
        )
    except ServiceError as e:
        logger.warning(f"Checkout failed for {request.email} code={e.error_code}: {e.message}")
        raise e.to_http()


@router.post("/api/checkout/portal")
async def create_portal_session(request: PortalRequest):
    try:
        url = await stripe_service.create_portal_session(request.email, request.origin)
    except ServiceError as e:
        raise e.to_http()
    return {"url": url}


@router.post("/api/discounts/validate", response_model=DiscountValidationResponse)
async def validate_discount(request: ValidateDiscountRequest):
    """Always 200; an invalid code is reported in the body with its error_code."""
    return await discount_service.validate(request.code, request.email, request.session_type)
