from fastapi import APIRouter, Depends
from middleware import require_auth
from models import AdminLoginRequest, LoginLinkRequest, TokenExchangeRequest, TokenResponse
from services.errors import ServiceError
from services.identity_service import identity_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/login-link")
async def request_login_link(request: LoginLinkRequest):
    """Email a one-time sign-in link (valid 60 minutes, 5 requests per 15 minutes)."""
    try:
        return await identity_service.request_login_link(request.email, request.redirect_path)
    except ServiceError as e:
        raise e.to_http()


@router.post("/exchange")
async def exchange_token(request: TokenExchangeRequest):
    """Trade a sign-in link token for a JWT. Each token works once."""
    try:
        return await identity_service.exchange_token(request.token)
    except ServiceError as e:
        raise e.to_http()


@router.post("/admin/login", response_model=TokenResponse)
async def admin_login(credentials: AdminLoginRequest):
    try:
        return await identity_service.admin_login(credentials.email, credentials.password)
    except ServiceError as e:
        raise e.to_http()


@router.get("/me")
async def me(claims: dict = Depends(require_auth)):
    try:
        return await identity_service.me(claims)
    except ServiceError as e:
        raise e.to_http()
