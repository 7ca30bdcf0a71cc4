from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token
from models import UserRole

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate the Bearer JWT; None when absent or invalid."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ", 1)[1]
    return decode_access_token(token)

async def require_auth(request: Request) -> dict:
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

async def require_admin(request: Request) -> dict:
    user = await require_auth(request)
    if user.get("role") != UserRole.ROLE_ADMIN.value:
        logger.warning(f"Admin route denied for {user.get('email')} path={request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )
    return user
