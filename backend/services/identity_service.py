"""Identity: passwordless sign-in links for customers, password login for admins.

Sign-in links carry a one-time token that is stored only as a SHA-256 hash,
expires after 60 minutes and is consumed by a conditional update so a link
can never be exchanged twice. A successful exchange returns a JWT.
"""
import logging
import re
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import status

from auth import create_access_token, generate_secure_token, hash_token, verify_password
from database import database
from models import AuditAction, EmailTemplateAlias, TokenResponse, User, UserRole
from services.email_service import email_service
from services.email_templates import build_login_link_email
from services.errors import RateLimitError, ServiceError
from utils.audit import create_audit_log
from utils.dates import parse_dt, utc_now, utc_now_iso
from utils.public_app_url import login_url
from utils.rate_limiter import rate_limiter

logger = logging.getLogger(__name__)

LOGIN_LINK_TTL_MINUTES = 60
LOGIN_LINK_MAX_REQUESTS = 5
LOGIN_LINK_WINDOW_MINUTES = 15
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class InvalidEmailError(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "invalid_email"


class AuthenticationError(ServiceError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_code = "invalid_credentials"


def normalize_email(email: str) -> str:
    email = (email or "").strip().lower()
    if not EMAIL_PATTERN.match(email):
        raise InvalidEmailError("Please enter a valid email address")
    return email


def safe_redirect_path(path: Optional[str]) -> str:
    # Relative paths only; anything else could bounce the user off-site
    if not path or not path.startswith("/") or path.startswith("//"):
        return "/dashboard"
    return path


class IdentityService:

    async def ensure_account(self, email: str) -> Dict[str, Any]:
        db = database.get_db()
        user = User(email=email)
        await db.users.update_one(
            {"email": email},
            {"$setOnInsert": user.model_dump(mode="json")},
            upsert=True,
        )
        return await db.users.find_one({"email": email}, {"_id": 0, "password_hash": 0})

    async def issue_login_link(self, email: str, redirect_path: Optional[str] = None, source: str = "login") -> bool:
        """Store a fresh hashed token and email the link. Returns whether the email went out."""
        db = database.get_db()
        token = generate_secure_token()
        now = utc_now()
        await db.login_tokens.insert_one({
            "token_hash": hash_token(token),
            "email": email,
            "redirect_path": safe_redirect_path(redirect_path),
            "expires_at": (now + timedelta(minutes=LOGIN_LINK_TTL_MINUTES)).isoformat(),
            "used_at": None,
            "created_at": now.isoformat(),
        })

        content = build_login_link_email(login_url(token), LOGIN_LINK_TTL_MINUTES)
        message_log = await email_service.send_email(
            recipient=email,
            template_alias=EmailTemplateAlias.LOGIN_LINK,
            content=content,
        )
        sent = message_log.status == "sent"
        await create_audit_log(
            action=AuditAction.LOGIN_LINK_SENT,
            actor_role="SYSTEM" if source != "login" else "CUSTOMER",
            actor_id=email,
            resource_type="user",
            resource_id=email,
            metadata={"source": source, "email_sent": sent},
        )
        if not sent:
            logger.warning(f"Login link email failed for {email}: {message_log.error_message}")
        return sent

    async def request_login_link(self, email: str, redirect_path: Optional[str] = None) -> Dict[str, Any]:
        email = normalize_email(email)
        allowed, error = await rate_limiter.check_rate_limit(
            key=f"login_link:{email}",
            max_attempts=LOGIN_LINK_MAX_REQUESTS,
            window_minutes=LOGIN_LINK_WINDOW_MINUTES,
        )
        if not allowed:
            raise RateLimitError(error)

        await self.ensure_account(email)
        await self.issue_login_link(email, redirect_path)
        # Same answer whether or not delivery worked; callers cannot enumerate accounts
        return {"ok": True, "message": "If that address is valid, a sign-in link is on its way."}

    async def exchange_token(self, token: str) -> Dict[str, Any]:
        db = database.get_db()
        token_hash = hash_token(token or "")
        record = await db.login_tokens.find_one({"token_hash": token_hash}, {"_id": 0})
        if not record or record.get("used_at"):
            raise AuthenticationError("This sign-in link is invalid or has already been used", error_code="invalid_token")
        expires_at = parse_dt(record.get("expires_at"))
        if not expires_at or expires_at < utc_now():
            raise AuthenticationError("This sign-in link has expired", error_code="token_expired")

        now = utc_now_iso()
        claimed = await db.login_tokens.update_one(
            {"token_hash": token_hash, "used_at": None},
            {"$set": {"used_at": now}},
        )
        if claimed.modified_count == 0:
            raise AuthenticationError("This sign-in link is invalid or has already been used", error_code="invalid_token")

        user = await self.ensure_account(record["email"])
        await db.users.update_one({"email": record["email"]}, {"$set": {"last_login": now}})
        await create_audit_log(
            action=AuditAction.USER_LOGIN_SUCCESS,
            actor_role=user["role"],
            actor_id=user["email"],
            resource_type="user",
            resource_id=user["user_id"],
            metadata={"method": "login_link"},
        )
        return {
            **self._token_for(user).model_dump(mode="json"),
            "redirect_path": record.get("redirect_path") or "/dashboard",
        }

    async def admin_login(self, email: str, password: str) -> TokenResponse:
        db = database.get_db()
        email = email.strip().lower()
        user = await db.users.find_one({"email": email}, {"_id": 0})
        allowed = await db.admin_allowlist.find_one({"email": email})

        if (
            not user
            or user.get("role") != UserRole.ROLE_ADMIN.value
            or not allowed
            or not verify_password(password, user.get("password_hash"))
        ):
            logger.warning(f"Admin login failed for {email}")
            await create_audit_log(
                action=AuditAction.USER_LOGIN_FAILED,
                actor_role="ROLE_ADMIN",
                actor_id=email,
                resource_type="user",
                metadata={"method": "password"},
            )
            raise AuthenticationError("Invalid email or password")

        await db.users.update_one({"email": email}, {"$set": {"last_login": utc_now_iso()}})
        await create_audit_log(
            action=AuditAction.USER_LOGIN_SUCCESS,
            actor_role=UserRole.ROLE_ADMIN.value,
            actor_id=email,
            resource_type="user",
            resource_id=user["user_id"],
            metadata={"method": "password"},
        )
        return self._token_for(user)

    def _token_for(self, user: Dict[str, Any]) -> TokenResponse:
        access_token = create_access_token({
            "sub": user["user_id"],
            "email": user["email"],
            "role": user["role"],
        })
        return TokenResponse(access_token=access_token, email=user["email"], role=UserRole(user["role"]))

    async def me(self, claims: Dict[str, Any]) -> Dict[str, Any]:
        db = database.get_db()
        user = await db.users.find_one({"user_id": claims.get("sub")}, {"_id": 0, "password_hash": 0})
        if not user:
            raise AuthenticationError("Account not found", error_code="user_not_found")
        profile = await db.profiles.find_one({"email": user["email"]}, {"_id": 0}) or {}
        return {
            "user_id": user["user_id"],
            "email": user["email"],
            "role": user["role"],
            "is_pro": bool(profile.get("is_pro_subscriber")),
            "last_login": user.get("last_login"),
        }


identity_service = IdentityService()
