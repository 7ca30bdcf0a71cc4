"""
Canonical public frontend base URL for email links and redirects.
Every link that leaves the backend (purchase confirmation, resume, login link)
is built here so no other module concatenates frontend URLs by hand.
"""
import os
import logging
from typing import Optional
from urllib.parse import quote

logger = logging.getLogger(__name__)

DEFAULT_PUBLIC_APP_URL = "https://coach.talendro.com"


def get_public_app_url() -> str:
    """
    Return normalized public frontend base URL (no trailing slash).
    Fallback order: FRONTEND_PUBLIC_URL, PUBLIC_APP_URL, FRONTEND_URL, then the production domain.
    Plain http is upgraded to https except for localhost.
    """
    raw = (
        (os.getenv("FRONTEND_PUBLIC_URL") or "").strip()
        or (os.getenv("PUBLIC_APP_URL") or "").strip()
        or (os.getenv("FRONTEND_URL") or "").strip()
    )
    raw = raw.rstrip("/")
    if not raw:
        return DEFAULT_PUBLIC_APP_URL
    if raw.startswith("http://") and "localhost" not in raw:
        raw = "https://" + raw.split("://", 1)[1]
    return raw


def session_url(session_type: str, email: str, checkout_session_id: Optional[str] = None) -> str:
    url = f"{get_public_app_url()}/interview-coach?session_type={session_type}&email={quote(email)}"
    if checkout_session_id:
        url += f"&checkout_session_id={checkout_session_id}"
    return url


def resume_url(session_id: str, email: str) -> str:
    return f"{get_public_app_url()}/interview-coach?resume_session={session_id}&email={quote(email)}"


def login_url(token: str) -> str:
    return f"{get_public_app_url()}/login?token={token}"
