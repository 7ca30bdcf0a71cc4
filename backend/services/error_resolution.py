"""Error reporting and automated resolution.

Every user-facing failure worth triaging is written to error_logs. A
resolution is looked up in the static knowledge base keyed by
(error_type, error_code); when nothing matches the LLM drafts one. The user
gets the resolution by email when there is one, and the admin address always
gets the full context.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set, Tuple

from database import database
from models import AuditAction, EmailTemplateAlias, ErrorLog
from services.email_service import email_service, ADMIN_EMAIL
from services.email_templates import build_admin_error_alert_email, build_error_resolution_email
from utils.audit import create_audit_log
from utils.dates import utc_now_iso
from utils.llm_chat import chat

logger = logging.getLogger(__name__)

# Strong references to in-flight background resolutions
_background_tasks: Set[asyncio.Task] = set()

ERROR_RESOLUTIONS: Dict[str, Dict[str, str]] = {
    "session": {
        "session_not_found": "The session may have expired or the link is invalid. Please start a new session from the homepage.",
        "session_expired": "Your session has expired. If you've paid, you can start a fresh session. Your payment covers one complete session.",
        "ai_connection_failed": "We're experiencing a temporary connection issue with our AI coach. Please wait 30 seconds and try again. If the issue persists, we'll get you sorted right away.",
        "session_already_completed": "This session has already been completed. To start a new practice session, please purchase another session from our products page.",
    },
    "discount": {
        "code_not_found": "That discount code doesn't exist in our system. Please double-check the code and try again.",
        "code_expired": "This discount code has expired. Check our website or social media for current promotions!",
        "code_already_used": "You've already used this discount code. Each code can only be used once per email address.",
        "code_not_applicable": "This discount code isn't valid for the product you selected. Some codes are product-specific.",
        "code_usage_limit_reached": "This discount code has reached its maximum number of uses. Check for other available promotions!",
    },
    "general": {
        "network_error": "We're having trouble connecting. Please check your internet connection and try again.",
        "rate_limit": "You're sending requests too quickly. Please wait a moment and try again.",
    },
}

SUPPORT_SYSTEM_PROMPT = """You are a helpful customer support assistant for Talendro Interview Coach, an AI-powered interview preparation service.

Your job is to help users who encounter errors. Be warm, empathetic and solution-focused. Keep responses concise (2-3 sentences max).

The service offers:
- Quick Prep ($12): an AI interview prep packet
- Full Mock Interview ($29): a 10-question text mock interview with feedback
- Premium Audio Interview ($49): a voice-based mock interview
- Pro ($79/month): monthly coaching subscription

If you can't resolve the issue, let them know a human will follow up shortly."""


def lookup_resolution(error_type: str, error_code: Optional[str]) -> Optional[str]:
    if not error_code:
        return None
    return ERROR_RESOLUTIONS.get(error_type, {}).get(error_code)


class ErrorResolutionService:

    async def report_error(
        self,
        error_type: str,
        error_message: str,
        error_code: Optional[str] = None,
        user_email: Optional[str] = None,
        session_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        background: bool = True,
    ) -> Tuple[str, Optional[str]]:
        """Persist an ErrorLog and run the resolution attempt.

        With background=True the resolution runs as a held background task so the
        failing request is not slowed down; the returned resolution is then None.

        Returns:
            (error_log_id, resolution)
        """
        db = database.get_db()
        error_log = ErrorLog(
            error_type=error_type,
            error_code=error_code,
            error_message=error_message,
            user_email=user_email.lower() if user_email else None,
            session_id=session_id,
            context=context,
        )
        await db.error_logs.insert_one(error_log.model_dump())
        logger.info(
            "ERROR_REPORTED error_id=%s type=%s code=%s session_id=%s",
            error_log.id, error_type, error_code, session_id,
        )
        await create_audit_log(
            action=AuditAction.ERROR_REPORTED,
            actor_role="SYSTEM",
            resource_type="error_log",
            resource_id=error_log.id,
            metadata={"error_type": error_type, "error_code": error_code},
        )

        if background:
            task = asyncio.create_task(self._resolve_safely(error_log.model_dump()))
            _background_tasks.add(task)
            task.add_done_callback(_background_tasks.discard)
            return error_log.id, None

        resolution = await self.resolve(error_log.model_dump())
        return error_log.id, resolution

    async def _resolve_safely(self, error_doc: Dict[str, Any]):
        try:
            await self.resolve(error_doc)
        except Exception:
            logger.exception(f"Background error resolution failed for {error_doc.get('id')}")

    async def resolve(self, error_doc: Dict[str, Any]) -> Optional[str]:
        """Find or draft a resolution, update the log, notify user and admin."""
        db = database.get_db()
        resolution = lookup_resolution(error_doc["error_type"], error_doc.get("error_code"))

        if not resolution:
            resolution = await self._draft_resolution(error_doc)

        was_resolved = bool(resolution)
        now = utc_now_iso()
        updates = {
            "ai_resolution_attempted": True,
            "ai_resolution_successful": was_resolved,
            "ai_resolution_response": resolution,
            "resolved": was_resolved,
            "resolved_at": now if was_resolved else None,
            "escalated_to_admin": True,
        }
        await db.error_logs.update_one({"id": error_doc["id"]}, {"$set": updates})
        error_doc = {**error_doc, **updates}

        if error_doc.get("user_email") and resolution:
            await email_service.send_email(
                recipient=error_doc["user_email"],
                template_alias=EmailTemplateAlias.ERROR_RESOLUTION,
                content=build_error_resolution_email(resolution, error_doc.get("error_code")),
                session_id=error_doc.get("session_id"),
            )

        # The admin copy goes out regardless of outcome
        await email_service.send_email(
            recipient=ADMIN_EMAIL,
            template_alias=EmailTemplateAlias.ADMIN_ERROR_ALERT,
            content=build_admin_error_alert_email(error_doc, resolution),
            session_id=error_doc.get("session_id"),
        )
        return resolution

    async def _draft_resolution(self, error_doc: Dict[str, Any]) -> Optional[str]:
        prompt = (
            "A user encountered this error:\n"
            f"Type: {error_doc.get('error_type')}\n"
            f"Code: {error_doc.get('error_code') or 'unknown'}\n"
            f"Message: {error_doc.get('error_message')}\n"
            f"Context: {json.dumps(error_doc.get('context') or {}, default=str)}\n\n"
            "Please provide a helpful, friendly response to resolve their issue."
        )
        try:
            return (await chat(SUPPORT_SYSTEM_PROMPT, prompt)).strip() or None
        except Exception as e:
            logger.warning(f"AI resolution failed for error {error_doc.get('id')}: {e}")
            return None

    async def mark_resolved(self, error_id: str, actor_email: str) -> bool:
        db = database.get_db()
        result = await db.error_logs.update_one(
            {"id": error_id},
            {"$set": {"resolved": True, "resolved_at": utc_now_iso()}},
        )
        if result.matched_count:
            await create_audit_log(
                action=AuditAction.ERROR_RESOLVED,
                actor_role="ROLE_ADMIN",
                actor_id=actor_email,
                resource_type="error_log",
                resource_id=error_id,
            )
        return bool(result.matched_count)


error_resolution_service = ErrorResolutionService()
