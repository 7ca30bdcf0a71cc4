"""Server-side session actions: documents, chat history, pause/resume/abandon.

A session is "paused" while it is active and carries a paused_at timestamp;
it can be resumed for 24 hours. Every action is scoped to the session's email
so a leaked session id alone is not enough to read or alter a session.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from database import database
from models import (
    AppendTurnRequest, AuditAction, ChatMessage, EmailTemplateAlias, ErrorLog, MessageRole,
    SaveDocumentsRequest, SessionEventRequest, SessionStatus, SessionType,
)
from services.email_service import email_service
from services.email_templates import build_pause_email
from services.errors import InvalidStateError, NotFoundError
from services.product_catalog import get_label, is_pausable, total_questions
from utils.audit import create_audit_log
from utils.dates import parse_dt, utc_now, utc_now_iso
from utils.public_app_url import resume_url

logger = logging.getLogger(__name__)

PAUSE_WINDOW_HOURS = 24
HISTORY_LIMIT = 500
EXPIRED_MESSAGE = "Session expired. Paused sessions are only resumable for 24 hours."


def count_questions_asked(messages: List[Dict[str, Any]]) -> int:
    """Assistant turns containing a question mark."""
    return sum(1 for m in messages if m.get("role") == MessageRole.ASSISTANT.value and "?" in (m.get("content") or ""))


def questions_completed(messages: List[Dict[str, Any]]) -> int:
    """Questions asked, minus a trailing assistant question that is still unanswered."""
    asked = count_questions_asked(messages)
    if messages:
        last = messages[-1]
        if last.get("role") == MessageRole.ASSISTANT.value and "?" in (last.get("content") or ""):
            return max(asked - 1, 0)
    return asked


def pause_expires_at(paused_at) -> Optional[datetime]:
    paused = parse_dt(paused_at)
    return paused + timedelta(hours=PAUSE_WINDOW_HOURS) if paused else None


def is_pause_expired(paused_at, now: Optional[datetime] = None) -> bool:
    expires = pause_expires_at(paused_at)
    return bool(expires and (now or utc_now()) > expires)


def session_documents(session: Dict[str, Any]) -> Dict[str, str]:
    return {
        "first_name": session.get("first_name") or "",
        "resume": session.get("resume_text") or "",
        "job_description": session.get("job_description") or "",
        "company_url": session.get("company_url") or "",
    }


class SessionService:

    async def load(self, session_id: str, email: str) -> Dict[str, Any]:
        db = database.get_db()
        session = await db.coaching_sessions.find_one(
            {"id": session_id, "email": email.strip().lower()},
            {"_id": 0}
        )
        if not session:
            raise NotFoundError("Session not found for this email")
        return session

    async def get_history_messages(self, session_id: str) -> List[Dict[str, Any]]:
        db = database.get_db()
        return await db.chat_messages.find(
            {"session_id": session_id},
            {"_id": 0}
        ).sort("created_at", 1).limit(HISTORY_LIMIT).to_list(length=HISTORY_LIMIT)

    async def get_paused_sessions(self, email: str) -> List[Dict[str, Any]]:
        db = database.get_db()
        since = (utc_now() - timedelta(hours=PAUSE_WINDOW_HOURS)).isoformat()
        return await db.coaching_sessions.find(
            {
                "email": email.strip().lower(),
                "status": SessionStatus.ACTIVE.value,
                "paused_at": {"$ne": None, "$gte": since},
            },
            {"_id": 0, "id": 1, "session_type": 1, "paused_at": 1, "current_question_number": 1, "created_at": 1}
        ).sort("paused_at", -1).to_list(length=50)

    async def find_paused_conflict(
        self,
        email: str,
        session_type: SessionType,
        exclude_session_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """A resumable paused session of the same product type, if any."""
        for paused in await self.get_paused_sessions(email):
            if paused["session_type"] == SessionType(session_type).value and paused["id"] != exclude_session_id:
                return paused
        return None

    async def get_session(self, session_id: str, email: str) -> Dict[str, Any]:
        session = await self.load(session_id, email)
        return {
            "id": session["id"],
            "session_type": session["session_type"],
            "status": session["status"],
            "paused_at": session.get("paused_at"),
            "current_question_number": session.get("current_question_number", 0),
            "has_prep_packet": bool(session.get("prep_packet")),
            "documents": session_documents(session),
        }

    async def save_documents(self, session_id: str, email: str, request: SaveDocumentsRequest) -> Dict[str, Any]:
        await self.load(session_id, email)
        db = database.get_db()
        await db.coaching_sessions.update_one(
            {"id": session_id},
            {"$set": {
                "resume_text": request.resume_text,
                "job_description": request.job_description,
                "company_url": request.company_url,
                "first_name": request.first_name,
                "updated_at": utc_now_iso(),
            }}
        )
        return {"ok": True}

    async def get_history(self, session_id: str, email: str) -> Dict[str, Any]:
        session = await self.load(session_id, email)
        return {
            "messages": await self.get_history_messages(session_id),
            "session_status": session["status"],
            "paused_at": session.get("paused_at"),
            "current_question_number": session.get("current_question_number", 0),
        }

    async def append_turn(self, session_id: str, email: str, request: AppendTurnRequest) -> Dict[str, Any]:
        await self.load(session_id, email)
        db = database.get_db()
        role = MessageRole(request.role).value

        # Clients retry on flaky networks; an identical repeat of the last turn is a no-op
        recent = await db.chat_messages.find(
            {"session_id": session_id, "role": role},
            {"_id": 0, "id": 1, "content": 1}
        ).sort("created_at", -1).limit(1).to_list(length=1)
        if recent and recent[0]["content"] == request.content:
            return {"ok": True, "duplicate": True}

        message = ChatMessage(
            session_id=session_id,
            role=MessageRole(role),
            content=request.content,
            question_number=request.question_number,
        )
        await db.chat_messages.insert_one(message.model_dump(mode="json"))

        if request.question_number is not None:
            await db.coaching_sessions.update_one(
                {"id": session_id},
                {"$set": {"current_question_number": request.question_number, "updated_at": utc_now_iso()}}
            )
        return {"ok": True, "id": message.id}

    async def log_event(self, session_id: str, email: str, request: SessionEventRequest) -> Dict[str, Any]:
        """Client-side session events (voice drops, device errors) go to error_logs for triage."""
        await self.load(session_id, email)
        db = database.get_db()
        entry = ErrorLog(
            error_type=request.event_type or "session_event",
            error_message=request.message or "(no message)",
            user_email=email.strip().lower(),
            session_id=session_id,
            context=request.context,
        )
        await db.error_logs.insert_one(entry.model_dump())
        logger.info(f"Session event logged session_id={session_id} type={entry.error_type}")
        return {"ok": True}

    async def pause_session(self, session_id: str, email: str) -> Dict[str, Any]:
        session = await self.load(session_id, email)
        if not is_pausable(session["session_type"]):
            raise InvalidStateError(f"{get_label(session['session_type'])} sessions cannot be paused")
        if session["status"] != SessionStatus.ACTIVE.value:
            raise InvalidStateError(f"Only active sessions can be paused (status={session['status']})")

        messages = await self.get_history_messages(session_id)
        completed = questions_completed(messages)
        paused_at = utc_now_iso()

        db = database.get_db()
        await db.coaching_sessions.update_one(
            {"id": session_id},
            {"$set": {
                "paused_at": paused_at,
                "current_question_number": completed,
                "pause_reminder_sent_at": None,
                "updated_at": paused_at,
            }}
        )
        await create_audit_log(
            action=AuditAction.SESSION_PAUSED,
            actor_role="CUSTOMER",
            actor_id=session["email"],
            resource_type="coaching_session",
            resource_id=session_id,
            metadata={"questions_asked": count_questions_asked(messages), "questions_completed": completed},
        )

        paused_session = {**session, "paused_at": paused_at, "current_question_number": completed}
        email_sent = await self.send_pause_email(paused_session, is_reminder=False)
        return {"ok": True, "paused_at": paused_at, "questions_completed": completed, "email_sent": email_sent}

    async def send_pause_email(self, session: Dict[str, Any], is_reminder: bool = False) -> bool:
        """Best-effort: a failed email never fails the pause itself."""
        expires_at = pause_expires_at(session.get("paused_at")) or utc_now() + timedelta(hours=PAUSE_WINDOW_HOURS)
        hours_remaining = max(0, int((expires_at - utc_now()).total_seconds() // 3600))
        content = build_pause_email(
            session_label=get_label(session["session_type"]),
            resume_url=resume_url(session["id"], session["email"]),
            expires_at=expires_at,
            hours_remaining=hours_remaining,
            questions_completed=session.get("current_question_number") or 0,
            total_questions=total_questions(session["session_type"]),
            first_name=session.get("first_name"),
            is_reminder=is_reminder,
        )
        message_log = await email_service.send_email(
            recipient=session["email"],
            template_alias=EmailTemplateAlias.SESSION_PAUSED_REMINDER if is_reminder else EmailTemplateAlias.SESSION_PAUSED,
            content=content,
            session_id=session["id"],
        )
        if message_log.status != "sent":
            logger.warning(f"Pause email failed for session {session['id']}: {message_log.error_message}")
            return False
        return True

    async def resume_session(self, session_id: str, email: str) -> Dict[str, Any]:
        session = await self.load(session_id, email)
        if session["status"] != SessionStatus.ACTIVE.value:
            raise InvalidStateError(
                f"Session cannot be resumed (status={session['status']})",
                error_code="session_already_completed" if session["status"] == SessionStatus.COMPLETED.value else None,
            )

        if session.get("paused_at") and is_pause_expired(session["paused_at"]):
            logger.info(f"Resume refused for expired session {session_id}")
            return {"ok": False, "expired": True, "message": EXPIRED_MESSAGE}

        db = database.get_db()
        await db.coaching_sessions.update_one(
            {"id": session_id},
            {"$set": {"paused_at": None, "updated_at": utc_now_iso()}}
        )
        await create_audit_log(
            action=AuditAction.SESSION_RESUMED,
            actor_role="CUSTOMER",
            actor_id=session["email"],
            resource_type="coaching_session",
            resource_id=session_id,
            metadata={"current_question_number": session.get("current_question_number", 0)},
        )
        return {
            "ok": True,
            "messages": await self.get_history_messages(session_id),
            "current_question_number": session.get("current_question_number", 0),
            "session_type": session["session_type"],
            "documents": session_documents(session),
        }

    async def abandon_session(self, session_id: str, email: str) -> Dict[str, Any]:
        session = await self.load(session_id, email)
        if session["status"] == SessionStatus.COMPLETED.value:
            raise InvalidStateError("Completed sessions cannot be abandoned", error_code="session_already_completed")

        db = database.get_db()
        await db.coaching_sessions.update_one(
            {"id": session_id},
            {"$set": {"status": SessionStatus.CANCELLED.value, "paused_at": None, "updated_at": utc_now_iso()}}
        )
        await create_audit_log(
            action=AuditAction.SESSION_ABANDONED,
            actor_role="CUSTOMER",
            actor_id=session["email"],
            resource_type="coaching_session",
            resource_id=session_id,
            metadata={"current_question_number": session.get("current_question_number", 0)},
        )
        return {"ok": True}


session_service = SessionService()
