"""AI coaching proxy.

Relays one conversational turn between the candidate and the LLM. The
proxy owns everything the browser must not be trusted with: session status,
per-session rate limiting, the system prompt, and persistence of both sides
of the conversation.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set
from urllib.parse import urlparse

from database import database
from models import (
    ChatMessage, CoachTurnRequest, CoachTurnResponse, ErrorCode, ErrorType, MessageRole, SessionStatus, SessionType,
)
from services.coach_prompts import (
    INITIAL_USER_PROMPT, PREP_PACKET_USER_PROMPT, QUICK_PREP_PROMPT, build_document_context,
    fast_start_opener, get_system_prompt, is_interview_complete,
)
from services.error_resolution import error_resolution_service
from services.errors import InvalidStateError, NotFoundError, ProviderError, RateLimitError, ServiceError
from services.session_service import EXPIRED_MESSAGE, is_pause_expired
from utils.dates import utc_now, utc_now_iso
from utils.llm_chat import LLMError, chat, chat_with_history

logger = logging.getLogger(__name__)

MAX_RESUME_LENGTH = 50000
MAX_JOB_DESCRIPTION_LENGTH = 20000
MAX_COMPANY_URL_LENGTH = 2000
MESSAGES_PER_MINUTE = 15
FAST_START_TYPES = (SessionType.FULL_MOCK, SessionType.PREMIUM_AUDIO)

# Strong references to in-flight prep packet tasks
_background_tasks: Set[asyncio.Task] = set()


class CoachInputError(ServiceError):
    default_code = "invalid_input"


class CoachProviderError(ProviderError):
    default_code = ErrorCode.AI_CONNECTION_FAILED.value


def validate_lengths(resume: Optional[str], job_description: Optional[str], company_url: Optional[str]):
    if resume and len(resume) > MAX_RESUME_LENGTH:
        raise CoachInputError(f"Resume text exceeds maximum length of {MAX_RESUME_LENGTH} characters")
    if job_description and len(job_description) > MAX_JOB_DESCRIPTION_LENGTH:
        raise CoachInputError(f"Job description exceeds maximum length of {MAX_JOB_DESCRIPTION_LENGTH} characters")
    if company_url and len(company_url) > MAX_COMPANY_URL_LENGTH:
        raise CoachInputError(f"Company URL exceeds maximum length of {MAX_COMPANY_URL_LENGTH} characters")


def normalize_company_url(company_url: Optional[str]) -> Optional[str]:
    """Prepend https:// when no scheme is given; only http and https are accepted."""
    if not company_url or not company_url.strip():
        return None
    url = company_url.strip()
    if "://" not in url:
        url = f"https://{url}"
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise CoachInputError("Invalid URL protocol - only http and https are allowed")
    if not parsed.netloc or " " in parsed.netloc:
        raise CoachInputError("Invalid company URL format")
    return url


class CoachService:

    async def _load_active_session(self, session_id: str) -> Dict[str, Any]:
        db = database.get_db()
        session = await db.coaching_sessions.find_one({"id": session_id}, {"_id": 0})
        if not session:
            raise NotFoundError("Invalid session ID", error_code=ErrorCode.SESSION_NOT_FOUND.value)
        if session["status"] == SessionStatus.COMPLETED.value:
            raise InvalidStateError(
                "This session has already been completed.",
                error_code=ErrorCode.SESSION_ALREADY_COMPLETED.value,
            )
        if session["status"] != SessionStatus.ACTIVE.value:
            raise InvalidStateError(
                "Session is not active. Please complete payment first.",
                error_code=ErrorCode.SESSION_EXPIRED.value,
            )
        if session.get("paused_at"):
            if is_pause_expired(session["paused_at"]):
                raise InvalidStateError(EXPIRED_MESSAGE, error_code=ErrorCode.SESSION_EXPIRED.value)
            raise InvalidStateError(
                "This session is paused. Resume it before continuing.",
                error_code=ErrorCode.SESSION_PAUSED.value,
            )
        return session

    async def _check_rate_limit(self, session_id: str):
        db = database.get_db()
        since = (utc_now() - timedelta(minutes=1)).isoformat()
        count = await db.chat_messages.count_documents({"session_id": session_id, "created_at": {"$gte": since}})
        if count >= MESSAGES_PER_MINUTE:
            logger.info(f"Coach rate limit hit session_id={session_id} count={count}")
            raise RateLimitError("Rate limit exceeded. Please wait a moment before sending more messages.")

    async def _history(self, session_id: str) -> List[Dict[str, str]]:
        db = database.get_db()
        rows = await db.chat_messages.find(
            {"session_id": session_id},
            {"_id": 0, "role": 1, "content": 1}
        ).sort("created_at", 1).to_list(length=None)
        return [
            {"role": "assistant" if r["role"] == MessageRole.ASSISTANT.value else "user", "content": r["content"]}
            for r in rows
        ]

    async def _persist(self, session_id: Optional[str], role: MessageRole, content: str):
        if not session_id:
            return
        db = database.get_db()
        await db.chat_messages.insert_one(
            ChatMessage(session_id=session_id, role=role, content=content).model_dump(mode="json")
        )

    async def send_turn(self, request: CoachTurnRequest) -> CoachTurnResponse:
        session_type = SessionType(request.session_type)
        validate_lengths(request.resume, request.job_description, request.company_url)
        company_url = normalize_company_url(request.company_url)
        resume, job_description, first_name = request.resume, request.job_description, request.first_name

        session = None
        if request.session_id:
            session = await self._load_active_session(request.session_id)
            await self._check_rate_limit(request.session_id)
            # Fall back to documents saved on the session (resume links, reconnects)
            resume = resume or session.get("resume_text")
            job_description = job_description or session.get("job_description")
            company_url = company_url or session.get("company_url")
            first_name = first_name or session.get("first_name")
        elif not request.is_initial:
            raise CoachInputError("session_id is required for ongoing conversations")

        document_context = build_document_context(resume, job_description, company_url)

        if session and request.is_initial and session_type in FAST_START_TYPES and not session.get("prep_packet"):
            logger.info(f"Scheduling prep packet generation for {session['id']} type={session_type.value}")
            task = asyncio.create_task(self._generate_prep_packet_safely(session["id"], document_context))
            _background_tasks.add(task)
            task.add_done_callback(_background_tasks.discard)

        messages: List[Dict[str, str]] = []
        if request.session_id and not request.is_initial:
            messages = await self._history(request.session_id)

        if request.message:
            messages.append({"role": "user", "content": request.message})
            await self._persist(request.session_id, MessageRole.USER, request.message)
        elif request.is_initial:
            messages.append({"role": "user", "content": INITIAL_USER_PROMPT})
        else:
            raise CoachInputError("message is required")

        if request.is_initial and session_type in FAST_START_TYPES:
            opener = fast_start_opener(session_type, first_name)
            await self._persist(request.session_id, MessageRole.ASSISTANT, opener)
            return CoachTurnResponse(message=opener, session_type=session_type)

        logger.info(
            f"Calling LLM session_id={request.session_id} type={session_type.value} messages={len(messages)}"
        )
        try:
            reply = await chat_with_history(get_system_prompt(session_type) + document_context, messages)
        except LLMError as e:
            logger.error(f"AI coach call failed session_id={request.session_id}: {e}")
            await error_resolution_service.report_error(
                error_type=ErrorType.SESSION.value,
                error_code=ErrorCode.AI_CONNECTION_FAILED.value,
                error_message=str(e),
                session_id=request.session_id,
                user_email=session["email"] if session else None,
                context={"session_type": session_type.value, "is_initial": request.is_initial},
            )
            raise CoachProviderError("We couldn't reach the AI coach. Please try again in a moment.")

        await self._persist(request.session_id, MessageRole.ASSISTANT, reply)

        if session_type == SessionType.QUICK_PREP and request.session_id and request.is_initial:
            await self._save_prep_packet(request.session_id, reply)

        return CoachTurnResponse(
            message=reply,
            session_type=session_type,
            interview_complete=is_interview_complete(reply),
        )

    async def _save_prep_packet(self, session_id: str, content: str):
        db = database.get_db()
        await db.coaching_sessions.update_one(
            {"id": session_id},
            {"$set": {"prep_packet": {"content": content}, "updated_at": utc_now_iso()}}
        )

    async def generate_prep_packet(self, session_id: str, document_context: str) -> str:
        content = await chat(QUICK_PREP_PROMPT + document_context, PREP_PACKET_USER_PROMPT)
        await self._save_prep_packet(session_id, content)
        logger.info(f"Prep packet generated for {session_id} length={len(content)}")
        return content

    async def _generate_prep_packet_safely(self, session_id: str, document_context: str):
        try:
            await self.generate_prep_packet(session_id, document_context)
        except LLMError as e:
            logger.warning(f"Prep packet generation failed for {session_id} (non-blocking): {e}")
        except Exception:
            logger.exception(f"Prep packet generation crashed for {session_id} (non-blocking)")


coach_service = CoachService()
