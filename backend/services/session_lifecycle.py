"""
Session Lifecycle Controller - one object per interview, driving the server-side services.

    unverified -> verifying -> documents_pending | already_completed
    documents_pending -> documents_saved -> in_progress -> interview_complete -> results_sent

"paused" is a flag beside the state, only reachable from in_progress for
pausable types. A remote failure never moves the state: it is recorded as a
notice for the UI and the caller may retry the same step.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from models import (
    CoachTurnRequest, MessageRole, SaveDocumentsRequest, SessionStatus, SessionType,
)
from services.coach_prompts import is_interview_complete
from services.coach_service import coach_service
from services.entitlement_service import entitlement_service
from services.errors import InvalidStateError, ServiceError
from services.payment_verifier import payment_verifier
from services.product_catalog import is_pausable, total_questions
from services.results_service import results_service
from services.session_service import session_service

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    UNVERIFIED = "unverified"
    VERIFYING = "verifying"
    DOCUMENTS_PENDING = "documents_pending"
    ALREADY_COMPLETED = "already_completed"
    DOCUMENTS_SAVED = "documents_saved"
    IN_PROGRESS = "in_progress"
    INTERVIEW_COMPLETE = "interview_complete"
    RESULTS_SENT = "results_sent"


class PausedSessionConflict(InvalidStateError):
    default_code = "paused_session_conflict"


@dataclass
class Notice:
    message: str
    level: str = "error"
    error_code: Optional[str] = None


@dataclass
class SessionDocuments:
    resume: Optional[str] = None
    job_description: Optional[str] = None
    company_url: Optional[str] = None
    first_name: Optional[str] = None


def welcome_back_message(questions_completed: int, session_type: SessionType) -> Dict[str, str]:
    total = total_questions(session_type)
    if questions_completed:
        text = (
            f"Welcome back! You've completed {questions_completed} of {total} questions. "
            "Let's pick up right where we left off."
        )
    else:
        text = "Welcome back! Let's pick up right where we left off."
    return {"role": MessageRole.ASSISTANT.value, "content": text}


class SessionLifecycle:

    def __init__(
        self,
        email: str,
        session_type: SessionType,
        checkout_session_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ):
        self.email = email.strip().lower()
        self.session_type = SessionType(session_type)
        self.checkout_session_id = checkout_session_id
        self.session_id = session_id
        # A caller-supplied id (resume link) or a checkout-verified one is live
        self._live_session = bool(session_id)

        self.state = LifecycleState.UNVERIFIED
        self.paused = False
        self.is_pro = False
        self.session_status: Optional[SessionStatus] = None
        self.documents = SessionDocuments()
        self.messages: List[Dict[str, str]] = []
        self.notices: List[Notice] = []
        self.conflict: Optional[Dict[str, Any]] = None
        self.report: Optional[Dict[str, Any]] = None
        self.results: Optional[Dict[str, Any]] = None

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _require(self, *states: LifecycleState):
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise InvalidStateError(f"Action not allowed in state {self.state.value} (expected {allowed})")

    def _notice(self, error: ServiceError):
        logger.info(f"Lifecycle notice session_id={self.session_id} code={error.error_code}: {error.message}")
        self.notices.append(Notice(message=error.message, error_code=error.error_code))

    # ------------------------------------------------------------------
    # verification
    # ------------------------------------------------------------------

    async def verify(self) -> LifecycleState:
        self._require(LifecycleState.UNVERIFIED)
        self.state = LifecycleState.VERIFYING
        try:
            result = await payment_verifier.verify(self.email, self.session_type, self.checkout_session_id)
        except ServiceError as e:
            self._notice(e)
            self.state = LifecycleState.UNVERIFIED
            return self.state

        if result.session_status == SessionStatus.COMPLETED:
            self.session_id = result.session_id
            self.report = result.report
            self.results = result.results
            self.state = LifecycleState.ALREADY_COMPLETED
        elif result.verified:
            self.session_id = self.session_id or result.session_id
            self.is_pro = result.is_pro
            self.session_status = result.session_status
            if self.checkout_session_id:
                self._live_session = True
            self.state = LifecycleState.DOCUMENTS_PENDING
        else:
            self.notices.append(Notice(message=result.message or "Payment could not be verified"))
            self.state = LifecycleState.UNVERIFIED
        return self.state

    # ------------------------------------------------------------------
    # documents and paused-session conflicts
    # ------------------------------------------------------------------

    async def save_documents(self, documents: SessionDocuments) -> LifecycleState:
        self._require(LifecycleState.DOCUMENTS_PENDING)
        self.documents = documents

        if not self.checkout_session_id and not self._live_session:
            conflict = await session_service.find_paused_conflict(
                self.email, self.session_type, exclude_session_id=self.session_id
            )
            if conflict:
                self.conflict = conflict
                raise PausedSessionConflict(
                    "You have a paused session of this type. Resume it or abandon it before starting a new one.",
                    extra={"paused_session_id": conflict["id"], "paused_at": conflict.get("paused_at")},
                )

        await self._persist_documents()
        self.state = LifecycleState.DOCUMENTS_SAVED
        return self.state

    async def _persist_documents(self):
        if not self.session_id:
            return
        try:
            await session_service.save_documents(
                self.session_id,
                self.email,
                SaveDocumentsRequest(
                    resume_text=self.documents.resume,
                    job_description=self.documents.job_description,
                    company_url=self.documents.company_url,
                    first_name=self.documents.first_name,
                ),
            )
        except ServiceError as e:
            # Best-effort: the coach still receives the documents with the first turn
            self._notice(e)

    async def resume_paused(self) -> LifecycleState:
        """Resolve a conflict by continuing the paused session instead."""
        if not self.conflict:
            raise InvalidStateError("No paused session to resume")
        paused_id = self.conflict["id"]
        try:
            outcome = await session_service.resume_session(paused_id, self.email)
        except ServiceError as e:
            self._notice(e)
            return self.state

        self.conflict = None
        if outcome.get("expired"):
            self.notices.append(Notice(message=outcome["message"], level="warning", error_code="session_expired"))
            return self.state

        self.session_id = paused_id
        self._live_session = True
        self._restore(outcome)
        self.state = LifecycleState.IN_PROGRESS
        return self.state

    async def abandon_paused(self) -> LifecycleState:
        """Resolve a conflict by cancelling the paused session, then save documents."""
        if not self.conflict:
            raise InvalidStateError("No paused session to abandon")
        try:
            await session_service.abandon_session(self.conflict["id"], self.email)
        except ServiceError as e:
            self._notice(e)
            return self.state
        self.conflict = None
        await self._persist_documents()
        self.state = LifecycleState.DOCUMENTS_SAVED
        return self.state

    # ------------------------------------------------------------------
    # interview
    # ------------------------------------------------------------------

    async def start(self) -> LifecycleState:
        self._require(LifecycleState.DOCUMENTS_SAVED)

        if self.is_pro and self.session_status == SessionStatus.PENDING:
            try:
                limit = await entitlement_service.start_pro_session(self.email, self.session_type, self.session_id)
            except ServiceError as e:
                self._notice(e)
                return self.state
            if not limit.allowed:
                self.notices.append(Notice(message=limit.message or "Session limit reached", error_code="pro_limit_reached"))
                return self.state
            self.session_status = SessionStatus.ACTIVE

        reply = await self._turn(None, is_initial=True)
        if reply is None:
            return self.state

        if self.session_type == SessionType.QUICK_PREP:
            # One generation call is the whole quick prep
            self.state = LifecycleState.INTERVIEW_COMPLETE
        else:
            self.state = LifecycleState.IN_PROGRESS
        return self.state

    async def _turn(self, message: Optional[str], is_initial: bool = False) -> Optional[str]:
        request = CoachTurnRequest(
            session_id=self.session_id,
            session_type=self.session_type,
            message=message,
            resume=self.documents.resume,
            job_description=self.documents.job_description,
            company_url=self.documents.company_url,
            first_name=self.documents.first_name,
            is_initial=is_initial,
        )
        try:
            response = await coach_service.send_turn(request)
        except ServiceError as e:
            self._notice(e)
            return None
        if message:
            self.messages.append({"role": MessageRole.USER.value, "content": message})
        self.messages.append({"role": MessageRole.ASSISTANT.value, "content": response.message})
        return response.message

    async def send_message(self, text: str) -> Optional[str]:
        self._require(LifecycleState.IN_PROGRESS)
        if self.paused:
            raise InvalidStateError("Resume the session before sending messages")
        reply = await self._turn(text)
        if reply is not None and is_interview_complete(reply):
            self.state = LifecycleState.INTERVIEW_COMPLETE
        return reply

    async def record_voice_turn(self, role: MessageRole, content: str):
        """Voice turns arrive from the adapter; completion is detected the same way as chat."""
        self._require(LifecycleState.IN_PROGRESS)
        self.messages.append({"role": MessageRole(role).value, "content": content})
        if role == MessageRole.ASSISTANT and is_interview_complete(content):
            self.state = LifecycleState.INTERVIEW_COMPLETE

    def end_early(self) -> LifecycleState:
        self._require(LifecycleState.IN_PROGRESS)
        self.paused = False
        self.state = LifecycleState.INTERVIEW_COMPLETE
        return self.state

    # ------------------------------------------------------------------
    # pause / resume
    # ------------------------------------------------------------------

    async def pause(self) -> bool:
        self._require(LifecycleState.IN_PROGRESS)
        if not is_pausable(self.session_type):
            raise InvalidStateError("This session type cannot be paused")
        if self.paused:
            return True
        try:
            await session_service.pause_session(self.session_id, self.email)
        except ServiceError as e:
            self._notice(e)
            return False
        self.paused = True
        return True

    async def resume(self) -> bool:
        self._require(LifecycleState.IN_PROGRESS)
        if not self.paused:
            return True
        try:
            outcome = await session_service.resume_session(self.session_id, self.email)
        except ServiceError as e:
            self._notice(e)
            return False
        if outcome.get("expired"):
            self.notices.append(Notice(message=outcome["message"], level="warning", error_code="session_expired"))
            return False
        self._restore(outcome)
        self.paused = False
        return True

    def _restore(self, outcome: Dict[str, Any]):
        self.messages = [{"role": m["role"], "content": m["content"]} for m in outcome.get("messages", [])]
        documents = outcome.get("documents") or {}
        self.documents = SessionDocuments(
            resume=documents.get("resume") or self.documents.resume,
            job_description=documents.get("job_description") or self.documents.job_description,
            company_url=documents.get("company_url") or self.documents.company_url,
            first_name=documents.get("first_name") or self.documents.first_name,
        )
        # Shown to the user only; never written to chat history
        self.messages.append(
            welcome_back_message(outcome.get("current_question_number") or 0, self.session_type)
        )

    # ------------------------------------------------------------------
    # results
    # ------------------------------------------------------------------

    async def send_results(self) -> Optional[Dict[str, Any]]:
        self._require(LifecycleState.INTERVIEW_COMPLETE, LifecycleState.ALREADY_COMPLETED)
        try:
            outcome = await results_service.send_results(self.session_id, self.email)
        except ServiceError as e:
            self._notice(e)
            return None
        self.report = outcome["report"]
        self.results = outcome.get("session_results")
        self.state = LifecycleState.RESULTS_SENT
        return self.report
