"""Results composer.

Turns a finished session into a report made of up to three markdown blocks
(prep packet, transcript, analysis), stores it on the session, records a
compact session_results row and emails the very same blocks to the user.

A completed session keeps its stored report: asking again returns it
unchanged instead of paying for another analysis call.
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional

from database import database
from models import (
    AuditAction, EmailTemplateAlias, ErrorType, MessageRole, SessionResult, SessionStatus, SessionType,
)
from services.coach_prompts import ANALYSIS_SYSTEM_PROMPT
from services.email_service import email_service
from services.email_templates import build_results_email
from services.error_resolution import error_resolution_service
from services.errors import InvalidStateError, NotFoundError, ProviderError
from services.product_catalog import get_label
from services.session_service import session_service
from utils.audit import create_audit_log
from utils.dates import utc_now_iso
from utils.llm_chat import LLMError, chat

logger = logging.getLogger(__name__)

MAX_TRANSCRIPT_CHARS = 120_000
TRUNCATION_NOTE = "\n\n[TRUNCATED: transcript exceeded 120k characters]"
TRANSCRIPT_SEPARATOR = "\n---\n"
COACH_SPEAKER = "Sarah (Coach)"
USER_SPEAKER = "You"

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class ResultsGenerationError(ProviderError):
    default_code = "results_generation_failed"


# ============================================================================
# TRANSCRIPT
# ============================================================================

def build_transcript(messages: List[Dict[str, Any]]) -> str:
    blocks = []
    for message in sorted(messages, key=lambda m: m.get("created_at") or ""):
        speaker = COACH_SPEAKER if message.get("role") == MessageRole.ASSISTANT.value else USER_SPEAKER
        blocks.append(f"{speaker}:\n{message.get('content', '')}")
    return TRANSCRIPT_SEPARATOR.join(blocks).strip()


def parse_question_answers(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Pair coach turns with the candidate reply that closes them.

    Each coach turn replaces the open question; the first non-empty candidate
    turn after it closes the pair. Candidate turns with no open question are
    dropped.
    """
    pairs: List[Dict[str, Any]] = []
    question: Optional[str] = None
    for message in sorted(messages, key=lambda m: m.get("created_at") or ""):
        content = (message.get("content") or "").strip()
        if not content:
            continue
        if message.get("role") == MessageRole.ASSISTANT.value:
            question = content
        elif question is not None:
            pairs.append({"question_number": len(pairs) + 1, "question": question, "answer": content})
            question = None
    return pairs


def prep_packet_text(prep_packet: Any) -> Optional[str]:
    if not prep_packet:
        return None
    if isinstance(prep_packet, str):
        return prep_packet
    if isinstance(prep_packet, dict) and isinstance(prep_packet.get("content"), str):
        return prep_packet["content"]
    return None


# ============================================================================
# ANALYSIS
# ============================================================================

def build_analysis_prompt(session_type: str, prep_packet: Optional[str], transcript: str) -> str:
    if len(transcript) > MAX_TRANSCRIPT_CHARS:
        transcript = transcript[:MAX_TRANSCRIPT_CHARS] + TRUNCATION_NOTE
    return (
        f"SESSION TYPE: {session_type}\n\n"
        f"PREP PACKET (if present):\n{prep_packet or '(none)'}\n\n"
        f"TRANSCRIPT:\n{transcript}"
    )


def parse_analysis(text: str) -> Dict[str, Any]:
    """Strict JSON first; models sometimes wrap it in prose or a code fence."""
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        match = _JSON_OBJECT.search(text or "")
        if match:
            try:
                return json.loads(match.group(0))
            except ValueError:
                pass
    raise ResultsGenerationError("Failed to parse report JSON from model output")


def _score(value) -> str:
    return "--" if value is None else str(value)


def build_analysis_markdown(analysis: Dict[str, Any]) -> str:
    lines = ["# Final Summary", "", f"Overall Score: {_score(analysis.get('overall_score'))}/100"]

    breakdown = analysis.get("score_breakdown") or {}
    if breakdown:
        lines += ["", "## Score Breakdown"]
        lines += [f"- {name}: {value}/100" for name, value in breakdown.items()]

    strengths = analysis.get("strengths") or []
    if strengths:
        lines += ["", "## Top Strengths (with evidence)", ""]
        for idx, s in enumerate(strengths[:3], 1):
            lines.append(f"{idx}. {s.get('title', '')}")
            if s.get("evidence_quote"):
                lines.append(f"   - Evidence: \"{s['evidence_quote']}\"")
            if s.get("why_it_matters"):
                lines.append(f"   - Why it matters: {s['why_it_matters']}")

    improvements = analysis.get("improvements") or []
    if improvements:
        lines += ["", "## Top Improvements (specific + fix)", ""]
        for idx, i in enumerate(improvements[:3], 1):
            lines.append(f"{idx}. {i.get('title', '')}")
            if i.get("evidence_quote"):
                lines.append(f"   - Where this showed up: \"{i['evidence_quote']}\"")
            if i.get("fix"):
                lines.append(f"   - Fix: {i['fix']}")
            if i.get("stronger_example"):
                lines.append(f"   - Stronger example: {i['stronger_example']}")

    action_items = analysis.get("action_items") or []
    if action_items:
        lines += ["", "## Personalized Action Items", ""]
        lines += [f"- {item}" for item in action_items[:8]]

    per_question = sorted((analysis.get("per_question") or [])[:10], key=lambda q: q.get("question_number") or 0)
    if per_question:
        lines += ["", "# Interview Transcript Review (10 Questions)", ""]
        for q in per_question:
            lines.append(f"## Question {q.get('question_number')}")
            lines.append(f"Question: {q.get('question', '')}")
            lines.append(f"Score: {_score(q.get('score'))}/10")
            lines.append(f"Your answer (summary): {q.get('answer_summary', '')}")
            if q.get("evidence_quote"):
                lines.append(f"Evidence quote: \"{q['evidence_quote']}\"")
            lines.append(f"What was strong: {q.get('what_was_strong', '')}")
            lines.append(f"What to improve: {q.get('what_to_improve', '')}")
            lines.append(f"Example of a stronger answer: {q.get('stronger_example', '')}")
            lines.append("")

    return "\n".join(lines).strip()


def _quoted(item: Dict[str, Any]) -> str:
    title = item.get("title", "")
    return f"{title} — “{item['evidence_quote']}”" if item.get("evidence_quote") else title


def compact_results(analysis: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    analysis = analysis or {}
    strengths = [_quoted(s) for s in (analysis.get("strengths") or [])[:3]]
    improvements = [_quoted(i) for i in (analysis.get("improvements") or [])[:3]]
    recommendations = "\n".join((analysis.get("action_items") or [])[:6])
    overall = analysis.get("overall_score")
    return {
        "overall_score": int(overall) if isinstance(overall, (int, float)) else None,
        "strengths": strengths or None,
        "improvements": improvements or None,
        "recommendations": recommendations or None,
    }


# ============================================================================
# COMPOSER
# ============================================================================

class ResultsService:

    async def _analyze(self, session: Dict[str, Any], prep_packet: Optional[str], transcript: str) -> Dict[str, Any]:
        prompt = build_analysis_prompt(session["session_type"], prep_packet, transcript)
        try:
            raw = await chat(ANALYSIS_SYSTEM_PROMPT, prompt)
        except LLMError as e:
            logger.error(f"Results analysis call failed for {session['id']}: {e}")
            await error_resolution_service.report_error(
                error_type=ErrorType.GENERAL.value,
                error_code=None,
                error_message=f"Results analysis failed: {e}",
                user_email=session["email"],
                session_id=session["id"],
                context={"session_type": session["session_type"], "transcript_chars": len(transcript)},
            )
            raise ResultsGenerationError("We couldn't generate your results right now. Please try again.")
        return parse_analysis(raw)

    async def compose_report(self, session: Dict[str, Any], messages: List[Dict[str, Any]]):
        """Return (report, analysis). analysis is None for prep-only sessions."""
        session_type = SessionType(session["session_type"])
        prep_packet = prep_packet_text(session.get("prep_packet"))
        transcript = build_transcript(messages)

        report: Dict[str, Any] = {"prepPacket": None, "transcript": None, "analysisMarkdown": None}
        analysis = None

        if session_type == SessionType.QUICK_PREP:
            # The prep packet is the whole deliverable; fall back to the last coach turn
            if not prep_packet:
                coach_turns = [m for m in messages if m.get("role") == MessageRole.ASSISTANT.value]
                prep_packet = coach_turns[-1]["content"] if coach_turns else None
            report["prepPacket"] = prep_packet
            return report, analysis

        analysis = await self._analyze(session, prep_packet, transcript)
        report["analysisMarkdown"] = build_analysis_markdown(analysis)
        report["transcript"] = transcript
        report["questions"] = parse_question_answers(messages)
        if session_type in (SessionType.FULL_MOCK, SessionType.PREMIUM_AUDIO):
            report["prepPacket"] = prep_packet
        return report, analysis

    async def send_results(self, session_id: str, email: str) -> Dict[str, Any]:
        db = database.get_db()
        session = await db.coaching_sessions.find_one({"id": session_id}, {"_id": 0})
        if not session:
            raise NotFoundError("Invalid session ID")
        if (session.get("email") or "").lower() != email.strip().lower():
            raise NotFoundError("Email does not match session")
        if session["status"] not in (SessionStatus.ACTIVE.value, SessionStatus.COMPLETED.value):
            raise InvalidStateError(f"Session is not eligible for results (status={session['status']})")

        if session["status"] == SessionStatus.COMPLETED.value and session.get("report"):
            logger.info(f"Returning stored report for completed session {session_id}")
            stored = await db.session_results.find_one({"session_id": session_id}, {"_id": 0})
            return {"success": True, "already_completed": True, "session_results": stored, "report": session["report"]}

        messages = await session_service.get_history_messages(session_id)
        report, analysis = await self.compose_report(session, messages)
        summary = compact_results(analysis)

        now = utc_now_iso()
        completion = {"report": report, "status": SessionStatus.COMPLETED.value, "paused_at": None, "updated_at": now}
        if session["status"] != SessionStatus.COMPLETED.value:
            completion["completed_at"] = now
        # Only the caller that stores the first report completes the session
        claimed = await db.coaching_sessions.update_one(
            {"id": session_id, "status": session["status"], "report": None},
            {"$set": completion},
        )
        if claimed.modified_count == 0:
            current = await db.coaching_sessions.find_one({"id": session_id}, {"_id": 0})
            if not current or not current.get("report"):
                raise InvalidStateError("Session changed while composing results. Please try again.")
            logger.info(f"Results for session {session_id} were completed by a concurrent request")
            stored = await db.session_results.find_one({"session_id": session_id}, {"_id": 0})
            return {"success": True, "already_completed": True, "session_results": stored, "report": current["report"]}

        content = build_results_email(
            session_label=get_label(session["session_type"]),
            email=session["email"],
            message_count=len(messages),
            report=report,
        )
        message_log = await email_service.send_email(
            recipient=session["email"],
            template_alias=EmailTemplateAlias.SESSION_RESULTS,
            content=content,
            session_id=session_id,
        )
        email_sent = message_log.status == "sent"
        if not email_sent:
            logger.warning(f"Results email failed for session {session_id}: {message_log.error_message}")

        result = SessionResult(
            session_id=session_id,
            email_sent=email_sent,
            email_sent_at=now if email_sent else None,
            **summary,
        )
        await db.session_results.insert_one(result.model_dump())

        await create_audit_log(
            action=AuditAction.SESSION_COMPLETED,
            actor_role="CUSTOMER",
            actor_id=session["email"],
            resource_type="coaching_session",
            resource_id=session_id,
            metadata={"message_count": len(messages), "email_sent": email_sent, "overall_score": summary["overall_score"]},
        )
        logger.info(f"Results composed for session {session_id} type={session['session_type']} email_sent={email_sent}")

        stored = result.model_dump()
        return {"success": True, "email_sent": email_sent, "session_results": stored, "report": report}


results_service = ResultsService()
