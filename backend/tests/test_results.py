"""
Unit tests: results composition (transcript, analysis markdown, JSON fallback),
completion, emailing, and the stored report being returned on repeat calls.
"""
import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from conftest import audit_actions, emails_sent
from models import AuditAction, ChatMessage, CoachingSession, EmailTemplateAlias, MessageRole, SessionStatus, SessionType

EMAIL = "candidate@example.com"

ANALYSIS = {
    "overall_score": 78,
    "score_breakdown": {"clarity": 80, "structure": 75},
    "strengths": [
        {"title": "Concrete metrics", "evidence_quote": "cut latency by 40%", "why_it_matters": "Shows impact"},
    ],
    "improvements": [
        {"title": "Tighter openings", "evidence_quote": "so, um, basically", "fix": "Lead with the result"},
    ],
    "action_items": ["Practice STAR", "Research the team", "Prepare two questions"],
    "per_question": [
        {"question_number": 2, "question": "Why us?", "score": 7, "answer_summary": "Mission fit"},
        {"question_number": 1, "question": "Tell me about yourself", "score": 8, "answer_summary": "Career arc"},
    ],
}


async def _session_with_chat(db, session_type=SessionType.FULL_MOCK, **overrides):
    session = CoachingSession(**{"email": EMAIL, "session_type": session_type, "status": SessionStatus.ACTIVE, **overrides})
    await db.coaching_sessions.insert_one(session.model_dump(mode="json"))
    turns = [
        (MessageRole.ASSISTANT, "Question 1: Tell me about yourself?", "2026-01-01T10:00:00+00:00"),
        (MessageRole.USER, "I cut latency by 40%.", "2026-01-01T10:01:00+00:00"),
        (MessageRole.ASSISTANT, "## INTERVIEW COMPLETE", "2026-01-01T10:02:00+00:00"),
    ]
    for role, content, created_at in turns:
        message = ChatMessage(session_id=session.id, role=role, content=content, created_at=created_at)
        await db.chat_messages.insert_one(message.model_dump(mode="json"))
    return session


def test_transcript_format():
    from services.results_service import build_transcript

    transcript = build_transcript([
        {"role": "user", "content": "Answer", "created_at": "2026-01-01T10:01:00"},
        {"role": "assistant", "content": "Question?", "created_at": "2026-01-01T10:00:00"},
    ])
    assert transcript == "Sarah (Coach):\nQuestion?\n---\nYou:\nAnswer"


def test_question_answer_pairing():
    from services.results_service import parse_question_answers

    pairs = parse_question_answers([
        {"role": "assistant", "content": "Welcome aboard."},
        {"role": "assistant", "content": "Tell me about a project you led."},
        {"role": "user", "content": "   "},
        {"role": "user", "content": "I led payments."},
        {"role": "user", "content": "It shipped on time."},
        {"role": "assistant", "content": "Q2: A failure?"},
        {"role": "user", "content": "A missed launch."},
        {"role": "assistant", "content": "Thanks, that wraps it up."},
    ])
    assert pairs == [
        {"question_number": 1, "question": "Tell me about a project you led.", "answer": "I led payments."},
        {"question_number": 2, "question": "Q2: A failure?", "answer": "A missed launch."},
    ]
    # A candidate turn before any coach turn has nothing to answer
    assert parse_question_answers([{"role": "user", "content": "Hello?"}]) == []


def test_parse_analysis_accepts_wrapped_json():
    from services.results_service import ResultsGenerationError, parse_analysis

    wrapped = "Here is the report:\n```json\n" + json.dumps(ANALYSIS) + "\n```"
    assert parse_analysis(wrapped)["overall_score"] == 78
    with pytest.raises(ResultsGenerationError):
        parse_analysis("no json here")


def test_analysis_markdown_sections():
    from services.results_service import build_analysis_markdown

    markdown = build_analysis_markdown(ANALYSIS)
    assert markdown.startswith("# Final Summary")
    assert "Overall Score: 78/100" in markdown
    assert "## Score Breakdown" in markdown
    assert "## Top Strengths (with evidence)" in markdown
    assert "## Top Improvements (specific + fix)" in markdown
    assert "## Personalized Action Items" in markdown
    assert "# Interview Transcript Review (10 Questions)" in markdown
    assert markdown.index("## Question 1") < markdown.index("## Question 2")


def test_compact_results():
    from services.results_service import compact_results

    summary = compact_results(ANALYSIS)
    assert summary["overall_score"] == 78
    assert summary["strengths"] == ["Concrete metrics — “cut latency by 40%”"]
    assert summary["recommendations"] == "Practice STAR\nResearch the team\nPrepare two questions"
    assert compact_results(None)["overall_score"] is None


def test_long_transcript_is_truncated_in_prompt():
    from services.results_service import MAX_TRANSCRIPT_CHARS, TRUNCATION_NOTE, build_analysis_prompt

    prompt = build_analysis_prompt("full_mock", None, "x" * (MAX_TRANSCRIPT_CHARS + 10))
    assert prompt.endswith(TRUNCATION_NOTE)


@pytest.mark.asyncio
async def test_send_results_completes_session_and_emails_report(fake_db):
    from services.results_service import results_service

    session = await _session_with_chat(fake_db, prep_packet={"content": "# Prep"})
    analyze = AsyncMock(return_value=json.dumps(ANALYSIS))
    with patch("services.results_service.chat", analyze):
        outcome = await results_service.send_results(session.id, EMAIL)

    assert outcome["success"] is True
    assert outcome["email_sent"] is True
    report = outcome["report"]
    assert report["prepPacket"] == "# Prep"
    assert report["transcript"].startswith("Sarah (Coach):\nQuestion 1")
    assert "Overall Score: 78/100" in report["analysisMarkdown"]
    assert report["questions"][0]["answer"] == "I cut latency by 40%."

    stored = await fake_db.coaching_sessions.find_one({"id": session.id})
    assert stored["status"] == SessionStatus.COMPLETED.value
    assert stored["completed_at"] is not None
    assert stored["report"] == report
    [result_row] = fake_db.session_results.docs
    assert result_row["overall_score"] == 78
    assert result_row["email_sent"] is True
    assert len(emails_sent(fake_db, EmailTemplateAlias.SESSION_RESULTS)) == 1


@pytest.mark.asyncio
async def test_repeat_send_returns_stored_report_without_new_analysis(fake_db):
    from services.results_service import results_service

    session = await _session_with_chat(fake_db)
    analyze = AsyncMock(return_value=json.dumps(ANALYSIS))
    with patch("services.results_service.chat", analyze):
        first = await results_service.send_results(session.id, EMAIL)
        second = await results_service.send_results(session.id, EMAIL)

    assert analyze.await_count == 1
    assert second["already_completed"] is True
    assert second["report"] == first["report"]
    assert len(fake_db.session_results.docs) == 1
    assert len(emails_sent(fake_db, EmailTemplateAlias.SESSION_RESULTS)) == 1


@pytest.mark.asyncio
async def test_concurrent_sends_complete_the_session_once(fake_db):
    from services.results_service import results_service
    from services.session_service import session_service

    session = await _session_with_chat(fake_db)
    load_history = session_service.get_history_messages

    async def interleaved_history(session_id):
        # Hand control to the other request between its status read and its write
        await asyncio.sleep(0)
        return await load_history(session_id)

    analyze = AsyncMock(return_value=json.dumps(ANALYSIS))
    with patch.object(session_service, "get_history_messages", interleaved_history), \
            patch("services.results_service.chat", analyze):
        outcomes = await asyncio.gather(
            results_service.send_results(session.id, EMAIL),
            results_service.send_results(session.id, EMAIL),
        )

    assert [bool(o.get("already_completed")) for o in outcomes].count(True) == 1
    assert outcomes[0]["report"] == outcomes[1]["report"]
    assert len(fake_db.session_results.docs) == 1
    assert len(emails_sent(fake_db, EmailTemplateAlias.SESSION_RESULTS)) == 1
    assert audit_actions(fake_db).count(AuditAction.SESSION_COMPLETED) == 1


@pytest.mark.asyncio
async def test_quick_prep_report_needs_no_analysis_call(fake_db):
    from services.results_service import results_service

    session = await _session_with_chat(fake_db, session_type=SessionType.QUICK_PREP)
    analyze = AsyncMock()
    with patch("services.results_service.chat", analyze):
        outcome = await results_service.send_results(session.id, EMAIL)

    analyze.assert_not_called()
    # No stored packet: the last coach turn stands in for it
    assert outcome["report"]["prepPacket"] == "## INTERVIEW COMPLETE"
    assert outcome["report"]["analysisMarkdown"] is None


@pytest.mark.asyncio
async def test_analysis_failure_keeps_session_active(fake_db):
    from services.results_service import ResultsGenerationError, results_service

    session = await _session_with_chat(fake_db)
    with pytest.raises(ResultsGenerationError):
        await results_service.send_results(session.id, EMAIL)

    stored = await fake_db.coaching_sessions.find_one({"id": session.id})
    assert stored["status"] == SessionStatus.ACTIVE.value
    assert fake_db.error_logs.docs[0]["error_type"] == "general"


@pytest.mark.asyncio
async def test_wrong_email_and_pending_status_are_refused(fake_db):
    from services.errors import InvalidStateError, NotFoundError
    from services.results_service import results_service

    session = await _session_with_chat(fake_db)
    with pytest.raises(NotFoundError):
        await results_service.send_results(session.id, "other@example.com")

    pending = await _session_with_chat(fake_db, status=SessionStatus.PENDING)
    with pytest.raises(InvalidStateError):
        await results_service.send_results(pending.id, EMAIL)


def test_results_endpoint_unknown_session(client, fake_db):
    response = client.post("/api/results/send", json={"session_id": "missing", "email": EMAIL})
    assert response.status_code == 404
