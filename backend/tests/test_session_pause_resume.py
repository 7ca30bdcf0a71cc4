"""
Unit tests: pause records progress and emails a resume link; resume works for
24 hours; abandon cancels; every action is scoped to the session's email.
"""
from datetime import timedelta

import pytest

from conftest import audit_actions, emails_sent
from models import (
    AppendTurnRequest, AuditAction, CoachingSession, EmailTemplateAlias, MessageRole, SessionStatus, SessionType,
)
from utils.dates import utc_now

EMAIL = "candidate@example.com"


async def _active_session(db, session_type=SessionType.FULL_MOCK, **overrides):
    session = CoachingSession(
        **{"email": EMAIL, "session_type": session_type, "status": SessionStatus.ACTIVE, **overrides}
    )
    await db.coaching_sessions.insert_one(session.model_dump(mode="json"))
    return session


async def _add_turns(session_id, *turns):
    from services.session_service import session_service

    for role, content in turns:
        await session_service.append_turn(session_id, EMAIL, AppendTurnRequest(role=role, content=content))


def test_questions_completed_ignores_unanswered_trailing_question():
    from services.session_service import questions_completed

    messages = [
        {"role": "assistant", "content": "Question 1: Tell me about yourself?"},
        {"role": "user", "content": "I build things."},
        {"role": "assistant", "content": "Good. Question 2: Why this role?"},
    ]
    assert questions_completed(messages) == 1
    assert questions_completed(messages[:2]) == 1
    assert questions_completed([]) == 0


@pytest.mark.asyncio
async def test_pause_records_progress_and_emails_resume_link(fake_db):
    from services.session_service import session_service

    session = await _active_session(fake_db, first_name="Dana")
    await _add_turns(
        session.id,
        (MessageRole.ASSISTANT, "Question 1: Tell me about yourself?"),
        (MessageRole.USER, "I lead platform teams."),
        (MessageRole.ASSISTANT, "Question 2: What is your biggest win?"),
    )

    result = await session_service.pause_session(session.id, EMAIL)

    assert result["ok"] is True
    assert result["questions_completed"] == 1
    assert result["email_sent"] is True
    stored = await fake_db.coaching_sessions.find_one({"id": session.id})
    assert stored["paused_at"] == result["paused_at"]
    assert stored["current_question_number"] == 1
    assert stored["status"] == SessionStatus.ACTIVE.value
    [email] = emails_sent(fake_db, EmailTemplateAlias.SESSION_PAUSED)
    assert email["recipient"] == EMAIL
    assert AuditAction.SESSION_PAUSED in audit_actions(fake_db)


@pytest.mark.asyncio
async def test_quick_prep_cannot_be_paused(fake_db):
    from services.errors import InvalidStateError
    from services.session_service import session_service

    session = await _active_session(fake_db, session_type=SessionType.QUICK_PREP)
    with pytest.raises(InvalidStateError):
        await session_service.pause_session(session.id, EMAIL)


@pytest.mark.asyncio
async def test_resume_within_window_clears_pause_and_returns_history(fake_db):
    from services.session_service import session_service

    session = await _active_session(
        fake_db,
        paused_at=(utc_now() - timedelta(hours=23)).isoformat(),
        current_question_number=4,
        resume_text="Resume body",
    )
    await _add_turns(session.id, (MessageRole.ASSISTANT, "Question 5: Walk me through a conflict?"))

    result = await session_service.resume_session(session.id, EMAIL)

    assert result["ok"] is True
    assert result["current_question_number"] == 4
    assert result["documents"]["resume"] == "Resume body"
    assert [m["content"] for m in result["messages"]] == ["Question 5: Walk me through a conflict?"]
    stored = await fake_db.coaching_sessions.find_one({"id": session.id})
    assert stored["paused_at"] is None


@pytest.mark.asyncio
async def test_resume_after_24_hours_is_refused(fake_db):
    from services.session_service import EXPIRED_MESSAGE, session_service

    session = await _active_session(fake_db, paused_at=(utc_now() - timedelta(hours=25)).isoformat())
    result = await session_service.resume_session(session.id, EMAIL)

    assert result == {"ok": False, "expired": True, "message": EXPIRED_MESSAGE}
    stored = await fake_db.coaching_sessions.find_one({"id": session.id})
    assert stored["paused_at"] is not None


@pytest.mark.asyncio
async def test_resume_completed_session_is_invalid(fake_db):
    from services.errors import InvalidStateError
    from services.session_service import session_service

    session = await _active_session(fake_db, status=SessionStatus.COMPLETED)
    with pytest.raises(InvalidStateError) as exc:
        await session_service.resume_session(session.id, EMAIL)
    assert exc.value.error_code == "session_already_completed"


@pytest.mark.asyncio
async def test_other_email_cannot_touch_session(fake_db):
    from services.errors import NotFoundError
    from services.session_service import session_service

    session = await _active_session(fake_db)
    with pytest.raises(NotFoundError):
        await session_service.pause_session(session.id, "intruder@example.com")


@pytest.mark.asyncio
async def test_abandon_cancels_and_hides_from_paused_list(fake_db):
    from services.session_service import session_service

    session = await _active_session(fake_db, paused_at=(utc_now() - timedelta(hours=1)).isoformat())
    assert [s["id"] for s in await session_service.get_paused_sessions(EMAIL)] == [session.id]

    await session_service.abandon_session(session.id, EMAIL)

    stored = await fake_db.coaching_sessions.find_one({"id": session.id})
    assert stored["status"] == SessionStatus.CANCELLED.value
    assert await session_service.get_paused_sessions(EMAIL) == []


@pytest.mark.asyncio
async def test_paused_conflict_is_per_type_and_excludes_self(fake_db):
    from services.session_service import session_service

    paused = await _active_session(fake_db, paused_at=(utc_now() - timedelta(hours=2)).isoformat())

    assert (await session_service.find_paused_conflict(EMAIL, SessionType.FULL_MOCK))["id"] == paused.id
    assert await session_service.find_paused_conflict(EMAIL, SessionType.PREMIUM_AUDIO) is None
    assert await session_service.find_paused_conflict(EMAIL, SessionType.FULL_MOCK, exclude_session_id=paused.id) is None


@pytest.mark.asyncio
async def test_append_turn_dedupes_identical_retry(fake_db):
    from services.session_service import session_service

    session = await _active_session(fake_db)
    request = AppendTurnRequest(role=MessageRole.USER, content="My answer", question_number=3)
    first = await session_service.append_turn(session.id, EMAIL, request)
    second = await session_service.append_turn(session.id, EMAIL, request)

    assert "id" in first
    assert second == {"ok": True, "duplicate": True}
    assert len(fake_db.chat_messages.docs) == 1
    stored = await fake_db.coaching_sessions.find_one({"id": session.id})
    assert stored["current_question_number"] == 3


def test_session_routes_pause_and_history(client, fake_db):
    import asyncio

    session = asyncio.run(_active_session(fake_db))
    response = client.post(f"/api/sessions/{session.id}/pause", params={"email": EMAIL})
    assert response.status_code == 200
    assert response.json()["ok"] is True

    history = client.get(f"/api/sessions/{session.id}/history", params={"email": EMAIL})
    assert history.status_code == 200
    assert history.json()["paused_at"] is not None

    missing = client.post("/api/sessions/nope/resume", params={"email": EMAIL})
    assert missing.status_code == 404
    assert missing.json()["detail"]["error_code"] == "session_not_found"
