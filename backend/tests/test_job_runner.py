"""
Unit tests: the paused-session reminder job emails once per session, only
inside the 12-24 hour window.
"""
from datetime import timedelta

import pytest

from conftest import emails_sent
from models import CoachingSession, EmailTemplateAlias, SessionStatus, SessionType
from utils.dates import utc_now


async def _paused(db, hours_ago, **fields):
    session = CoachingSession(
        email=f"paused{hours_ago}@example.com",
        session_type=SessionType.FULL_MOCK,
        status=SessionStatus.ACTIVE,
        paused_at=(utc_now() - timedelta(hours=hours_ago)).isoformat(),
        current_question_number=3,
        **fields,
    )
    await db.coaching_sessions.insert_one(session.model_dump(mode="json"))
    return session


@pytest.mark.asyncio
async def test_reminder_sent_once_inside_window(fake_db):
    from job_runner import run_paused_session_reminders

    session = await _paused(fake_db, 13)

    first = await run_paused_session_reminders()
    second = await run_paused_session_reminders()

    assert first["count"] == 1
    assert second["count"] == 0
    [reminder] = emails_sent(fake_db, EmailTemplateAlias.SESSION_PAUSED_REMINDER)
    assert reminder["recipient"] == session.email
    stored = await fake_db.coaching_sessions.find_one({"id": session.id})
    assert stored["pause_reminder_sent_at"] is not None


@pytest.mark.asyncio
@pytest.mark.parametrize("hours_ago", [2, 30])
async def test_no_reminder_outside_window(fake_db, hours_ago):
    from job_runner import run_paused_session_reminders

    await _paused(fake_db, hours_ago)
    result = await run_paused_session_reminders()

    assert result["count"] == 0
    assert emails_sent(fake_db, EmailTemplateAlias.SESSION_PAUSED_REMINDER) == []


@pytest.mark.asyncio
async def test_completed_or_resumed_sessions_are_skipped(fake_db):
    from job_runner import run_paused_session_reminders

    done = CoachingSession(
        email="done@example.com", session_type=SessionType.FULL_MOCK, status=SessionStatus.COMPLETED,
        paused_at=(utc_now() - timedelta(hours=13)).isoformat(),
    )
    await fake_db.coaching_sessions.insert_one(done.model_dump(mode="json"))
    resumed = CoachingSession(email="back@example.com", session_type=SessionType.FULL_MOCK, status=SessionStatus.ACTIVE)
    await fake_db.coaching_sessions.insert_one(resumed.model_dump(mode="json"))

    assert (await run_paused_session_reminders())["count"] == 0
