"""
Unit tests: Pro caps per rolling 30-day window, lazy reset, and the atomic start
that can never hand out more sessions than the cap.
"""
import asyncio
from datetime import timedelta

import pytest

from models import CoachingSession, Profile, SessionStatus, SessionType
from utils.dates import utc_now

EMAIL = "pro@example.com"


async def _pro_profile(db, **overrides):
    profile = Profile(
        **{
            "email": EMAIL,
            "is_pro_subscriber": True,
            "pro_session_reset_date": (utc_now() - timedelta(days=3)).isoformat(),
            **overrides,
        }
    )
    await db.profiles.insert_one(profile.model_dump())
    return profile


@pytest.mark.asyncio
async def test_exhausted_mock_is_blocked_with_reset_date_but_quick_prep_allowed(fake_db):
    from services.entitlement_service import entitlement_service

    reset = utc_now() - timedelta(days=3)
    await _pro_profile(fake_db, pro_mock_sessions_used=6, pro_session_reset_date=reset.isoformat())

    blocked = await entitlement_service.check_session_limit(EMAIL, SessionType.FULL_MOCK)
    assert blocked.allowed is False
    assert blocked.remaining == 0
    next_reset = reset + timedelta(days=30)
    assert blocked.message == (
        f"You've used all 6 Mock Interview sessions this month. "
        f"Resets on {next_reset.month}/{next_reset.day}/{next_reset.year}."
    )

    quick = await entitlement_service.check_session_limit(EMAIL, SessionType.QUICK_PREP)
    assert quick.allowed is True
    assert quick.limit is None


@pytest.mark.asyncio
async def test_stale_window_is_reset_lazily(fake_db):
    from services.entitlement_service import entitlement_service

    await _pro_profile(
        fake_db,
        pro_mock_sessions_used=6,
        pro_audio_sessions_used=2,
        pro_session_reset_date=(utc_now() - timedelta(days=31)).isoformat(),
    )

    result = await entitlement_service.check_session_limit(EMAIL, SessionType.PREMIUM_AUDIO)
    assert result.allowed is True
    assert result.reset_occurred is True
    assert result.remaining == 2

    profile = await fake_db.profiles.find_one({"email": EMAIL})
    assert profile["pro_mock_sessions_used"] == 0
    assert profile["pro_audio_sessions_used"] == 0


@pytest.mark.asyncio
async def test_missing_reset_date_counts_as_stale(fake_db):
    from services.entitlement_service import needs_reset

    assert needs_reset({"email": EMAIL}) is True
    assert needs_reset({"pro_session_reset_date": utc_now().isoformat()}) is False


@pytest.mark.asyncio
async def test_non_subscriber_is_denied(fake_db):
    from services.entitlement_service import entitlement_service

    result = await entitlement_service.check_session_limit("nobody@example.com", SessionType.FULL_MOCK)
    assert result.allowed is False
    assert result.message == "No active Pro subscription"


@pytest.mark.asyncio
async def test_start_consumes_up_to_the_cap(fake_db):
    from services.entitlement_service import entitlement_service

    await _pro_profile(fake_db, pro_audio_sessions_used=1)

    first = await entitlement_service.start_session(EMAIL, SessionType.PREMIUM_AUDIO)
    second = await entitlement_service.start_session(EMAIL, SessionType.PREMIUM_AUDIO)

    assert first.allowed is True and first.used == 2 and first.remaining == 0
    assert second.allowed is False
    assert "2 Audio Mock sessions" in second.message
    profile = await fake_db.profiles.find_one({"email": EMAIL})
    assert profile["pro_audio_sessions_used"] == 2


@pytest.mark.asyncio
async def test_concurrent_starts_never_exceed_cap(fake_db):
    from services.entitlement_service import entitlement_service

    await _pro_profile(fake_db, pro_mock_sessions_used=5)

    results = await asyncio.gather(*[
        entitlement_service.start_session(EMAIL, SessionType.FULL_MOCK) for _ in range(4)
    ])

    assert sum(1 for r in results if r.allowed) == 1
    profile = await fake_db.profiles.find_one({"email": EMAIL})
    assert profile["pro_mock_sessions_used"] == 6


@pytest.mark.asyncio
async def test_remaining_sessions_summary(fake_db):
    from services.entitlement_service import entitlement_service

    await _pro_profile(fake_db, pro_mock_sessions_used=2)
    summary = await entitlement_service.get_remaining_sessions(EMAIL)

    assert summary["is_pro"] is True
    remaining = summary["remaining_sessions"]
    assert remaining["full_mock"] == {"used": 2, "limit": 6, "remaining": 4}
    assert remaining["premium_audio"]["remaining"] == 2
    assert remaining["quick_prep"]["limit"] is None


@pytest.mark.asyncio
async def test_pro_status_uses_cached_profile_without_stripe_key(fake_db):
    from services.entitlement_service import entitlement_service

    await _pro_profile(fake_db, pro_cancel_at_period_end=True)
    status = await entitlement_service.check_pro_status(EMAIL)
    assert status["is_pro"] is True
    assert status["cancel_at_period_end"] is True


def test_subscription_period_reads_item_level_fields():
    from services.entitlement_service import subscription_period

    start, end = subscription_period({"items": {"data": [{"current_period_start": 1700000000, "current_period_end": 1702592000}]}})
    assert start.startswith("2023-11-14")
    assert end.startswith("2023-12-14")


def test_start_endpoint_requires_session_type(client, fake_db):
    response = client.post("/api/pro/start", json={"email": EMAIL})
    assert response.status_code == 400
    assert response.json()["detail"]["error_code"] == "invalid_input"


def test_check_limit_endpoint(client, fake_db):
    asyncio.run(_pro_profile(fake_db, pro_mock_sessions_used=6))
    response = client.post("/api/pro/check-limit", json={"email": EMAIL, "session_type": "full_mock"})
    assert response.status_code == 200
    assert response.json()["allowed"] is False


async def _reserved_session(db, session_type=SessionType.FULL_MOCK):
    session = CoachingSession(email=EMAIL, session_type=session_type, status=SessionStatus.PENDING, is_pro=True)
    await db.coaching_sessions.insert_one(session.model_dump(mode="json"))
    return session


@pytest.mark.asyncio
async def test_reserved_session_is_counted_once(fake_db):
    from services.entitlement_service import entitlement_service

    await _pro_profile(fake_db, pro_mock_sessions_used=2)
    session = await _reserved_session(fake_db)

    first = await entitlement_service.start_pro_session(EMAIL, SessionType.FULL_MOCK, session.id)
    again = await entitlement_service.start_pro_session(EMAIL, SessionType.FULL_MOCK, session.id)

    assert first.allowed is True and first.used == 3
    assert again.allowed is True
    profile = await fake_db.profiles.find_one({"email": EMAIL})
    assert profile["pro_mock_sessions_used"] == 3
    stored = await fake_db.coaching_sessions.find_one({"id": session.id})
    assert stored["status"] == SessionStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_reserved_session_returns_to_pending_at_the_cap(fake_db):
    from services.entitlement_service import entitlement_service
    from services.errors import InvalidStateError

    await _pro_profile(fake_db, pro_audio_sessions_used=2)
    session = await _reserved_session(fake_db, SessionType.PREMIUM_AUDIO)

    denied = await entitlement_service.start_pro_session(EMAIL, SessionType.PREMIUM_AUDIO, session.id)

    assert denied.allowed is False
    stored = await fake_db.coaching_sessions.find_one({"id": session.id})
    assert stored["status"] == SessionStatus.PENDING.value
    with pytest.raises(InvalidStateError):
        await entitlement_service.start_pro_session(EMAIL, SessionType.PREMIUM_AUDIO, "missing")


def test_start_endpoint_activates_reserved_session(client, fake_db):
    asyncio.run(_pro_profile(fake_db))
    session = asyncio.run(_reserved_session(fake_db))

    response = client.post(
        "/api/pro/start", json={"email": EMAIL, "session_type": "full_mock", "session_id": session.id},
    )
    assert response.status_code == 200
    assert response.json()["allowed"] is True
    assert asyncio.run(fake_db.coaching_sessions.find_one({"id": session.id}))["status"] == "active"

    unknown = client.post(
        "/api/pro/start", json={"email": EMAIL, "session_type": "full_mock", "session_id": "missing"},
    )
    assert unknown.status_code == 409
    assert unknown.json()["detail"]["error_code"] == "pro_session_not_found"


def test_increment_endpoint_is_admin_only(client, fake_db):
    from auth import create_access_token

    asyncio.run(_pro_profile(fake_db, pro_mock_sessions_used=6))
    body = {"email": EMAIL, "session_type": "full_mock"}
    assert client.post("/api/pro/increment", json=body).status_code == 401

    customer = create_access_token({"sub": "user-1", "email": EMAIL, "role": "ROLE_CUSTOMER"})
    assert client.post(
        "/api/pro/increment", json=body, headers={"Authorization": f"Bearer {customer}"},
    ).status_code == 403
    profile = asyncio.run(fake_db.profiles.find_one({"email": EMAIL}))
    assert profile["pro_mock_sessions_used"] == 6

    admin = create_access_token({"sub": "admin-1", "email": "owner@example.com", "role": "ROLE_ADMIN"})
    response = client.post("/api/pro/increment", json=body, headers={"Authorization": f"Bearer {admin}"})
    assert response.status_code == 200
    profile = asyncio.run(fake_db.profiles.find_one({"email": EMAIL}))
    assert profile["pro_mock_sessions_used"] == 7
