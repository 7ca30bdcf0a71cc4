"""
Unit tests: payment verification activates a pending session exactly once,
never reactivates a completed one, and falls back to email lookups.
"""
from unittest.mock import patch

import pytest

from conftest import audit_actions, emails_sent
from models import AuditAction, CoachingSession, DiscountCode, EmailTemplateAlias, SessionStatus, SessionType

EMAIL = "buyer@example.com"
CHECKOUT_ID = "cs_test_verify_001"


def _paid_checkout(**metadata):
    return {
        "id": CHECKOUT_ID,
        "payment_status": "paid",
        "payment_intent": "pi_001",
        "amount_total": 2900,
        "metadata": metadata,
    }


async def _pending_session(db, **overrides):
    session = CoachingSession(
        **{"email": EMAIL, "session_type": SessionType.FULL_MOCK, "stripe_checkout_session_id": CHECKOUT_ID, **overrides}
    )
    await db.coaching_sessions.insert_one(session.model_dump(mode="json"))
    return session


@pytest.mark.asyncio
async def test_first_verify_activates_and_sends_one_email(fake_db, monkeypatch):
    from services.payment_verifier import payment_verifier

    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    session = await _pending_session(fake_db)

    with patch("stripe.checkout.Session.retrieve", return_value=_paid_checkout()):
        first = await payment_verifier.verify(EMAIL, SessionType.FULL_MOCK, CHECKOUT_ID)
        second = await payment_verifier.verify(EMAIL, SessionType.FULL_MOCK, CHECKOUT_ID)

    assert first.verified and second.verified
    assert first.session_id == second.session_id == session.id
    stored = await fake_db.coaching_sessions.find_one({"id": session.id})
    assert stored["status"] == SessionStatus.ACTIVE.value
    assert stored["amount_paid"] == 2900
    assert len(emails_sent(fake_db, EmailTemplateAlias.PURCHASE_CONFIRMATION)) == 1
    assert audit_actions(fake_db).count(AuditAction.PAYMENT_VERIFIED) == 1


@pytest.mark.asyncio
async def test_upgrade_purchase_gets_upgrade_email_and_redeems_code(fake_db, monkeypatch):
    from services.payment_verifier import payment_verifier

    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    code = DiscountCode(code="X10", discount_percent=10)
    await fake_db.discount_codes.insert_one(code.model_dump(mode="json"))
    await _pending_session(fake_db, upgrade_credit_applied=1200, discount_code_id=code.id)

    with patch("stripe.checkout.Session.retrieve", return_value=_paid_checkout()):
        result = await payment_verifier.verify(EMAIL, SessionType.FULL_MOCK, CHECKOUT_ID)

    assert result.verified
    assert len(emails_sent(fake_db, EmailTemplateAlias.UPGRADE_CONFIRMATION)) == 1
    assert len(fake_db.discount_code_usage.docs) == 1


@pytest.mark.asyncio
async def test_unpaid_checkout_is_not_verified(fake_db, monkeypatch):
    from services.payment_verifier import payment_verifier

    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    await _pending_session(fake_db)
    with patch("stripe.checkout.Session.retrieve", return_value={"payment_status": "unpaid"}):
        result = await payment_verifier.verify(EMAIL, SessionType.FULL_MOCK, CHECKOUT_ID)

    assert result.verified is False
    assert result.message == "Payment not completed"
    assert emails_sent(fake_db) == []


@pytest.mark.asyncio
async def test_completed_session_returns_stored_report_and_stays_completed(fake_db, monkeypatch):
    from services.payment_verifier import payment_verifier

    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    report = {"prepPacket": None, "transcript": "t", "analysisMarkdown": "# Final Summary"}
    session = await _pending_session(fake_db, status=SessionStatus.COMPLETED, report=report)
    await fake_db.session_results.insert_one({"session_id": session.id, "overall_score": 81})

    with patch("stripe.checkout.Session.retrieve", return_value=_paid_checkout()):
        result = await payment_verifier.verify(EMAIL, SessionType.FULL_MOCK, CHECKOUT_ID)

    assert result.verified is False
    assert result.session_status == SessionStatus.COMPLETED
    assert result.report == report
    assert result.results["overall_score"] == 81
    stored = await fake_db.coaching_sessions.find_one({"id": session.id})
    assert stored["status"] == SessionStatus.COMPLETED.value
    assert emails_sent(fake_db) == []


@pytest.mark.asyncio
async def test_email_lookup_finds_active_session(fake_db):
    from services.payment_verifier import payment_verifier

    session = await _pending_session(fake_db, status=SessionStatus.ACTIVE, stripe_checkout_session_id=None)
    result = await payment_verifier.verify(EMAIL.upper(), SessionType.FULL_MOCK)
    assert result.verified is True
    assert result.session_id == session.id


@pytest.mark.asyncio
async def test_email_lookup_skips_paused_session(fake_db):
    from services.payment_verifier import payment_verifier

    await _pending_session(
        fake_db, status=SessionStatus.ACTIVE, stripe_checkout_session_id=None, paused_at="2026-01-01T00:00:00+00:00"
    )
    result = await payment_verifier.verify(EMAIL, SessionType.FULL_MOCK)
    assert result.verified is False
    assert result.message == "No valid payment or subscription found"


@pytest.mark.asyncio
async def test_email_lookup_creates_session_for_pro_subscriber(fake_db, monkeypatch):
    from services.payment_verifier import payment_verifier

    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    with patch.object(payment_verifier, "has_active_subscription", return_value=True):
        result = await payment_verifier.verify(EMAIL, SessionType.FULL_MOCK)
        again = await payment_verifier.verify(EMAIL, SessionType.FULL_MOCK)

    assert result.verified and result.is_pro
    assert result.session_status == SessionStatus.PENDING
    created = await fake_db.coaching_sessions.find_one({"id": result.session_id})
    # Reserved until a monthly slot is taken at start
    assert created["status"] == SessionStatus.PENDING.value
    assert created["is_pro"] is True
    assert again.session_id == result.session_id and again.is_pro
    assert len(fake_db.coaching_sessions.docs) == 1


def test_verify_endpoint(client, fake_db):
    response = client.post("/api/payments/verify", json={"email": EMAIL, "session_type": "quick_prep"})
    assert response.status_code == 200
    assert response.json()["verified"] is False
