"""
Unit tests: checkout is server-priced, applies only the winning discount as a
one-time coupon and refuses unexpected checkout URLs.
"""
from unittest.mock import MagicMock, patch

import pytest

from models import CoachingSession, DiscountCode, SessionStatus, SessionType

EMAIL = "buyer@example.com"


def _stripe_mocks(url="https://checkout.stripe.com/c/pay/cs_test_abc", checkout_id="cs_test_abc"):
    customers = MagicMock()
    customers.data = []
    coupon = MagicMock()
    coupon.id = "coupon_once"
    checkout = MagicMock()
    checkout.id = checkout_id
    checkout.url = url
    return customers, coupon, checkout


@pytest.mark.asyncio
async def test_upgrade_credit_beats_promo_on_full_mock(fake_db, monkeypatch):
    """$29 mock with a recent $12 quick prep and a 17% promo: credit wins, buyer pays $17."""
    from services.stripe_service import stripe_service

    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    prior = CoachingSession(email=EMAIL, session_type=SessionType.QUICK_PREP, status=SessionStatus.ACTIVE)
    await fake_db.coaching_sessions.insert_one(prior.model_dump(mode="json"))
    promo = DiscountCode(code="SPRING", discount_percent=17)
    await fake_db.discount_codes.insert_one(promo.model_dump(mode="json"))

    customers, coupon, checkout = _stripe_mocks()
    with patch("stripe.Customer.list", return_value=customers), \
         patch("stripe.Coupon.create", return_value=coupon) as coupon_create, \
         patch("stripe.checkout.Session.create", return_value=checkout) as session_create:
        response = await stripe_service.create_checkout(
            SessionType.FULL_MOCK, EMAIL, origin="https://coach.example.com", discount_code_id=promo.id
        )

    assert response.original_price == 2900
    assert response.final_price == 1700
    assert response.upgrade_credit_applied == 1200
    assert response.discount_applied == 0
    assert response.applied_discount_label == "Upgrade credit"
    assert response.url == checkout.url

    assert coupon_create.call_args.kwargs["amount_off"] == 1200
    assert coupon_create.call_args.kwargs["duration"] == "once"
    params = session_create.call_args.kwargs
    assert params["discounts"] == [{"coupon": "coupon_once"}]
    assert params["customer_email"] == EMAIL
    assert params["metadata"]["discount_code_id"] == ""
    assert params["success_url"].startswith("https://coach.example.com/interview-coach?session_type=full_mock")

    session = await fake_db.coaching_sessions.find_one({"id": response.session_id})
    assert session["status"] == SessionStatus.PENDING.value
    assert session["stripe_checkout_session_id"] == "cs_test_abc"
    assert session["upgraded_from_session"] == prior.id
    assert session["discount_code_id"] is None


@pytest.mark.asyncio
async def test_winning_promo_is_tied_to_session(fake_db, monkeypatch):
    from services.stripe_service import stripe_service

    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    promo = DiscountCode(code="HALF", discount_percent=50)
    await fake_db.discount_codes.insert_one(promo.model_dump(mode="json"))

    customers, coupon, checkout = _stripe_mocks()
    with patch("stripe.Customer.list", return_value=customers), \
         patch("stripe.Coupon.create", return_value=coupon), \
         patch("stripe.checkout.Session.create", return_value=checkout):
        response = await stripe_service.create_checkout(SessionType.FULL_MOCK, EMAIL, discount_code_id=promo.id)

    assert response.final_price == 1450
    assert response.discount_applied == 1450
    assert response.applied_discount_label == "Promo"
    session = await fake_db.coaching_sessions.find_one({"id": response.session_id})
    assert session["discount_code_id"] == promo.id


@pytest.mark.asyncio
async def test_no_discount_skips_coupon(fake_db, monkeypatch):
    from services.stripe_service import stripe_service

    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    customers, coupon, checkout = _stripe_mocks()
    with patch("stripe.Customer.list", return_value=customers), \
         patch("stripe.Coupon.create", return_value=coupon) as coupon_create, \
         patch("stripe.checkout.Session.create", return_value=checkout) as session_create:
        response = await stripe_service.create_checkout(SessionType.QUICK_PREP, EMAIL)

    assert response.final_price == 1200
    coupon_create.assert_not_called()
    assert "discounts" not in session_create.call_args.kwargs
    assert session_create.call_args.kwargs["mode"] == "payment"


@pytest.mark.asyncio
async def test_live_key_rejects_test_mode_checkout_url(fake_db, monkeypatch):
    from services.stripe_service import CheckoutConfigurationError, stripe_service

    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_live_123")
    customers, coupon, checkout = _stripe_mocks()
    with patch("stripe.Customer.list", return_value=customers), \
         patch("stripe.checkout.Session.create", return_value=checkout):
        with pytest.raises(CheckoutConfigurationError):
            await stripe_service.create_checkout(SessionType.QUICK_PREP, EMAIL)

    # The buyer never saw a payment page, so nothing is left pending
    [session] = fake_db.coaching_sessions.docs
    assert session["status"] == SessionStatus.CANCELLED.value
    assert session["stripe_checkout_session_id"] is None


@pytest.mark.asyncio
async def test_stripe_failure_cancels_the_unpaid_session(fake_db, monkeypatch):
    import stripe

    from services.stripe_service import CheckoutProviderError, stripe_service

    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    customers, coupon, checkout = _stripe_mocks()
    with patch("stripe.Customer.list", return_value=customers), \
         patch("stripe.checkout.Session.create", side_effect=stripe.error.APIConnectionError("network down")):
        with pytest.raises(CheckoutProviderError):
            await stripe_service.create_checkout(SessionType.QUICK_PREP, EMAIL)

    assert [s["status"] for s in fake_db.coaching_sessions.docs] == [SessionStatus.CANCELLED.value]


def test_validate_checkout_url_rules():
    from services.stripe_service import CheckoutConfigurationError, validate_checkout_url

    ok = "https://checkout.stripe.com/c/pay/cs_live_1"
    assert validate_checkout_url(ok, live_mode=True) == ok
    for bad in ("http://checkout.stripe.com/c/pay/cs_live_1", "https://evil.example.com/pay", None):
        with pytest.raises(CheckoutConfigurationError):
            validate_checkout_url(bad, live_mode=False)


def test_checkout_endpoint_without_stripe_key_returns_503(client):
    response = client.post("/api/checkout/create", json={"session_type": "full_mock", "email": EMAIL})
    assert response.status_code == 503
    assert response.json()["detail"]["error_code"] == "checkout_configuration_error"
