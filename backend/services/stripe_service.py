"""Stripe checkout and billing portal.

Checkout is server-authoritative: the price comes from the product catalog,
the discount is re-validated here, and only the single winning discount is
sent to Stripe as a one-time amount_off coupon.
"""
import asyncio
import logging
import os
from datetime import timedelta
from typing import Optional
from urllib.parse import quote, urlparse

import stripe

from database import database
from models import AuditAction, CheckoutResponse, CoachingSession, SessionStatus, SessionType
from services.discount_service import discount_service
from services.errors import ConfigurationError, NotFoundError, ProviderError, ServiceError
from services.pricing import UPGRADE_CREDIT_WINDOW_HOURS, DiscountWinner, resolve_price, upgrade_credit_for
from services.product_catalog import get_label, get_price_cents, get_stripe_price_id, is_recurring
from utils.audit import create_audit_log
from utils.dates import utc_now, utc_now_iso
from utils.public_app_url import get_public_app_url

logger = logging.getLogger(__name__)

CHECKOUT_TIMEOUT_SECONDS = 20
ALLOWED_CHECKOUT_HOSTS = {"checkout.stripe.com"}


class CheckoutConfigurationError(ConfigurationError):
    default_code = "checkout_configuration_error"


class CheckoutTimeoutError(ServiceError):
    status_code = 504
    default_code = "checkout_timeout"


class CheckoutProviderError(ProviderError):
    default_code = "checkout_failed"


def get_stripe_key() -> str:
    """Prefer STRIPE_SECRET_KEY; fall back to STRIPE_API_KEY."""
    return (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()


def require_stripe_key() -> str:
    key = get_stripe_key()
    if not key:
        raise CheckoutConfigurationError("Payment processing is not configured")
    stripe.api_key = key
    return key


def normalize_origin(origin: Optional[str]) -> str:
    origin = (origin or "").strip().rstrip("/")
    if not origin.startswith(("http://", "https://")):
        return get_public_app_url()
    return origin


def validate_checkout_url(url: Optional[str], live_mode: bool) -> str:
    """Reject checkout URLs that would send a live customer somewhere unexpected."""
    parsed = urlparse(url or "")
    if parsed.scheme != "https" or parsed.hostname not in ALLOWED_CHECKOUT_HOSTS:
        raise CheckoutConfigurationError(
            "Checkout returned an unexpected payment page",
            extra={"checkout_url_host": parsed.hostname},
        )
    if live_mode and "/cs_test_" in parsed.path:
        raise CheckoutConfigurationError(
            "Checkout returned a test-mode payment page while running live",
            extra={"checkout_url_host": parsed.hostname},
        )
    return url


async def call_stripe(fn, *args, **kwargs):
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(None, lambda: fn(*args, **kwargs))


class StripeService:

    async def _recent_active_purchases(self, email: str) -> list:
        db = database.get_db()
        since = (utc_now() - timedelta(hours=UPGRADE_CREDIT_WINDOW_HOURS)).isoformat()
        cursor = db.coaching_sessions.find(
            {"email": email, "status": SessionStatus.ACTIVE.value, "created_at": {"$gte": since}},
            {"_id": 0, "id": 1, "session_type": 1, "created_at": 1},
        ).sort("created_at", -1)
        return await cursor.to_list(length=50)

    async def create_checkout(
        self,
        product_type: SessionType,
        email: str,
        origin: Optional[str] = None,
        discount_code_id: Optional[str] = None,
    ) -> CheckoutResponse:
        """Create a pending session and a Stripe hosted checkout for it."""
        product_type = SessionType(product_type)
        email = email.strip().lower()
        key = require_stripe_key()
        price_id = get_stripe_price_id(product_type)
        if not price_id:
            raise CheckoutConfigurationError(f"No Stripe price configured for {product_type.value}")

        base_price = get_price_cents(product_type)
        credit, upgraded_from = 0, None
        if not is_recurring(product_type):
            credit, upgraded_from = upgrade_credit_for(product_type, await self._recent_active_purchases(email))

        discount_percent = 0
        if discount_code_id:
            discount_percent = await discount_service.get_valid_percent(discount_code_id, email, product_type)
            if not discount_percent:
                logger.info(f"Discount {discount_code_id} no longer valid for {email}, ignoring")

        breakdown = resolve_price(base_price, credit, discount_percent)
        # Only a promo that actually won is tied to the session for redemption
        applied_code_id = discount_code_id if breakdown.winner == DiscountWinner.PROMO else None

        db = database.get_db()
        session = CoachingSession(
            email=email,
            session_type=product_type,
            upgraded_from_session=upgraded_from if breakdown.winner == DiscountWinner.UPGRADE_CREDIT else None,
            upgrade_credit_applied=breakdown.applied_discount_cents if breakdown.winner == DiscountWinner.UPGRADE_CREDIT else 0,
            discount_code_id=applied_code_id,
        )
        await db.coaching_sessions.insert_one(session.model_dump(mode="json"))
        logger.info(f"Created pending session {session.id} type={product_type.value}")

        base = normalize_origin(origin)
        params = {
            "line_items": [{"price": price_id, "quantity": 1}],
            "mode": "subscription" if is_recurring(product_type) else "payment",
            "success_url": (
                f"{base}/interview-coach?session_type={product_type.value}"
                f"&email={quote(email)}&checkout_session_id={{CHECKOUT_SESSION_ID}}"
            ),
            "cancel_url": f"{base}/?canceled=true",
            "metadata": {
                "session_id": session.id,
                "session_type": product_type.value,
                "upgraded_from_session": session.upgraded_from_session or "",
                "upgrade_credit_applied": str(session.upgrade_credit_applied),
                "discount_code_id": applied_code_id or "",
            },
        }

        try:
            checkout = await asyncio.wait_for(
                self._create_stripe_checkout(params, email, breakdown, product_type),
                timeout=CHECKOUT_TIMEOUT_SECONDS,
            )
            url = validate_checkout_url(checkout.url, key.startswith("sk_live_"))
        except asyncio.TimeoutError:
            logger.error(f"Stripe checkout timed out for session {session.id}")
            await self._cancel_unpaid(session.id)
            raise CheckoutTimeoutError("Payment provider took too long to respond. Please try again.")
        except stripe.error.StripeError as e:
            logger.error(f"Stripe checkout error for session {session.id}: {e}")
            await self._cancel_unpaid(session.id)
            raise CheckoutProviderError(f"Failed to create checkout session: {str(e)}")
        except CheckoutConfigurationError as e:
            logger.error(f"Rejected checkout page for session {session.id}: {e.message}")
            await self._cancel_unpaid(session.id)
            raise

        await db.coaching_sessions.update_one(
            {"id": session.id},
            {"$set": {"stripe_checkout_session_id": checkout.id, "updated_at": utc_now_iso()}},
        )
        await create_audit_log(
            action=AuditAction.CHECKOUT_CREATED,
            actor_role="CUSTOMER",
            actor_id=email,
            resource_type="coaching_session",
            resource_id=session.id,
            metadata={
                "checkout_session_id": checkout.id,
                "session_type": product_type.value,
                "final_price": breakdown.final_price_cents,
                "winner": breakdown.winner.value,
            },
        )
        logger.info(
            f"Checkout session created {checkout.id} for {session.id} "
            f"base={base_price} final={breakdown.final_price_cents} winner={breakdown.winner.value}"
        )

        return CheckoutResponse(
            url=url,
            session_id=session.id,
            original_price=base_price,
            final_price=breakdown.final_price_cents,
            upgrade_credit_applied=session.upgrade_credit_applied,
            discount_applied=breakdown.applied_discount_cents if breakdown.winner == DiscountWinner.PROMO else 0,
            applied_discount_label=breakdown.label,
        )

    async def _cancel_unpaid(self, session_id: str):
        """A session whose checkout never reached the buyer can't be paid for."""
        db = database.get_db()
        await db.coaching_sessions.update_one(
            {"id": session_id, "status": SessionStatus.PENDING.value, "stripe_checkout_session_id": None},
            {"$set": {"status": SessionStatus.CANCELLED.value, "updated_at": utc_now_iso()}},
        )

    async def _create_stripe_checkout(self, params: dict, email: str, breakdown, product_type: SessionType):
        customers = await call_stripe(stripe.Customer.list, email=email, limit=1)
        if customers.data:
            params["customer"] = customers.data[0].id
        else:
            params["customer_email"] = email

        if breakdown.applied_discount_cents > 0:
            coupon = await call_stripe(
                stripe.Coupon.create,
                amount_off=breakdown.applied_discount_cents,
                currency="usd",
                duration="once",
                max_redemptions=1,
                name=f"{breakdown.label} - {get_label(product_type)}",
            )
            params["discounts"] = [{"coupon": coupon.id}]

        return await call_stripe(stripe.checkout.Session.create, **params)

    async def find_customer_id(self, email: str) -> Optional[str]:
        """Stored customer id from the profile, else a Stripe lookup by email."""
        db = database.get_db()
        profile = await db.profiles.find_one({"email": email}, {"_id": 0})
        if profile and profile.get("stripe_customer_id"):
            return profile["stripe_customer_id"]

        customers = await call_stripe(stripe.Customer.list, email=email, limit=1)
        if not customers.data:
            return None
        customer_id = customers.data[0].id
        if profile:
            await db.profiles.update_one({"email": email}, {"$set": {"stripe_customer_id": customer_id}})
        return customer_id

    async def create_portal_session(self, email: str, origin: Optional[str] = None) -> str:
        """Billing portal URL for a Pro subscriber."""
        require_stripe_key()
        email = email.strip().lower()
        try:
            customer_id = await self.find_customer_id(email)
            if not customer_id:
                raise NotFoundError("No Stripe customer found for this email", error_code="customer_not_found")
            portal = await call_stripe(
                stripe.billing_portal.Session.create,
                customer=customer_id,
                return_url=f"{normalize_origin(origin)}/dashboard",
            )
        except stripe.error.StripeError as e:
            logger.error(f"Stripe portal error for {email}: {e}")
            raise CheckoutProviderError(f"Failed to create billing portal session: {str(e)}")

        logger.info(f"Billing portal session created for {email}")
        return portal.url


stripe_service = StripeService()
