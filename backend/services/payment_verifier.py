"""Payment verification for the interview page.

Called when the buyer lands back from Stripe (with a checkout session id) or
returns later with only their email. Verification is idempotent: a completed
session is never reactivated and the purchase email goes out exactly once,
on the pending -> active transition.
"""
import logging
from typing import Optional

import stripe

from database import database
from models import (
    AuditAction, CoachingSession, EmailTemplateAlias, SessionStatus, SessionType, VerificationResult,
)
from services.discount_service import discount_service
from services.email_service import email_service
from services.email_templates import build_purchase_confirmation_email
from services.errors import ProviderError
from services.product_catalog import get_label
from services.stripe_service import call_stripe, get_stripe_key, require_stripe_key
from utils.audit import create_audit_log
from utils.dates import utc_now_iso
from utils.public_app_url import session_url

logger = logging.getLogger(__name__)


class PaymentVerificationError(ProviderError):
    default_code = "payment_verification_failed"


def _metadata_int(metadata: dict, key: str) -> int:
    try:
        return int(metadata.get(key) or 0)
    except (TypeError, ValueError):
        return 0


class PaymentVerifier:

    async def verify(
        self,
        email: str,
        session_type: SessionType,
        checkout_session_id: Optional[str] = None,
    ) -> VerificationResult:
        email = email.strip().lower()
        session_type = SessionType(session_type)
        try:
            if checkout_session_id:
                return await self._verify_checkout(email, checkout_session_id)
            return await self._verify_by_email(email, session_type)
        except stripe.error.StripeError as e:
            logger.error(f"Payment verification failed for {email}: {e}")
            raise PaymentVerificationError(f"Could not verify payment: {str(e)}")

    async def _completed_result(self, session: dict) -> VerificationResult:
        db = database.get_db()
        results = await db.session_results.find_one({"session_id": session["id"]}, {"_id": 0})
        return VerificationResult(
            verified=False,
            session_id=session["id"],
            session_status=SessionStatus.COMPLETED,
            message="Session already completed",
            results=results,
            report=session.get("report"),
        )

    async def _verify_checkout(self, email: str, checkout_session_id: str) -> VerificationResult:
        require_stripe_key()
        checkout = await call_stripe(stripe.checkout.Session.retrieve, checkout_session_id)
        logger.info(f"Retrieved checkout session {checkout_session_id} payment_status={checkout.get('payment_status')}")

        if checkout.get("payment_status") != "paid":
            return VerificationResult(verified=False, message="Payment not completed")

        db = database.get_db()
        session = await db.coaching_sessions.find_one(
            {"stripe_checkout_session_id": checkout_session_id},
            {"_id": 0}
        )
        if not session:
            logger.warning(f"No coaching session linked to checkout {checkout_session_id}")
            return VerificationResult(verified=False, message="No session found for this payment")

        if session["status"] == SessionStatus.COMPLETED.value:
            logger.info(f"Checkout {checkout_session_id} belongs to completed session {session['id']}")
            return await self._completed_result(session)

        if session["status"] == SessionStatus.ACTIVE.value:
            return VerificationResult(
                verified=True,
                session_id=session["id"],
                session_status=SessionStatus.ACTIVE,
                message="Payment verified successfully",
            )

        metadata = checkout.get("metadata") or {}
        # Conditional on the current status so two concurrent verifies send one email
        result = await db.coaching_sessions.update_one(
            {"id": session["id"], "status": SessionStatus.PENDING.value},
            {"$set": {
                "status": SessionStatus.ACTIVE.value,
                "stripe_payment_intent_id": checkout.get("payment_intent"),
                "amount_paid": checkout.get("amount_total"),
                "updated_at": utc_now_iso(),
            }}
        )
        if not result.modified_count:
            refreshed = await db.coaching_sessions.find_one({"id": session["id"]}, {"_id": 0})
            if refreshed and refreshed["status"] == SessionStatus.COMPLETED.value:
                return await self._completed_result(refreshed)
            return VerificationResult(
                verified=refreshed is not None and refreshed["status"] == SessionStatus.ACTIVE.value,
                session_id=session["id"],
                session_status=SessionStatus(refreshed["status"]) if refreshed else None,
                message="Payment verified successfully",
            )

        code_id = session.get("discount_code_id") or metadata.get("discount_code_id")
        if code_id:
            await discount_service.record_redemption(code_id, email, session["id"])

        await create_audit_log(
            action=AuditAction.PAYMENT_VERIFIED,
            actor_role="CUSTOMER",
            actor_id=email,
            resource_type="coaching_session",
            resource_id=session["id"],
            metadata={"checkout_session_id": checkout_session_id, "amount_total": checkout.get("amount_total")},
        )

        upgrade_credit = session.get("upgrade_credit_applied") or _metadata_int(metadata, "upgrade_credit_applied")
        await email_service.send_email(
            recipient=session["email"],
            template_alias=(
                EmailTemplateAlias.UPGRADE_CONFIRMATION if upgrade_credit
                else EmailTemplateAlias.PURCHASE_CONFIRMATION
            ),
            content=build_purchase_confirmation_email(
                session_label=get_label(session["session_type"]),
                session_url=session_url(session["session_type"], session["email"]),
                amount_paid_cents=checkout.get("amount_total"),
                upgrade_credit_cents=upgrade_credit,
            ),
            session_id=session["id"],
        )
        logger.info(f"Session {session['id']} activated from checkout {checkout_session_id}")

        return VerificationResult(
            verified=True,
            session_id=session["id"],
            session_status=SessionStatus.ACTIVE,
            message="Payment verified successfully",
        )

    async def _verify_by_email(self, email: str, session_type: SessionType) -> VerificationResult:
        db = database.get_db()
        # A paused session is not handed back here; the lifecycle offers it as a conflict
        active = await db.coaching_sessions.find(
            {"email": email, "session_type": session_type.value, "status": SessionStatus.ACTIVE.value, "paused_at": None},
            {"_id": 0}
        ).sort("created_at", -1).limit(1).to_list(length=1)
        if active:
            return VerificationResult(
                verified=True,
                session_id=active[0]["id"],
                session_status=SessionStatus.ACTIVE,
                is_pro=bool(active[0].get("is_pro")),
                message="Active session found",
            )

        completed = await db.coaching_sessions.find(
            {"email": email, "session_type": session_type.value, "status": SessionStatus.COMPLETED.value},
            {"_id": 0}
        ).sort("completed_at", -1).limit(1).to_list(length=1)
        if completed:
            return await self._completed_result(completed[0])

        if await self.has_active_subscription(email):
            session_id = await self._reserve_pro_session(email, session_type)
            return VerificationResult(
                verified=True,
                session_id=session_id,
                session_status=SessionStatus.PENDING,
                is_pro=True,
                message="Pro subscriber verified",
            )

        return VerificationResult(verified=False, message="No valid payment or subscription found")

    async def _reserve_pro_session(self, email: str, session_type: SessionType) -> str:
        """Reuse or create the pending Pro session; it turns active only once a monthly slot is taken."""
        db = database.get_db()
        reserved = await db.coaching_sessions.find_one(
            {"email": email, "session_type": session_type.value, "status": SessionStatus.PENDING.value, "is_pro": True},
            {"_id": 0, "id": 1}
        )
        if reserved:
            return reserved["id"]

        session = CoachingSession(email=email, session_type=session_type, status=SessionStatus.PENDING, is_pro=True)
        await db.coaching_sessions.insert_one(session.model_dump(mode="json"))
        await create_audit_log(
            action=AuditAction.SESSION_CREATED,
            actor_role="CUSTOMER",
            actor_id=email,
            resource_type="coaching_session",
            resource_id=session.id,
            metadata={"source": "pro_subscription", "session_type": session_type.value},
        )
        return session.id

    async def has_active_subscription(self, email: str) -> bool:
        if not get_stripe_key():
            logger.warning("Stripe key not set - skipping subscription lookup")
            return False
        require_stripe_key()
        customers = await call_stripe(stripe.Customer.list, email=email, limit=1)
        if not customers.data:
            return False
        subscriptions = await call_stripe(
            stripe.Subscription.list,
            customer=customers.data[0].id,
            status="active",
            limit=1,
        )
        return bool(subscriptions.data)


payment_verifier = PaymentVerifier()
