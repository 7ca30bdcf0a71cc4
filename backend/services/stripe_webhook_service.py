"""Stripe Webhook Service - signed, idempotent webhook handling.

Events handled:
- customer.subscription.created / updated  (Pro entitlement fields)
- customer.subscription.deleted            (Pro revoked)
- invoice.paid                             (new billing period, counters reset)
- invoice.payment_failed                   (logged only)
- checkout.session.completed               (sign-in link for Pro, discount redemption)

Every event id is recorded in stripe_events. A replay of a PROCESSED event is
a no-op and a duplicate insert race is treated as a replay. Handler failures
mark the event FAILED and are still acknowledged so Stripe does not retry.
"""
import json
import logging
import os
from typing import Any, Dict, Optional, Tuple

import stripe
from pymongo.errors import DuplicateKeyError

from database import database
from models import AuditAction
from services.discount_service import discount_service
from services.entitlement_service import ACTIVE_SUBSCRIPTION_STATUSES, subscription_period
from services.identity_service import identity_service
from services.stripe_service import call_stripe, get_stripe_key
from utils.audit import create_audit_log
from utils.dates import unix_to_iso, utc_now_iso

logger = logging.getLogger(__name__)


def _get_webhook_secret() -> str:
    explicit = (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()
    if explicit:
        return explicit
    key = get_stripe_key()
    if key.startswith("sk_live_"):
        return (os.getenv("STRIPE_WEBHOOK_SECRET_LIVE") or "").strip()
    if key.startswith("sk_test_"):
        return (os.getenv("STRIPE_WEBHOOK_SECRET_TEST") or "").strip()
    return ""


def _extract_webhook_context(event: Dict) -> Dict[str, Any]:
    """Safe fields for structured logging."""
    obj = event.get("data", {}).get("object", {}) or {}
    subscription = obj.get("subscription")
    return {
        "event_id": event.get("id"),
        "event_type": event.get("type"),
        "livemode": event.get("livemode"),
        "customer_id": obj.get("customer"),
        "subscription_id": subscription if isinstance(subscription, str) else (subscription or {}).get("id"),
        "checkout_session_id": obj.get("id") if event.get("type") == "checkout.session.completed" else None,
    }


class StripeWebhookService:

    # =========================================================================
    # Entry point
    # =========================================================================

    def construct_event(self, payload: bytes, signature: Optional[str]):
        webhook_secret = _get_webhook_secret()
        if webhook_secret:
            return stripe.Webhook.construct_event(payload, signature, webhook_secret)
        logger.warning("STRIPE_WEBHOOK_SECRET not set - skipping signature verification")
        return stripe.Event.construct_from(json.loads(payload), stripe.api_key)

    async def process_webhook(self, payload: bytes, signature: Optional[str]) -> Tuple[bool, str, Optional[Dict]]:
        """
        Returns:
            (success, message, details). success=False only for unverifiable payloads.
        """
        try:
            event = self.construct_event(payload, signature)
        except stripe.error.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s", e)
            return False, "Invalid signature", {"error": str(e)}
        except ValueError as e:
            logger.error(f"Webhook parse error: {e}")
            return False, "Invalid payload", {"error": str(e)}

        event_id = event.get("id")
        event_type = event.get("type")
        ctx = _extract_webhook_context(event)
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s customer_id=%s subscription_id=%s checkout_session_id=%s",
            event_id, event_type, ctx["livemode"], ctx["customer_id"], ctx["subscription_id"], ctx["checkout_session_id"],
        )

        db = database.get_db()
        existing = await db.stripe_events.find_one({"event_id": event_id}, {"_id": 0})
        if existing and existing.get("status") == "PROCESSED":
            logger.info("WEBHOOK_REPLAY event_id=%s already processed", event_id)
            return True, "Already processed", {"event_id": event_id}

        event_record = {
            "event_id": event_id,
            "type": event_type,
            "created": utc_now_iso(),
            "processed_at": None,
            "status": "PROCESSING",
            "error": None,
            "customer_id": ctx["customer_id"],
            "subscription_id": ctx["subscription_id"],
        }
        if existing:
            await db.stripe_events.update_one({"event_id": event_id}, {"$set": event_record})
        else:
            try:
                await db.stripe_events.insert_one(event_record)
            except DuplicateKeyError:
                logger.info("WEBHOOK_REPLAY event_id=%s duplicate insert (race)", event_id)
                return True, "Already processed", {"event_id": event_id}

        try:
            result = await self._handle_event(event)
        except Exception as e:
            # Any handler failure is recorded and acknowledged; the ledger keeps it for replay
            logger.error("WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s", event_id, event_type, e)
            await db.stripe_events.update_one(
                {"event_id": event_id},
                {"$set": {"status": "FAILED", "processed_at": utc_now_iso(), "error": str(e)}}
            )
            await create_audit_log(
                action=AuditAction.STRIPE_EVENT_FAILED,
                actor_role="SYSTEM",
                resource_type="stripe_event",
                resource_id=event_id,
                metadata={"event_type": event_type, "error": str(e)},
            )
            return True, "Event logged with error", {"error": str(e), "event_id": event_id}

        await db.stripe_events.update_one(
            {"event_id": event_id},
            {"$set": {"status": "PROCESSED", "processed_at": utc_now_iso()}}
        )
        logger.info("WEBHOOK_PROCESSED_OK event_id=%s event_type=%s handled=%s", event_id, event_type, result.get("handled"))
        return True, "Processed", result

    async def _handle_event(self, event) -> Dict[str, Any]:
        event_type = event.get("type")
        obj = event.get("data", {}).get("object", {}) or {}
        handlers = {
            "customer.subscription.created": self._handle_subscription_upsert,
            "customer.subscription.updated": self._handle_subscription_upsert,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_invoice_payment_failed,
            "checkout.session.completed": self._handle_checkout_completed,
        }
        handler = handlers.get(event_type)
        if not handler:
            logger.info(f"Unhandled event type: {event_type}")
            return {"handled": False}
        return await handler(obj)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _customer_email(self, customer_id: Optional[str], fallback: Optional[str] = None) -> Optional[str]:
        """Email for a Stripe customer: known profile first, then the Stripe customer record."""
        if fallback:
            return fallback.strip().lower()
        if not customer_id:
            return None
        db = database.get_db()
        profile = await db.profiles.find_one({"stripe_customer_id": customer_id}, {"_id": 0, "email": 1})
        if profile:
            return profile["email"]
        customer = await call_stripe(stripe.Customer.retrieve, customer_id)
        email = customer.get("email") if customer else None
        return email.strip().lower() if email else None

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def _handle_subscription_upsert(self, subscription) -> Dict[str, Any]:
        customer_id = subscription.get("customer")
        email = await self._customer_email(customer_id)
        if not email:
            logger.warning(f"Subscription {subscription.get('id')} has no resolvable customer email")
            return {"handled": False}

        db = database.get_db()
        profile = await db.profiles.find_one({"email": email}, {"_id": 0}) or {}
        is_active = subscription.get("status") in ACTIVE_SUBSCRIPTION_STATUSES
        _, period_end = subscription_period(subscription)
        now = utc_now_iso()

        updates = {
            "is_pro_subscriber": is_active,
            "stripe_customer_id": customer_id,
            "stripe_subscription_id": subscription.get("id"),
            "pro_subscription_end": period_end,
            "pro_cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
            "updated_at": now,
        }
        # Start date marks the transition into Pro, not every update
        if is_active and not profile.get("is_pro_subscriber"):
            updates["pro_subscription_start"] = unix_to_iso(subscription.get("start_date")) or now
        if not profile.get("pro_session_reset_date"):
            updates.update({"pro_mock_sessions_used": 0, "pro_audio_sessions_used": 0, "pro_session_reset_date": now})

        await db.profiles.update_one({"email": email}, {"$set": updates}, upsert=True)
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_UPDATED,
            actor_role="SYSTEM",
            actor_id="stripe",
            resource_type="profile",
            resource_id=email,
            metadata={"subscription_id": subscription.get("id"), "status": subscription.get("status")},
        )
        logger.info(f"Profile {email} subscription {subscription.get('id')} status={subscription.get('status')}")
        return {"handled": True, "email": email}

    async def _handle_subscription_deleted(self, subscription) -> Dict[str, Any]:
        email = await self._customer_email(subscription.get("customer"))
        if not email:
            return {"handled": False}
        db = database.get_db()
        await db.profiles.update_one(
            {"email": email},
            {"$set": {"is_pro_subscriber": False, "pro_cancel_at_period_end": False, "updated_at": utc_now_iso()}}
        )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_UPDATED,
            actor_role="SYSTEM",
            actor_id="stripe",
            resource_type="profile",
            resource_id=email,
            metadata={"subscription_id": subscription.get("id"), "status": "deleted"},
        )
        logger.info(f"Pro subscription ended for {email}")
        return {"handled": True, "email": email}

    # =========================================================================
    # Invoices
    # =========================================================================

    async def _handle_invoice_paid(self, invoice) -> Dict[str, Any]:
        subscription_id = invoice.get("subscription")
        if not subscription_id:
            return {"handled": False}

        email = await self._customer_email(invoice.get("customer"), invoice.get("customer_email"))
        if not email:
            logger.warning(f"Invoice {invoice.get('id')} has no resolvable customer email")
            return {"handled": False}

        subscription = await call_stripe(stripe.Subscription.retrieve, subscription_id)
        _, period_end = subscription_period(subscription)
        now = utc_now_iso()

        db = database.get_db()
        await db.profiles.update_one(
            {"email": email},
            {"$set": {
                "is_pro_subscriber": True,
                "stripe_customer_id": invoice.get("customer"),
                "stripe_subscription_id": subscription_id,
                "pro_subscription_end": period_end,
                "pro_cancel_at_period_end": False,
                "pro_mock_sessions_used": 0,
                "pro_audio_sessions_used": 0,
                "pro_session_reset_date": now,
                "updated_at": now,
            }},
            upsert=True,
        )
        await create_audit_log(
            action=AuditAction.PRO_USAGE_RESET,
            actor_role="SYSTEM",
            actor_id="stripe",
            resource_type="profile",
            resource_id=email,
            metadata={"invoice_id": invoice.get("id"), "subscription_id": subscription_id},
        )
        logger.info(f"Invoice paid for {email}, Pro counters reset")
        return {"handled": True, "email": email}

    async def _handle_invoice_payment_failed(self, invoice) -> Dict[str, Any]:
        logger.warning(
            "INVOICE_PAYMENT_FAILED invoice_id=%s customer_id=%s attempt_count=%s",
            invoice.get("id"), invoice.get("customer"), invoice.get("attempt_count"),
        )
        return {"handled": True}

    # =========================================================================
    # Checkout
    # =========================================================================

    async def _handle_checkout_completed(self, checkout) -> Dict[str, Any]:
        customer_details = checkout.get("customer_details") or {}
        email = await self._customer_email(
            checkout.get("customer"),
            customer_details.get("email") or checkout.get("customer_email"),
        )
        metadata = checkout.get("metadata") or {}

        if checkout.get("mode") == "subscription":
            if not email:
                logger.warning(f"Subscription checkout {checkout.get('id')} has no email")
                return {"handled": False}
            await identity_service.ensure_account(email)
            sent = await identity_service.issue_login_link(email, "/dashboard", source="checkout")
            logger.info(f"Pro checkout {checkout.get('id')} completed for {email}, sign-in link sent={sent}")
            return {"handled": True, "email": email, "login_link_sent": sent}

        code_id = metadata.get("discount_code_id")
        if code_id and email:
            recorded = await discount_service.record_redemption(code_id, email, metadata.get("session_id"))
            logger.info(f"Checkout {checkout.get('id')} discount {code_id} recorded={recorded}")
            return {"handled": True, "email": email, "discount_recorded": recorded}
        return {"handled": True, "email": email}


stripe_webhook_service = StripeWebhookService()
