"""Pro subscription entitlements.

Pro subscribers get unlimited Quick Prep, 6 Mock Interviews and 2 Audio Mocks
per rolling 30-day window. The window is anchored to the profile's
pro_session_reset_date (not calendar months) and is reset lazily: any check
that finds the anchor missing or older than 30 days zeroes both counters
first.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

import stripe
from pydantic import BaseModel
from pymongo import ReturnDocument

from database import database
from models import AuditAction, SessionStatus, SessionType
from services.errors import InvalidStateError, ServiceError
from services.product_catalog import PRO_LIMITS, PRO_USAGE_FIELDS
from services.stripe_service import call_stripe, get_stripe_key, require_stripe_key
from utils.audit import create_audit_log
from utils.dates import parse_dt, unix_to_iso, utc_now, utc_now_iso

logger = logging.getLogger(__name__)

RESET_WINDOW_DAYS = 30
ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")
EXHAUSTED_LABELS = {
    SessionType.FULL_MOCK: "Mock Interview",
    SessionType.PREMIUM_AUDIO: "Audio Mock",
}


class SessionLimitResult(BaseModel):
    allowed: bool
    limit: Optional[int] = None
    used: int = 0
    remaining: Optional[int] = None
    next_reset: Optional[str] = None
    reset_occurred: bool = False
    message: Optional[str] = None


def _format_date(dt: datetime) -> str:
    return f"{dt.month}/{dt.day}/{dt.year}"


def exhausted_message(session_type: SessionType, limit: int, next_reset: datetime) -> str:
    return (
        f"You've used all {limit} {EXHAUSTED_LABELS[session_type]} sessions this month. "
        f"Resets on {_format_date(next_reset)}."
    )


def needs_reset(profile: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    reset_date = parse_dt(profile.get("pro_session_reset_date"))
    if not reset_date:
        return True
    now = now or utc_now()
    return reset_date < now - timedelta(days=RESET_WINDOW_DAYS)


def next_reset_for(profile: Dict[str, Any]) -> datetime:
    anchor = parse_dt(profile.get("pro_session_reset_date")) or utc_now()
    return anchor + timedelta(days=RESET_WINDOW_DAYS)


def subscription_period(subscription) -> Tuple[Optional[str], Optional[str]]:
    """(period_start, period_end) as ISO strings.

    Newer API versions moved the period onto subscription items.
    """
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if not (start and end):
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            start = start or items[0].get("current_period_start")
            end = end or items[0].get("current_period_end")
    return unix_to_iso(start), unix_to_iso(end)


def remaining_sessions(profile: Dict[str, Any]) -> Dict[str, Dict[str, Optional[int]]]:
    summary = {SessionType.QUICK_PREP.value: {"used": 0, "limit": None, "remaining": None}}
    for session_type, field in PRO_USAGE_FIELDS.items():
        limit = PRO_LIMITS[session_type]
        used = profile.get(field) or 0
        summary[session_type.value] = {"used": used, "limit": limit, "remaining": max(0, limit - used)}
    return summary


class EntitlementService:

    async def _get_profile(self, email: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.profiles.find_one({"email": email.strip().lower()}, {"_id": 0})

    async def _apply_lazy_reset(self, profile: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        if not needs_reset(profile):
            return profile, False

        db = database.get_db()
        now = utc_now_iso()
        updates = {
            "pro_mock_sessions_used": 0,
            "pro_audio_sessions_used": 0,
            "pro_session_reset_date": now,
            "updated_at": now,
        }
        await db.profiles.update_one({"email": profile["email"]}, {"$set": updates})
        await create_audit_log(
            action=AuditAction.PRO_USAGE_RESET,
            actor_role="SYSTEM",
            actor_id=profile["email"],
            resource_type="profile",
            resource_id=profile["email"],
            metadata={"previous_reset_date": profile.get("pro_session_reset_date")},
        )
        logger.info(f"Pro usage window reset for {profile['email']}")
        return {**profile, **updates}, True

    async def check_session_limit(self, email: str, session_type: SessionType) -> SessionLimitResult:
        session_type = SessionType(session_type)
        limit = PRO_LIMITS.get(session_type)
        if limit is None:
            return SessionLimitResult(allowed=True)

        profile = await self._get_profile(email)
        if not profile or not profile.get("is_pro_subscriber"):
            return SessionLimitResult(allowed=False, remaining=0, message="No active Pro subscription")

        profile, reset_occurred = await self._apply_lazy_reset(profile)
        used = profile.get(PRO_USAGE_FIELDS[session_type]) or 0
        remaining = max(0, limit - used)
        next_reset = next_reset_for(profile)
        allowed = remaining > 0
        return SessionLimitResult(
            allowed=allowed,
            limit=limit,
            used=used,
            remaining=remaining,
            next_reset=next_reset.isoformat(),
            reset_occurred=reset_occurred,
            message=None if allowed else exhausted_message(session_type, limit, next_reset),
        )

    async def start_session(self, email: str, session_type: SessionType) -> SessionLimitResult:
        """Atomically check the cap and consume one session.

        The increment is a single find_one_and_update guarded by used < limit,
        so two concurrent starts can never both take the last slot.
        """
        session_type = SessionType(session_type)
        email = email.strip().lower()
        limit = PRO_LIMITS.get(session_type)
        if limit is None:
            return SessionLimitResult(allowed=True)

        profile = await self._get_profile(email)
        if not profile or not profile.get("is_pro_subscriber"):
            return SessionLimitResult(allowed=False, remaining=0, message="No active Pro subscription")

        profile, reset_occurred = await self._apply_lazy_reset(profile)
        field = PRO_USAGE_FIELDS[session_type]

        db = database.get_db()
        updated = await db.profiles.find_one_and_update(
            {"email": email, "is_pro_subscriber": True, field: {"$lt": limit}},
            {"$inc": {field: 1}, "$set": {"updated_at": utc_now_iso()}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        next_reset = next_reset_for(profile)

        if not updated:
            used = profile.get(field) or 0
            logger.info(f"Pro cap reached for {email} type={session_type.value} used={used}")
            return SessionLimitResult(
                allowed=False,
                limit=limit,
                used=used,
                remaining=0,
                next_reset=next_reset.isoformat(),
                reset_occurred=reset_occurred,
                message=exhausted_message(session_type, limit, next_reset),
            )

        used = updated.get(field) or 0
        await create_audit_log(
            action=AuditAction.PRO_SESSION_STARTED,
            actor_role="CUSTOMER",
            actor_id=email,
            resource_type="profile",
            resource_id=email,
            metadata={"session_type": session_type.value, "used": used, "limit": limit},
        )
        return SessionLimitResult(
            allowed=True,
            limit=limit,
            used=used,
            remaining=max(0, limit - used),
            next_reset=next_reset.isoformat(),
            reset_occurred=reset_occurred,
        )

    async def start_pro_session(self, email: str, session_type: SessionType, session_id: str) -> SessionLimitResult:
        """Activate a reserved Pro session, consuming a monthly slot for capped types.

        The session is claimed pending -> active before the slot is taken, so a
        reload or a second tab never counts it twice. A denied start hands the
        session back to pending, where it cannot take coach turns.
        """
        email = email.strip().lower()
        db = database.get_db()
        claimed = await db.coaching_sessions.update_one(
            {"id": session_id, "email": email, "status": SessionStatus.PENDING.value, "is_pro": True},
            {"$set": {"status": SessionStatus.ACTIVE.value, "updated_at": utc_now_iso()}}
        )
        if claimed.modified_count == 0:
            existing = await db.coaching_sessions.find_one(
                {"id": session_id, "email": email, "is_pro": True}, {"_id": 0, "status": 1}
            )
            if existing and existing["status"] == SessionStatus.ACTIVE.value:
                return SessionLimitResult(allowed=True)
            raise InvalidStateError("No reserved Pro session to start", error_code="pro_session_not_found")

        try:
            result = await self.start_session(email, session_type)
        except ServiceError:
            await self._release_pro_session(session_id)
            raise
        if not result.allowed:
            await self._release_pro_session(session_id)
            logger.info(f"Pro session {session_id} returned to pending: {result.message}")
        return result

    async def _release_pro_session(self, session_id: str):
        db = database.get_db()
        await db.coaching_sessions.update_one(
            {"id": session_id, "status": SessionStatus.ACTIVE.value, "is_pro": True},
            {"$set": {"status": SessionStatus.PENDING.value, "updated_at": utc_now_iso()}}
        )

    async def increment_session_count(self, email: str, session_type: SessionType) -> Dict[str, Any]:
        """Unconditional increment for admin corrections; customer starts go through start_session."""
        session_type = SessionType(session_type)
        if session_type not in PRO_USAGE_FIELDS:
            return {"ok": True, "message": "Quick prep does not count against limits"}

        db = database.get_db()
        field = PRO_USAGE_FIELDS[session_type]
        updated = await db.profiles.find_one_and_update(
            {"email": email.strip().lower()},
            {"$inc": {field: 1}, "$set": {"updated_at": utc_now_iso()}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            return {"ok": False, "error": "Profile not found"}
        return {"ok": True, "used": updated.get(field, 0)}

    async def get_remaining_sessions(self, email: str) -> Dict[str, Any]:
        profile = await self._get_profile(email)
        if not profile or not profile.get("is_pro_subscriber"):
            return {"is_pro": False, "remaining_sessions": None}
        profile, _ = await self._apply_lazy_reset(profile)
        return {
            "is_pro": True,
            "remaining_sessions": remaining_sessions(profile),
            "reset_date": profile.get("pro_session_reset_date"),
            "next_reset": next_reset_for(profile).isoformat(),
        }

    async def check_pro_status(self, email: str) -> Dict[str, Any]:
        """Sync the profile from Stripe, falling back to the cached profile on failure."""
        email = email.strip().lower()
        profile = await self._get_profile(email)
        if get_stripe_key():
            try:
                profile = await self.sync_profile_from_stripe(email, profile)
            except stripe.error.StripeError as e:
                logger.warning(f"Stripe sync failed for {email}, using cached profile: {e}")

        if not profile or not profile.get("is_pro_subscriber"):
            return {"is_pro": False, "message": "No active Pro subscription found"}

        profile, _ = await self._apply_lazy_reset(profile)
        return {
            "is_pro": True,
            "subscription_start": profile.get("pro_subscription_start"),
            "subscription_end": profile.get("pro_subscription_end"),
            "cancel_at_period_end": profile.get("pro_cancel_at_period_end", False),
            "remaining_sessions": remaining_sessions(profile),
            "reset_date": profile.get("pro_session_reset_date"),
        }

    async def _resolve_active_subscription(self, customer_id: str, subscription_id: Optional[str]):
        if subscription_id:
            try:
                sub = await call_stripe(stripe.Subscription.retrieve, subscription_id)
                if sub.get("status") in ACTIVE_SUBSCRIPTION_STATUSES:
                    return sub
            except stripe.error.InvalidRequestError:
                logger.info(f"Stored subscription {subscription_id} not retrievable, listing by customer")
        subs = await call_stripe(stripe.Subscription.list, customer=customer_id, status="all", limit=10)
        for sub in subs.data:
            if sub.get("status") in ACTIVE_SUBSCRIPTION_STATUSES:
                return sub
        return None

    async def sync_profile_from_stripe(self, email: str, profile: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        require_stripe_key()
        db = database.get_db()
        now = utc_now_iso()

        customer_id = (profile or {}).get("stripe_customer_id")
        if not customer_id:
            customers = await call_stripe(stripe.Customer.list, email=email, limit=1)
            customer_id = customers.data[0].id if customers.data else None

        if not customer_id:
            if profile and profile.get("is_pro_subscriber"):
                await db.profiles.update_one({"email": email}, {"$set": {"is_pro_subscriber": False, "updated_at": now}})
                profile = {**profile, "is_pro_subscriber": False}
            return profile

        subscription = await self._resolve_active_subscription(customer_id, (profile or {}).get("stripe_subscription_id"))
        if not subscription:
            if profile and profile.get("is_pro_subscriber"):
                await db.profiles.update_one(
                    {"email": email},
                    {"$set": {"is_pro_subscriber": False, "stripe_customer_id": customer_id, "updated_at": now}}
                )
                profile = {**profile, "is_pro_subscriber": False, "stripe_customer_id": customer_id}
            return profile

        period_start, period_end = subscription_period(subscription)
        subscription_start = unix_to_iso(subscription.get("start_date")) or period_start
        updates = {
            "is_pro_subscriber": True,
            "pro_subscription_end": period_end,
            "pro_cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
            "stripe_customer_id": customer_id,
            "stripe_subscription_id": subscription.get("id"),
            "updated_at": now,
        }
        # Historical anchors are only filled in, never overwritten
        if not (profile or {}).get("pro_subscription_start") and subscription_start:
            updates["pro_subscription_start"] = subscription_start
        if not (profile or {}).get("pro_session_reset_date"):
            updates["pro_session_reset_date"] = period_start or subscription_start or now
            updates["pro_mock_sessions_used"] = 0
            updates["pro_audio_sessions_used"] = 0

        await db.profiles.update_one({"email": email}, {"$set": updates}, upsert=True)
        return await self._get_profile(email)


entitlement_service = EntitlementService()
