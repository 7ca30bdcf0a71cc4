from fastapi import APIRouter, HTTPException, Depends, status, Query
from pymongo.errors import DuplicateKeyError
from database import database
from middleware import require_admin
from models import AuditAction, BulkDeleteRequest, DiscountCode, DiscountCodeCreateRequest, SessionStatus
from services.discount_service import normalize_code
from services.error_resolution import error_resolution_service
from utils.audit import create_audit_log
from utils.dates import utc_now
from datetime import timedelta
from typing import Optional
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/dashboard")
async def get_admin_dashboard():
    """Headline counts for the admin dashboard."""
    db = database.get_db()
    seven_days_ago = (utc_now() - timedelta(days=7)).isoformat()

    by_status = {}
    for session_status in SessionStatus:
        by_status[session_status.value] = await db.coaching_sessions.count_documents({"status": session_status.value})

    return {
        "stats": {
            "sessions_by_status": by_status,
            "paused_sessions": await db.coaching_sessions.count_documents(
                {"status": SessionStatus.ACTIVE.value, "paused_at": {"$ne": None}}
            ),
            "sessions_created_7d": await db.coaching_sessions.count_documents({"created_at": {"$gte": seven_days_ago}}),
            "pro_subscribers": await db.profiles.count_documents({"is_pro_subscriber": True}),
            "unresolved_errors": await db.error_logs.count_documents({"resolved": False}),
            "active_discount_codes": await db.discount_codes.count_documents({"is_active": True}),
        }
    }


# ============================================================================
# DISCOUNT CODES
# ============================================================================

@router.get("/discount-codes")
async def list_discount_codes():
    db = database.get_db()
    codes = await db.discount_codes.find({}, {"_id": 0}).sort("created_at", -1).to_list(500)
    for code in codes:
        code["times_used"] = await db.discount_code_usage.count_documents({"discount_code_id": code["id"]})
    return {"codes": codes}


@router.post("/discount-codes", status_code=status.HTTP_201_CREATED)
async def create_discount_code(request: DiscountCodeCreateRequest, admin: dict = Depends(require_admin)):
    db = database.get_db()
    discount = DiscountCode(
        code=normalize_code(request.code),
        discount_percent=request.discount_percent,
        description=request.description,
        applicable_products=request.applicable_products,
        valid_from=request.valid_from,
        valid_until=request.valid_until,
        max_uses=request.max_uses,
    )
    try:
        await db.discount_codes.insert_one(discount.model_dump(mode="json"))
    except DuplicateKeyError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error_code": "code_exists", "message": f"Discount code {discount.code} already exists"},
        )

    await create_audit_log(
        action=AuditAction.DISCOUNT_CODE_CREATED,
        actor_role="ROLE_ADMIN",
        actor_id=admin.get("email"),
        resource_type="discount_code",
        resource_id=discount.id,
        metadata={"code": discount.code, "discount_percent": discount.discount_percent},
    )
    return discount.model_dump(mode="json")


@router.patch("/discount-codes/{code_id}/toggle")
async def toggle_discount_code(code_id: str, admin: dict = Depends(require_admin)):
    db = database.get_db()
    discount = await db.discount_codes.find_one({"id": code_id}, {"_id": 0})
    if not discount:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Discount code not found")

    is_active = not discount.get("is_active", True)
    await db.discount_codes.update_one({"id": code_id}, {"$set": {"is_active": is_active}})
    await create_audit_log(
        action=AuditAction.DISCOUNT_CODE_UPDATED,
        actor_role="ROLE_ADMIN",
        actor_id=admin.get("email"),
        resource_type="discount_code",
        resource_id=code_id,
        metadata={"is_active": is_active},
    )
    return {"id": code_id, "is_active": is_active}


# ============================================================================
# SESSIONS
# ============================================================================

@router.get("/sessions")
async def list_sessions(
    status_filter: Optional[str] = Query(None, alias="status"),
    email: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
):
    db = database.get_db()
    query = {}
    if status_filter:
        query["status"] = status_filter
    if email:
        query["email"] = email.strip().lower()
    # Documents and reports are large; the list view only needs the summary fields
    sessions = await db.coaching_sessions.find(
        query,
        {"_id": 0, "resume_text": 0, "job_description": 0, "prep_packet": 0, "report": 0}
    ).sort("created_at", -1).limit(limit).to_list(limit)
    return {"sessions": sessions, "total": await db.coaching_sessions.count_documents(query)}


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, admin: dict = Depends(require_admin)):
    """Hard delete a session with its messages and results."""
    db = database.get_db()
    result = await db.coaching_sessions.delete_one({"id": session_id})
    if not result.deleted_count:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    await db.chat_messages.delete_many({"session_id": session_id})
    await db.session_results.delete_many({"session_id": session_id})

    await create_audit_log(
        action=AuditAction.SESSION_DELETED,
        actor_role="ROLE_ADMIN",
        actor_id=admin.get("email"),
        resource_type="coaching_session",
        resource_id=session_id,
    )
    logger.info(f"Session {session_id} deleted by {admin.get('email')}")
    return {"ok": True}


# ============================================================================
# CONVERSIONS
# ============================================================================

PURCHASE_QUERY = {"stripe_checkout_session_id": {"$ne": None}}
PURCHASE_FIELDS = {
    "_id": 0, "id": 1, "email": 1, "session_type": 1, "status": 1, "amount_paid": 1,
    "stripe_checkout_session_id": 1, "stripe_payment_intent_id": 1, "created_at": 1, "completed_at": 1,
}


def _require_selection(request: BulkDeleteRequest):
    if not request.delete_all and not request.ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "nothing_selected", "message": "Select entries to delete or set delete_all"},
        )


@router.get("/subscribers")
async def list_subscribers(email: Optional[str] = None, limit: int = Query(200, ge=1, le=1000)):
    db = database.get_db()
    query = {"is_pro_subscriber": True}
    if email:
        query["email"] = email.strip().lower()
    subscribers = await db.profiles.find(query, {"_id": 0}).sort("updated_at", -1).limit(limit).to_list(limit)
    return {"subscribers": subscribers, "total": await db.profiles.count_documents(query)}


@router.get("/purchases")
async def list_purchases(email: Optional[str] = None, limit: int = Query(200, ge=1, le=1000)):
    """One-off purchases: sessions that went through Stripe checkout."""
    db = database.get_db()
    query = dict(PURCHASE_QUERY)
    if email:
        query["email"] = email.strip().lower()
    purchases = await db.coaching_sessions.find(query, PURCHASE_FIELDS).sort("created_at", -1).limit(limit).to_list(limit)
    return {"purchases": purchases, "total": await db.coaching_sessions.count_documents(query)}


@router.post("/subscribers/bulk-delete")
async def delete_subscribers(request: BulkDeleteRequest, admin: dict = Depends(require_admin)):
    _require_selection(request)
    db = database.get_db()
    query = {"is_pro_subscriber": True}
    if not request.delete_all:
        query["email"] = {"$in": [e.strip().lower() for e in request.ids]}
    result = await db.profiles.delete_many(query)

    await create_audit_log(
        action=AuditAction.SUBSCRIBERS_DELETED,
        actor_role="ROLE_ADMIN",
        actor_id=admin.get("email"),
        resource_type="profile",
        metadata={"delete_all": request.delete_all, "selected": len(request.ids), "deleted": result.deleted_count},
    )
    logger.info(f"{result.deleted_count} subscriber profile(s) deleted by {admin.get('email')}")
    return {"ok": True, "deleted": result.deleted_count}


@router.post("/purchases/bulk-delete")
async def delete_purchases(request: BulkDeleteRequest, admin: dict = Depends(require_admin)):
    """Hard delete purchased sessions with their messages and results."""
    _require_selection(request)
    db = database.get_db()
    query = dict(PURCHASE_QUERY)
    if not request.delete_all:
        query["id"] = {"$in": request.ids}
    matched = await db.coaching_sessions.find(query, {"_id": 0, "id": 1}).to_list(None)
    session_ids = [s["id"] for s in matched]
    if session_ids:
        await db.coaching_sessions.delete_many({"id": {"$in": session_ids}})
        await db.chat_messages.delete_many({"session_id": {"$in": session_ids}})
        await db.session_results.delete_many({"session_id": {"$in": session_ids}})

    await create_audit_log(
        action=AuditAction.PURCHASES_DELETED,
        actor_role="ROLE_ADMIN",
        actor_id=admin.get("email"),
        resource_type="coaching_session",
        metadata={"delete_all": request.delete_all, "session_ids": session_ids},
    )
    logger.info(f"{len(session_ids)} purchase(s) deleted by {admin.get('email')}")
    return {"ok": True, "deleted": len(session_ids)}


# ============================================================================
# ERROR LOGS
# ============================================================================

@router.get("/errors")
async def list_errors(
    resolved: Optional[bool] = None,
    error_type: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
):
    db = database.get_db()
    query = {}
    if resolved is not None:
        query["resolved"] = resolved
    if error_type:
        query["error_type"] = error_type
    errors = await db.error_logs.find(query, {"_id": 0}).sort("created_at", -1).limit(limit).to_list(limit)
    return {"errors": errors, "total": await db.error_logs.count_documents(query)}


@router.post("/errors/{error_id}/resolve")
async def resolve_error(error_id: str, admin: dict = Depends(require_admin)):
    if not await error_resolution_service.mark_resolved(error_id, admin.get("email")):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Error log not found")
    return {"ok": True}
