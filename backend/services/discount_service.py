"""Discount code validation and redemption.

Validation is read-only: a code is only consumed when checkout actually
completes (record_redemption). Failures carry a structured ErrorCode so the
client never has to infer the reason from message text.
"""
import logging
from typing import Optional

from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    AuditAction, DiscountCodeUsage, DiscountValidationResponse, ErrorCode, ErrorType, SessionType,
)
from services.error_resolution import error_resolution_service
from utils.audit import create_audit_log
from utils.dates import parse_dt, utc_now

logger = logging.getLogger(__name__)

ERROR_MESSAGES = {
    ErrorCode.CODE_NOT_FOUND: "Invalid discount code",
    ErrorCode.CODE_EXPIRED: "This discount code has expired",
    ErrorCode.CODE_NOT_APPLICABLE: "This code is not valid for the selected product",
    ErrorCode.CODE_ALREADY_USED: "You have already used this discount code",
    ErrorCode.CODE_USAGE_LIMIT_REACHED: "This discount code has reached its usage limit",
}


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


class DiscountService:

    async def validate(
        self,
        code: str,
        email: str,
        session_type: SessionType,
        report_failures: bool = True,
    ) -> DiscountValidationResponse:
        db = database.get_db()
        normalized = normalize_code(code)
        email = email.strip().lower()

        discount = await db.discount_codes.find_one(
            {"code": normalized, "is_active": True},
            {"_id": 0}
        )
        error_code = await self._check(discount, email, SessionType(session_type))

        if error_code:
            logger.info(f"Discount code rejected code={normalized} reason={error_code.value}")
            if report_failures:
                await error_resolution_service.report_error(
                    error_type=ErrorType.DISCOUNT.value,
                    error_code=error_code.value,
                    error_message=ERROR_MESSAGES[error_code],
                    user_email=email,
                    context={"code": normalized, "session_type": SessionType(session_type).value},
                )
            return DiscountValidationResponse(
                valid=False,
                error_code=error_code,
                error=ERROR_MESSAGES[error_code],
            )

        return DiscountValidationResponse(
            valid=True,
            discount_percent=discount["discount_percent"],
            description=discount.get("description"),
            code_id=discount["id"],
        )

    async def _check(self, discount: Optional[dict], email: str, session_type: SessionType) -> Optional[ErrorCode]:
        if not discount:
            return ErrorCode.CODE_NOT_FOUND

        now = utc_now()
        valid_from = parse_dt(discount.get("valid_from"))
        if valid_from and valid_from > now:
            # Not yet active codes are indistinguishable from unknown ones
            return ErrorCode.CODE_NOT_FOUND

        valid_until = parse_dt(discount.get("valid_until"))
        if valid_until and valid_until < now:
            return ErrorCode.CODE_EXPIRED

        applicable = discount.get("applicable_products") or []
        if applicable and session_type.value not in applicable:
            return ErrorCode.CODE_NOT_APPLICABLE

        db = database.get_db()
        already_used = await db.discount_code_usage.find_one(
            {"discount_code_id": discount["id"], "email": email},
            {"_id": 0, "id": 1}
        )
        if already_used:
            return ErrorCode.CODE_ALREADY_USED

        max_uses = discount.get("max_uses")
        if max_uses is not None:
            used = await db.discount_code_usage.count_documents({"discount_code_id": discount["id"]})
            if used >= max_uses:
                return ErrorCode.CODE_USAGE_LIMIT_REACHED

        return None

    async def get_valid_percent(self, code_id: str, email: str, session_type: SessionType) -> int:
        """Re-check a previously validated code by id at checkout time. Returns 0 when no longer valid."""
        db = database.get_db()
        discount = await db.discount_codes.find_one({"id": code_id, "is_active": True}, {"_id": 0})
        if await self._check(discount, email.strip().lower(), SessionType(session_type)):
            return 0
        return discount["discount_percent"]

    async def record_redemption(self, code_id: str, email: str, session_id: Optional[str] = None) -> bool:
        """Consume one use of a code for an email. Idempotent per (code, email)."""
        db = database.get_db()
        usage = DiscountCodeUsage(discount_code_id=code_id, email=email.strip().lower(), session_id=session_id)
        try:
            await db.discount_code_usage.insert_one(usage.model_dump())
        except DuplicateKeyError:
            logger.info(f"Discount redemption already recorded code_id={code_id}")
            return False

        await create_audit_log(
            action=AuditAction.DISCOUNT_REDEEMED,
            actor_role="SYSTEM",
            actor_id=usage.email,
            resource_type="discount_code",
            resource_id=code_id,
            metadata={"session_id": session_id},
        )
        return True


discount_service = DiscountService()
