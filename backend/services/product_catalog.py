"""Product Catalog - single source of truth for coaching product definitions.

This is the AUTHORITATIVE source for:
- Product types and display labels
- Prices (USD cents) and Stripe price ID mappings
- The upgrade ladder for one-time products
- Pro subscription monthly caps
- Question counts used in pause/resume messaging

Rules:
1. Backend is authoritative - checkout never trusts a client-supplied price
2. Pro is a subscription and sits outside the upgrade ladder
3. Pro caps apply per rolling 30-day window anchored to the profile reset date
"""
import os
from typing import Any, Dict, Optional

from models import SessionType

# ============================================================================
# STRIPE PRICE ID MAPPINGS - overridable per environment
# ============================================================================
STRIPE_PRICE_IDS = {
    SessionType.QUICK_PREP: os.getenv("STRIPE_PRICE_QUICK_PREP", "price_1SUJpOCoFieNARvY61k4XFm3"),
    SessionType.FULL_MOCK: os.getenv("STRIPE_PRICE_FULL_MOCK", "price_1SUJX1CoFieNARvYE286d1lq"),
    SessionType.PREMIUM_AUDIO: os.getenv("STRIPE_PRICE_PREMIUM_AUDIO", "price_1SUJwECoFieNARvYch9Y4PAY"),
    SessionType.PRO: os.getenv("STRIPE_PRICE_PRO", "price_1SX74aCoFieNARvY06cE5g5e"),
}


# ============================================================================
# PRODUCT DEFINITIONS
# ============================================================================
PRODUCT_DEFINITIONS: Dict[SessionType, Dict[str, Any]] = {
    SessionType.QUICK_PREP: {
        "label": "Quick Prep Packet",
        "short_label": "Quick Prep",
        "price_cents": 1200,
        "recurring": False,
        "pausable": False,
        "total_questions": 5,
    },
    SessionType.FULL_MOCK: {
        "label": "Full Mock Interview",
        "short_label": "Mock Interview",
        "price_cents": 2900,
        "recurring": False,
        "pausable": True,
        "total_questions": 10,
    },
    SessionType.PREMIUM_AUDIO: {
        "label": "Premium Audio Interview",
        "short_label": "Audio Mock",
        "price_cents": 4900,
        "recurring": False,
        "pausable": True,
        "total_questions": 16,
    },
    SessionType.PRO: {
        "label": "Pro Coaching Session",
        "short_label": "Pro",
        "price_cents": 7900,
        "recurring": True,
        "pausable": True,
        "total_questions": 10,
    },
}

# Upgrade ladder, low -> high. Pro is deliberately absent.
TIER_ORDER = [SessionType.QUICK_PREP, SessionType.FULL_MOCK, SessionType.PREMIUM_AUDIO]

# Pro monthly caps. None means unlimited.
PRO_LIMITS: Dict[SessionType, Optional[int]] = {
    SessionType.QUICK_PREP: None,
    SessionType.FULL_MOCK: 6,
    SessionType.PREMIUM_AUDIO: 2,
}

# Profile counter field per capped product
PRO_USAGE_FIELDS = {
    SessionType.FULL_MOCK: "pro_mock_sessions_used",
    SessionType.PREMIUM_AUDIO: "pro_audio_sessions_used",
}


def get_product(session_type: SessionType) -> Dict[str, Any]:
    return PRODUCT_DEFINITIONS[SessionType(session_type)]


def get_price_cents(session_type: SessionType) -> int:
    return get_product(session_type)["price_cents"]


def get_label(session_type) -> str:
    try:
        return get_product(session_type)["label"]
    except (KeyError, ValueError):
        return "Interview Coaching"


def get_stripe_price_id(session_type: SessionType) -> Optional[str]:
    return STRIPE_PRICE_IDS.get(SessionType(session_type)) or None


def is_recurring(session_type: SessionType) -> bool:
    return get_product(session_type)["recurring"]


def is_pausable(session_type: SessionType) -> bool:
    return get_product(session_type)["pausable"]


def total_questions(session_type) -> int:
    try:
        return get_product(session_type)["total_questions"]
    except (KeyError, ValueError):
        return 10


def tier_rank(session_type) -> Optional[int]:
    """Ladder rank of a one-time product, or None for products outside the ladder."""
    try:
        return TIER_ORDER.index(SessionType(session_type))
    except ValueError:
        return None
