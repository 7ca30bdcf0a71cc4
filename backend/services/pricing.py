"""Pricing resolution for checkout.

Two discount sources exist: an upgrade credit (a lower-tier one-time purchase
made in the last 24 hours) and a percent-off promo code. They never stack;
whichever takes more off the base price is applied, with ties going to the
upgrade credit.
"""
from enum import Enum
from typing import Iterable, Optional, Tuple

from pydantic import BaseModel

from models import SessionType
from services.product_catalog import get_price_cents, tier_rank

UPGRADE_CREDIT_WINDOW_HOURS = 24


class DiscountWinner(str, Enum):
    UPGRADE_CREDIT = "upgrade_credit"
    PROMO = "promo"
    NONE = "none"


WINNER_LABELS = {
    DiscountWinner.UPGRADE_CREDIT: "Upgrade credit",
    DiscountWinner.PROMO: "Promo",
    DiscountWinner.NONE: None,
}


class PriceBreakdown(BaseModel):
    base_price_cents: int
    upgrade_credit_cents: int = 0
    discount_percent: int = 0
    discount_amount_cents: int = 0
    applied_discount_cents: int = 0
    final_price_cents: int
    winner: DiscountWinner = DiscountWinner.NONE

    @property
    def label(self) -> Optional[str]:
        return WINNER_LABELS[self.winner]


def resolve_price(
    base_price_cents: int,
    upgrade_credit_cents: int = 0,
    discount_percent: int = 0,
) -> PriceBreakdown:
    """Compute the final charge for one checkout."""
    if base_price_cents < 0 or upgrade_credit_cents < 0:
        raise ValueError("Prices and credits must be non-negative")
    if not 0 <= discount_percent <= 100:
        raise ValueError("discount_percent must be between 0 and 100")

    discount_amount = (base_price_cents * discount_percent) // 100

    if upgrade_credit_cents > 0 and upgrade_credit_cents >= discount_amount:
        applied, winner = upgrade_credit_cents, DiscountWinner.UPGRADE_CREDIT
    elif discount_amount > 0:
        applied, winner = discount_amount, DiscountWinner.PROMO
    else:
        applied, winner = 0, DiscountWinner.NONE

    return PriceBreakdown(
        base_price_cents=base_price_cents,
        upgrade_credit_cents=upgrade_credit_cents,
        discount_percent=discount_percent,
        discount_amount_cents=discount_amount,
        applied_discount_cents=applied,
        final_price_cents=max(0, base_price_cents - applied),
        winner=winner,
    )


def upgrade_credit_for(
    target_type: SessionType,
    prior_purchases: Iterable[dict],
) -> Tuple[int, Optional[str]]:
    """Return (credit_cents, source_session_id) for an upgrade to target_type.

    prior_purchases are session documents already filtered to the buyer's
    recent active purchases. Only strictly lower ladder tiers qualify and the
    most expensive one wins.
    """
    target_rank = tier_rank(target_type)
    if target_rank is None:
        return 0, None

    best_credit, best_session = 0, None
    for purchase in prior_purchases:
        rank = tier_rank(purchase.get("session_type"))
        if rank is None or rank >= target_rank:
            continue
        price = get_price_cents(purchase["session_type"])
        if price > best_credit:
            best_credit, best_session = price, purchase.get("id")
    return best_credit, best_session
