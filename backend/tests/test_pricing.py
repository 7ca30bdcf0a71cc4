"""
Unit tests: checkout price resolution never stacks discounts and never goes negative;
upgrade credit only comes from a strictly lower tier.
"""
import pytest

from models import SessionType
from services.pricing import DiscountWinner, resolve_price, upgrade_credit_for
from services.product_catalog import (
    PRO_LIMITS, get_label, get_price_cents, is_pausable, is_recurring, tier_rank, total_questions,
)


def test_catalog_prices_and_flags():
    assert get_price_cents(SessionType.QUICK_PREP) == 1200
    assert get_price_cents(SessionType.FULL_MOCK) == 2900
    assert get_price_cents(SessionType.PREMIUM_AUDIO) == 4900
    assert is_recurring(SessionType.PRO)
    assert not is_recurring(SessionType.FULL_MOCK)
    assert is_pausable(SessionType.FULL_MOCK) and is_pausable(SessionType.PREMIUM_AUDIO)
    assert not is_pausable(SessionType.QUICK_PREP)
    assert total_questions(SessionType.FULL_MOCK) == 10
    assert get_label("full_mock") == "Full Mock Interview"


def test_pro_is_outside_upgrade_ladder():
    assert tier_rank(SessionType.PRO) is None
    assert tier_rank(SessionType.QUICK_PREP) < tier_rank(SessionType.FULL_MOCK) < tier_rank(SessionType.PREMIUM_AUDIO)
    assert PRO_LIMITS[SessionType.FULL_MOCK] == 6
    assert PRO_LIMITS[SessionType.PREMIUM_AUDIO] == 2


def test_no_discount():
    breakdown = resolve_price(2900)
    assert breakdown.final_price_cents == 2900
    assert breakdown.winner == DiscountWinner.NONE
    assert breakdown.label is None


def test_upgrade_credit_beats_smaller_promo():
    # Quick Prep credit (1200) vs 20% of 4900 (980)
    breakdown = resolve_price(4900, upgrade_credit_cents=1200, discount_percent=20)
    assert breakdown.winner == DiscountWinner.UPGRADE_CREDIT
    assert breakdown.applied_discount_cents == 1200
    assert breakdown.final_price_cents == 3700
    assert breakdown.label == "Upgrade credit"


def test_promo_beats_smaller_upgrade_credit():
    breakdown = resolve_price(4900, upgrade_credit_cents=1200, discount_percent=50)
    assert breakdown.winner == DiscountWinner.PROMO
    assert breakdown.applied_discount_cents == 2450
    assert breakdown.final_price_cents == 2450
    assert breakdown.label == "Promo"


def test_tie_goes_to_upgrade_credit():
    breakdown = resolve_price(2000, upgrade_credit_cents=1000, discount_percent=50)
    assert breakdown.winner == DiscountWinner.UPGRADE_CREDIT
    assert breakdown.final_price_cents == 1000


def test_final_price_never_negative():
    breakdown = resolve_price(1000, upgrade_credit_cents=5000)
    assert breakdown.final_price_cents == 0
    assert resolve_price(1200, discount_percent=100).final_price_cents == 0


@pytest.mark.parametrize("base,credit,percent", [(-1, 0, 0), (100, -5, 0), (100, 0, 101)])
def test_invalid_inputs_rejected(base, credit, percent):
    with pytest.raises(ValueError):
        resolve_price(base, credit, percent)


def test_upgrade_credit_picks_most_expensive_lower_tier():
    purchases = [
        {"id": "s-quick", "session_type": "quick_prep"},
        {"id": "s-mock", "session_type": "full_mock"},
        {"id": "s-audio", "session_type": "premium_audio"},
    ]
    credit, source = upgrade_credit_for(SessionType.PREMIUM_AUDIO, purchases)
    assert (credit, source) == (2900, "s-mock")


def test_upgrade_credit_ignores_same_tier_and_pro():
    assert upgrade_credit_for(SessionType.FULL_MOCK, [{"id": "x", "session_type": "full_mock"}]) == (0, None)
    assert upgrade_credit_for(SessionType.PRO, [{"id": "x", "session_type": "quick_prep"}]) == (0, None)
    assert upgrade_credit_for(SessionType.QUICK_PREP, [{"id": "x", "session_type": "pro"}]) == (0, None)
