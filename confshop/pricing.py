"""Coupon evaluation.

Pure functions over a coupon rule and the items being bought: no store
access and no side effects. The redemption counter is only ever touched by
fulfillment, so an abandoned checkout never uses up a slot.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from .domain import CouponRule, Item
from .helpers import now_ts
from .model.db import DISCOUNT_FIXED, DISCOUNT_PERCENTAGE

# reasons a code does not apply
UNKNOWN = "unknown"
INACTIVE = "inactive"
NOT_STARTED = "not_started"
EXPIRED = "expired"
EXHAUSTED = "exhausted"
NOT_APPLICABLE = "not_applicable"
CURRENCY_MISMATCH = "currency_mismatch"


@dataclass(frozen=True)
class CouponEvaluation:
    valid: bool
    discount_amount: int = 0
    code: str = ""
    reason: Optional[str] = None

    @classmethod
    def rejected(cls, reason: str, code: str = "") -> CouponEvaluation:
        return cls(valid=False, discount_amount=0, code=code, reason=reason)


def subtotal_of(items: Sequence[Item]) -> int:
    return sum(item.amount for item in items)


def discount_for(kind: str, value: int, base: int) -> int:
    """Discount on `base` minor units, never more than `base`."""
    if base <= 0:
        return 0
    if kind == DISCOUNT_PERCENTAGE:
        discount = base * value // 100
    elif kind == DISCOUNT_FIXED:
        discount = value
    else:
        raise ValueError(f"unknown discount kind: {kind}")
    return max(0, min(discount, base))


def rejection_reason(
    coupon: Optional[CouponRule], now: float
) -> Optional[str]:
    """Why this coupon cannot be used right now, or None if it can."""
    if coupon is None:
        return UNKNOWN
    if not coupon.active:
        return INACTIVE
    if coupon.valid_from is not None and now < coupon.valid_from:
        return NOT_STARTED
    if coupon.valid_until is not None and now > coupon.valid_until:
        return EXPIRED
    if (coupon.max_redemptions is not None
            and coupon.times_redeemed >= coupon.max_redemptions):
        return EXHAUSTED
    return None


def evaluate(
    coupon: Optional[CouponRule],
    items: Sequence[Item],
    now: Optional[float] = None,
) -> CouponEvaluation:
    """Decide whether `coupon` applies to `items` and what it takes off.

    A coupon scoped to one item only discounts that item, and only when it
    is in the cart; an unscoped coupon discounts the whole subtotal.
    """
    now = now_ts() if now is None else now
    code = coupon.code if coupon else ""

    reason = rejection_reason(coupon, now)
    if reason is not None:
        return CouponEvaluation.rejected(reason, code)

    if coupon.item_id:
        scoped = [item for item in items if item.id == coupon.item_id]
        if not scoped:
            return CouponEvaluation.rejected(NOT_APPLICABLE, code)
        base = subtotal_of(scoped)
    else:
        base = subtotal_of(items)

    if coupon.discount_kind == DISCOUNT_FIXED and coupon.currency and items:
        if coupon.currency.lower() != items[0].currency.lower():
            return CouponEvaluation.rejected(CURRENCY_MISMATCH, code)

    return CouponEvaluation(
        valid=True,
        discount_amount=discount_for(
            coupon.discount_kind, coupon.discount_value, base
        ),
        code=code,
    )


def charge_total(subtotal: int, discount: int) -> int:
    return max(0, subtotal - discount)
