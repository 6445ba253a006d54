import pytest

from confshop import pricing
from confshop.domain import CouponRule, Item
from confshop.model.db import DISCOUNT_FIXED, DISCOUNT_PERCENTAGE

NOW = 1_760_000_000.0


def item(item_id, amount, currency="gbp"):
    return Item(id=item_id, name=item_id, kind="ticket", event_year=2025,
                amount=amount, currency=currency)


def coupon(**kw):
    base = dict(id="c1", code="SAVE", discount_kind=DISCOUNT_PERCENTAGE,
                discount_value=20)
    base.update(kw)
    return CouponRule(**base)


def test_percentage_rounds_down():
    ev = pricing.evaluate(coupon(discount_value=33), [item("a", 999)], now=NOW)
    assert ev.valid
    assert ev.discount_amount == 329
    assert pricing.charge_total(999, ev.discount_amount) == 670


def test_twenty_percent_of_ticket():
    ev = pricing.evaluate(coupon(), [item("t", 49_700)], now=NOW)
    assert ev.discount_amount == 9_940
    assert pricing.charge_total(49_700, ev.discount_amount) == 39_760


def test_fixed_amount_is_capped_at_subtotal():
    ev = pricing.evaluate(
        coupon(discount_kind=DISCOUNT_FIXED, discount_value=5_000,
               currency="gbp"),
        [item("a", 1_000)], now=NOW,
    )
    assert ev.valid
    assert ev.discount_amount == 1_000
    assert pricing.charge_total(1_000, ev.discount_amount) == 0


def test_unknown_and_inactive():
    assert pricing.evaluate(None, [item("a", 100)]).reason == pricing.UNKNOWN
    ev = pricing.evaluate(coupon(active=False), [item("a", 100)], now=NOW)
    assert not ev.valid
    assert ev.reason == pricing.INACTIVE
    assert ev.discount_amount == 0


def test_redemption_cap_reached():
    c = coupon(max_redemptions=10, times_redeemed=10)
    ev = pricing.evaluate(c, [item("a", 100)], now=NOW)
    assert ev.reason == pricing.EXHAUSTED

    c = coupon(max_redemptions=10, times_redeemed=9)
    assert pricing.evaluate(c, [item("a", 100)], now=NOW).valid


def test_validity_window():
    items = [item("a", 100)]
    early = coupon(valid_from=NOW + 60)
    assert pricing.evaluate(early, items, now=NOW).reason == pricing.NOT_STARTED
    late = coupon(valid_until=NOW - 1)
    assert pricing.evaluate(late, items, now=NOW).reason == pricing.EXPIRED
    inside = coupon(valid_from=NOW - 60, valid_until=NOW + 60)
    assert pricing.evaluate(inside, items, now=NOW).valid


def test_scoped_coupon_discounts_only_its_item():
    c = coupon(item_id="b", discount_value=50)
    ev = pricing.evaluate(c, [item("a", 1_000), item("b", 2_000)], now=NOW)
    assert ev.valid
    assert ev.discount_amount == 1_000


def test_scoped_coupon_needs_its_item_in_cart():
    c = coupon(item_id="b")
    ev = pricing.evaluate(c, [item("a", 1_000)], now=NOW)
    assert ev.reason == pricing.NOT_APPLICABLE


def test_fixed_coupon_in_other_currency_does_not_apply():
    c = coupon(discount_kind=DISCOUNT_FIXED, discount_value=500,
               currency="eur")
    ev = pricing.evaluate(c, [item("a", 1_000, "gbp")], now=NOW)
    assert ev.reason == pricing.CURRENCY_MISMATCH

    # percentages are currency-free
    c = coupon(currency="eur")
    assert pricing.evaluate(c, [item("a", 1_000, "gbp")], now=NOW).valid


def test_unknown_discount_kind():
    with pytest.raises(ValueError):
        pricing.discount_for("bogus", 10, 100)
