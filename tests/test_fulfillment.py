import pytest

from confshop.domain import CartOwner, Item
from confshop.errors import (
    IdentityRequiredError,
    NotSucceededError,
    RecordingIncompleteError,
    SnapshotInvalidError,
)
from confshop.fulfillment import EntitlementRecorder
from confshop.gateway import FAILED
from confshop.mailer import Mailer
from confshop.model.cart._postgres import CartStore
from confshop.model.db import (
    DISCOUNT_PERCENTAGE,
    KIND_BUNDLE,
    KIND_REPLAY,
)


class BrokenMailer(Mailer):
    async def send(self, template, recipient, variables):
        raise RuntimeError("smtp down")


async def member(shop, email="member@example.com"):
    account_id, _ = await shop.accounts.create_preconfirmed(email)
    return account_id


async def test_unpaid_authorization_records_nothing(shop):
    ticket = await shop.item()
    result = await shop.checkout.create([ticket.id], email="a@example.com",
                                        account_id=await member(shop))
    with pytest.raises(NotSucceededError):
        await shop.recorder.confirm(result.authorization_id)

    shop.gateway.settle(result.authorization_id, FAILED)
    with pytest.raises(NotSucceededError):
        await shop.recorder.confirm(result.authorization_id)
    assert await shop.entitlements.list_for_authorization(
        result.authorization_id) == []


async def test_confirm_is_idempotent(shop):
    account_id = await member(shop)
    ticket = await shop.item()
    replay = await shop.item(kind=KIND_REPLAY, amount=2_900,
                             content_ref="2025-keynote")
    paid = await shop.paid([ticket.id, replay.id], account_id=account_id)

    first = await shop.recorder.confirm(paid.authorization_id)
    assert sorted(first.granted) == sorted([ticket.id, replay.id])

    for _ in range(3):
        again = await shop.recorder.confirm(paid.authorization_id)
        assert again.granted == []
        assert sorted(again.already_present) == sorted([ticket.id, replay.id])

    rows = await shop.entitlements.list_for_account(account_id)
    assert len(rows) == 2
    assert len(shop.mailer.sent) == 1


async def test_discounted_purchase_end_to_end(shop):
    account_id = await member(shop)
    ticket = await shop.item(amount=49_700)
    await shop.coupons.create({
        "code": "EARLY20", "discount_kind": DISCOUNT_PERCENTAGE,
        "discount_value": 20, "times_redeemed": 10, "max_redemptions": 100,
    })
    paid = await shop.paid([ticket.id], account_id=account_id,
                           coupon_code="EARLY20")
    assert paid.total_amount == 39_760

    result = await shop.recorder.confirm(paid.authorization_id)
    assert result.coupon_counted
    await shop.recorder.confirm(paid.authorization_id)

    coupon = await shop.coupons.find_by_code("EARLY20")
    assert coupon.times_redeemed == 11
    assert await shop.coupons.redemption_count("EARLY20") == 1

    [row] = await shop.entitlements.list_for_account(account_id)
    assert row["coupon_code"] == "EARLY20"
    assert row["discount_amount"] == 9_940
    assert row["authorization_id"] == paid.authorization_id


async def test_guest_gets_account_once(shop):
    ticket = await shop.item()
    paid = await shop.paid([ticket.id], email="guest@example.com",
                           guest_email="Guest@Example.com")

    with pytest.raises(IdentityRequiredError):
        await shop.recorder.confirm(paid.authorization_id)

    first = await shop.recorder.confirm(paid.authorization_id,
                                        create_account=True)
    assert first.account_created
    account = await shop.accounts.find_by_email("guest@example.com")
    assert account["id"] == first.account_id
    assert account["confirmed"]

    retry = await shop.recorder.confirm(paid.authorization_id,
                                        create_account=True)
    assert not retry.account_created
    assert retry.account_id == first.account_id
    assert retry.granted == []


async def test_signed_in_buyer_keeps_the_purchase(shop):
    buyer = await member(shop, "buyer@example.com")
    other = await member(shop, "other@example.com")
    ticket = await shop.item()
    paid = await shop.paid([ticket.id], account_id=buyer)

    # someone else's session confirming first still grants to the buyer
    result = await shop.recorder.confirm(paid.authorization_id,
                                         session_account_id=other)
    assert result.account_id == buyer
    assert result.granted == [ticket.id]

    again = await shop.recorder.confirm(paid.authorization_id,
                                        session_account_id=other)
    assert again.account_id == buyer
    assert again.granted == []

    [row] = await shop.entitlements.list_for_authorization(
        paid.authorization_id)
    assert row["account_id"] == buyer
    assert await shop.entitlements.list_for_account(other) == []


async def test_guest_purchase_stays_with_first_owner(shop):
    other = await member(shop, "other@example.com")
    ticket = await shop.item()
    paid = await shop.paid([ticket.id], email="guest@example.com",
                           guest_email="guest@example.com")

    first = await shop.recorder.confirm(paid.authorization_id,
                                        create_account=True)
    later = await shop.recorder.confirm(paid.authorization_id,
                                        session_account_id=other)
    assert later.account_id == first.account_id
    assert later.granted == []
    assert len(await shop.entitlements.list_for_authorization(
        paid.authorization_id)) == 1
    assert await shop.entitlements.list_for_account(other) == []


async def test_capped_coupon_never_counts_past_its_cap(shop):
    account_id = await member(shop)
    first_ticket = await shop.item()
    second_ticket = await shop.item()
    await shop.coupons.create({
        "code": "ONCE", "discount_kind": DISCOUNT_PERCENTAGE,
        "discount_value": 50, "max_redemptions": 1,
    })
    # both quoted while the coupon still had room
    first = await shop.paid([first_ticket.id], account_id=account_id,
                            coupon_code="ONCE")
    second = await shop.paid([second_ticket.id], account_id=account_id,
                             coupon_code="ONCE")

    assert (await shop.recorder.confirm(first.authorization_id)).coupon_counted
    late = await shop.recorder.confirm(second.authorization_id)
    assert not late.coupon_counted
    assert late.granted == [second_ticket.id]

    coupon = await shop.coupons.find_by_code("ONCE")
    assert coupon.times_redeemed == 1
    assert await shop.coupons.redemption_count("ONCE") == 2



async def test_cart_cleared_after_recording(shop):
    account_id = await member(shop)
    ticket = await shop.item()
    owner = CartOwner.for_session("browser-1")
    await shop.carts.add(owner, ticket.id)

    paid = await shop.paid([ticket.id], account_id=account_id,
                           cart_owner=owner)
    assert await shop.carts.lines(owner) != []
    await shop.recorder.confirm(paid.authorization_id)
    assert await shop.carts.lines(owner) == []


async def test_email_failure_keeps_entitlements(shop):
    account_id = await member(shop)
    ticket = await shop.item()
    paid = await shop.paid([ticket.id], account_id=account_id)

    recorder = EntitlementRecorder(
        gateway=shop.gateway, catalog=shop.catalog,
        entitlements=shop.entitlements, coupons=shop.coupons,
        carts=shop.carts, accounts=shop.directory, mailer=BrokenMailer(),
    )
    result = await recorder.confirm(paid.authorization_id)
    assert result.granted == [ticket.id]
    assert await shop.entitlements.has_access(account_id, 2025, ticket.id)


async def test_partial_failure_is_retryable(shop):
    account_id = await member(shop)
    ticket = await shop.item()
    owner = CartOwner.for_session("browser-2")
    await shop.carts.add(owner, ticket.id)
    await shop.coupons.create({
        "code": "TENOFF", "discount_kind": DISCOUNT_PERCENTAGE,
        "discount_value": 10,
    })
    paid = await shop.paid([ticket.id], account_id=account_id,
                           coupon_code="TENOFF", cart_owner=owner)

    metadata = shop.gateway.authorizations[paid.authorization_id]["metadata"]
    metadata["item_ids"] = f"{ticket.id},ghost"

    with pytest.raises(RecordingIncompleteError) as exc:
        await shop.recorder.confirm(paid.authorization_id)
    assert exc.value.failed_item_ids == ("ghost",)
    # coupon and cart left for the retry
    assert (await shop.coupons.find_by_code("TENOFF")).times_redeemed == 0
    assert len(await shop.carts.lines(owner)) == 1

    metadata["item_ids"] = ticket.id
    result = await shop.recorder.confirm(paid.authorization_id)
    assert result.already_present == [ticket.id]
    assert result.coupon_counted
    assert (await shop.coupons.find_by_code("TENOFF")).times_redeemed == 1
    assert await shop.carts.lines(owner) == []


async def test_item_deactivated_after_payment_still_granted(shop):
    account_id = await member(shop)
    ticket = await shop.item("ticket-2025")
    paid = await shop.paid([ticket.id], account_id=account_id)

    await shop.catalog.upsert(Item(**{**ticket.as_dict(), "active": False}))
    result = await shop.recorder.confirm(paid.authorization_id)
    assert result.granted == [ticket.id]


async def test_tampered_metadata(shop):
    account_id = await member(shop)
    ticket = await shop.item()
    paid = await shop.paid([ticket.id], account_id=account_id)
    shop.gateway.authorizations[paid.authorization_id]["metadata"] = {}

    with pytest.raises(SnapshotInvalidError):
        await shop.recorder.confirm(paid.authorization_id)


async def test_replay_listings_share_one_entitlement(shop):
    account_id = await member(shop)
    solo = await shop.item(kind=KIND_REPLAY, amount=2_900,
                           content_ref="2025-keynote")
    promo = await shop.item(kind=KIND_REPLAY, amount=1_900,
                            content_ref="2025-keynote")
    paid = await shop.paid([solo.id, promo.id], account_id=account_id)

    result = await shop.recorder.confirm(paid.authorization_id)
    assert result.granted == [solo.id]
    assert result.already_present == [promo.id]
    [row] = await shop.entitlements.list_for_account(account_id)
    assert row["item_ref"] == "2025-keynote"


async def test_bundle_covers_every_replay_of_its_year(shop):
    account_id = await member(shop)
    bundle = await shop.item(kind=KIND_BUNDLE, amount=19_900,
                             event_year=2024)
    paid = await shop.paid([bundle.id], account_id=account_id)
    await shop.recorder.confirm(paid.authorization_id)

    [row] = await shop.entitlements.list_for_account(account_id)
    assert row["item_ref"] is None
    assert await shop.entitlements.has_access(account_id, 2024, "any-replay")
    assert await shop.entitlements.has_access(account_id, 2024)
    assert not await shop.entitlements.has_access(account_id, 2025)


async def test_confirmation_email_contents(shop):
    account_id = await member(shop, "fan@example.com")
    ticket = await shop.item(amount=49_700)
    paid = await shop.paid([ticket.id], email="fan@example.com",
                           account_id=account_id)
    await shop.recorder.confirm(paid.authorization_id)

    [mail] = shop.mailer.sent
    assert mail["to"] == "fan@example.com"
    assert mail["subject"] == "Your order is confirmed"
    assert "£497.00" in mail["html"]
    assert paid.authorization_id in mail["html"]


class FlakyCarts(CartStore):
    """Fails after the items are granted, before the order completes."""

    async def clear(self, owner):
        raise RuntimeError("cart store unavailable")


async def test_email_sent_when_retry_completes_the_order(shop):
    account_id = await member(shop)
    ticket = await shop.item()
    owner = CartOwner.for_session("browser-3")
    await shop.carts.add(owner, ticket.id)
    paid = await shop.paid([ticket.id], account_id=account_id,
                           cart_owner=owner)

    flaky = EntitlementRecorder(
        gateway=shop.gateway, catalog=shop.catalog,
        entitlements=shop.entitlements, coupons=shop.coupons,
        carts=FlakyCarts(db=shop.db, gated=shop.gated),
        accounts=shop.directory, mailer=shop.mailer,
    )
    with pytest.raises(RuntimeError):
        await flaky.confirm(paid.authorization_id)
    assert shop.mailer.sent == []

    retry = await shop.recorder.confirm(paid.authorization_id)
    assert retry.granted == []
    assert retry.already_present == [ticket.id]
    assert len(shop.mailer.sent) == 1
    assert await shop.carts.lines(owner) == []

    await shop.recorder.confirm(paid.authorization_id)
    assert len(shop.mailer.sent) == 1
