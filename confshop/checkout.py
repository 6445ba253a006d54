"""Checkout orchestration.

Turns a list of catalog ids plus an optional coupon into a payment
authorization on the gateway. All validation happens before the first
gateway call; gateway failures are raised as-is and never retried here.
Nothing in this module creates entitlements.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import structlog

from .domain import CartOwner, Item
from .errors import (
    CurrencyMismatchError,
    EmptyCartError,
    IdentityRequiredError,
    ItemInactiveError,
)
from .gateway import PaymentAdapter
from .helpers import normalize_email
from .model.catalog import CatalogStore
from .model.coupons import CouponStore
from .pricing import CouponEvaluation, charge_total, evaluate, subtotal_of
from .snapshot import CheckoutSnapshot

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    authorization_id: str
    client_handle: str
    total_amount: int
    discount_amount: int
    currency: str
    coupon_code: str = ""


def unique_ids(item_ids: Sequence[str]) -> list[str]:
    """Strip blanks and repeats, keep first-seen order."""
    seen: dict[str, None] = {}
    for raw in item_ids or ():
        item_id = (raw or "").strip()
        if item_id:
            seen.setdefault(item_id, None)
    return list(seen)


def single_currency(items: Sequence[Item]) -> str:
    currencies = {item.currency.lower() for item in items}
    if len(currencies) != 1:
        raise CurrencyMismatchError(currencies)
    return currencies.pop()


class CheckoutService:
    def __init__(
        self,
        catalog: CatalogStore,
        coupons: CouponStore,
        gateway: PaymentAdapter,
    ) -> None:
        self._catalog = catalog
        self._coupons = coupons
        self._gateway = gateway

    async def resolve_items(self, item_ids: Sequence[str]) -> list[Item]:
        """Active items for `item_ids`, in request order.

        Raises:
            EmptyCartError: no ids given.
            ItemInactiveError: any id is unknown or inactive.
            CurrencyMismatchError: items are priced in more than one currency.
        """
        ids = unique_ids(item_ids)
        if not ids:
            raise EmptyCartError()
        found = await self._catalog.get_items(ids)
        missing = [i for i in ids if i not in found or not found[i].active]
        if missing:
            raise ItemInactiveError(missing)
        items = [found[i] for i in ids]
        single_currency(items)
        return items

    async def quote(
        self, items: Sequence[Item], coupon_code: Optional[str]
    ) -> CouponEvaluation:
        if not coupon_code:
            return CouponEvaluation(valid=False)
        coupon = await self._coupons.find_by_code(coupon_code)
        evaluation = evaluate(coupon, items)
        if not evaluation.valid:
            # an unusable code never fails the checkout
            log.info("checkout.coupon_ignored", code=coupon_code,
                     reason=evaluation.reason)
        return evaluation

    async def create(
        self,
        item_ids: Sequence[str],
        *,
        email: Optional[str],
        coupon_code: Optional[str] = None,
        account_id: Optional[str] = None,
        guest_email: Optional[str] = None,
        cart_owner: Optional[CartOwner] = None,
    ) -> CheckoutResult:
        """Open a payment authorization for the given items.

        `email` is the already-resolved purchaser address (session account or
        guest). `guest_email`, `account_id` and `cart_owner` only travel in
        the snapshot so confirmation can find the owner later.
        """
        if not unique_ids(item_ids):
            raise EmptyCartError()
        if not email:
            raise IdentityRequiredError()
        email = normalize_email(email)

        items = await self.resolve_items(item_ids)
        currency = items[0].currency
        subtotal = subtotal_of(items)
        log.info("checkout.items_resolved", count=len(items),
                 subtotal=subtotal, currency=currency)

        evaluation = await self.quote(items, coupon_code)
        discount = evaluation.discount_amount if evaluation.valid else 0
        applied_code = evaluation.code if evaluation.valid else ""
        total = charge_total(subtotal, discount)
        if applied_code:
            log.info("checkout.coupon_applied", code=applied_code,
                     discount=discount)

        # lookup-then-create: repeat checkouts reuse one customer
        customer_id = await self._gateway.find_customer(email)
        if customer_id:
            log.info("checkout.customer_found", customer_id=customer_id)
        else:
            customer_id = await self._gateway.create_customer(email)
            log.info("checkout.customer_created", customer_id=customer_id)

        snapshot = CheckoutSnapshot(
            item_ids=[item.id for item in items],
            coupon_code=applied_code,
            discount_amount=discount,
            guest_email=normalize_email(guest_email) if guest_email else "",
            account_id=account_id or "",
            cart_owner=cart_owner.key if cart_owner else "",
        )
        auth = await self._gateway.create_authorization(
            total, currency, customer_id, snapshot.to_metadata()
        )
        log.info("checkout.authorization_created",
                 authorization_id=auth["id"], amount=total)

        return CheckoutResult(
            authorization_id=auth["id"],
            client_handle=auth["client_handle"],
            total_amount=total,
            discount_amount=discount,
            currency=currency,
            coupon_code=applied_code,
        )
