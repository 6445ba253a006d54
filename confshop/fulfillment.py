"""Entitlement recording for confirmed payments.

`EntitlementRecorder.confirm` may run any number of times for the same
authorization (browser retry, duplicate webhook, both at once) and always
converges on the same entitlements with the coupon counted once:

* the gateway's status is the only gate;
* the checkout snapshot in the authorization metadata is the only source
  of what was bought, at which discount;
* entitlement rows and coupon redemptions are conditional inserts keyed so
  a replay is a no-op.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from .domain import CartOwner, Item
from .errors import (
    EntitlementConflictError,
    NotSucceededError,
    RecordingIncompleteError,
    SnapshotInvalidError,
)
from .gateway import SUCCEEDED, Authorization, PaymentAdapter
from .helpers import format_amount
from .identity import AccountDirectory, resolve_owner
from .mailer import Mailer
from .model.catalog import CatalogStore
from .model.coupons import (
    REDEMPTION_COUNTED,
    REDEMPTION_OVER_CAP,
    CouponStore,
)
from .model.entitlements import EntitlementStore
from .snapshot import CheckoutSnapshot, SnapshotError

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ConfirmResult:
    authorization_id: str
    account_id: str
    account_created: bool = False
    granted: List[str] = field(default_factory=list)
    already_present: List[str] = field(default_factory=list)
    coupon_counted: bool = False


class EntitlementRecorder:
    def __init__(
        self,
        *,
        gateway: PaymentAdapter,
        catalog: CatalogStore,
        entitlements: EntitlementStore,
        coupons: CouponStore,
        carts,
        accounts: AccountDirectory,
        mailer: Optional[Mailer] = None,
    ) -> None:
        self._gateway = gateway
        self._catalog = catalog
        self._entitlements = entitlements
        self._coupons = coupons
        self._carts = carts
        self._accounts = accounts
        self._mailer = mailer

    async def load_snapshot(
        self, authorization_id: str
    ) -> tuple[Authorization, CheckoutSnapshot]:
        auth = await self._gateway.retrieve_authorization(authorization_id)
        if auth["status"] != SUCCEEDED:
            raise NotSucceededError(authorization_id, auth["status"])
        try:
            snapshot = CheckoutSnapshot.from_metadata(auth["metadata"])
        except SnapshotError as e:
            log.error("confirm.snapshot_invalid",
                      authorization_id=authorization_id, error=str(e))
            raise SnapshotInvalidError(authorization_id) from e
        return auth, snapshot

    async def confirm(
        self,
        authorization_id: str,
        *,
        create_account: bool = False,
        session_account_id: Optional[str] = None,
    ) -> ConfirmResult:
        """Grant what a succeeded authorization paid for.

        Raises:
            GatewayError: the authorization could not be retrieved.
            NotSucceededError: the payment has not (yet) succeeded.
            SnapshotInvalidError: the metadata cannot be read.
            IdentityRequiredError: nobody to grant the entitlements to.
            RecordingIncompleteError: some items failed; retrying is safe.
        """
        log.info("confirm.started", authorization_id=authorization_id,
                 create_account=create_account)
        auth, snapshot = await self.load_snapshot(authorization_id)

        owner = await resolve_owner(
            self._accounts, snapshot,
            session_account_id=session_account_id,
            create_account=create_account,
            recorded_account_id=await self._entitlements.owner_of(
                authorization_id
            ),
        )

        # inactive items still resolve: they were active when paid for
        items = await self._catalog.get_items(snapshot.item_ids)
        granted: List[str] = []
        present: List[str] = []
        failed: List[str] = []
        for item_id in snapshot.item_ids:
            item = items.get(item_id)
            if item is None:
                log.error("confirm.item_missing",
                          authorization_id=authorization_id, item_id=item_id)
                failed.append(item_id)
                continue
            try:
                _, created = await self._entitlements.insert_if_absent(
                    owner.account_id,
                    item,
                    authorization_id=authorization_id,
                    coupon_code=snapshot.coupon_code,
                    discount_amount=snapshot.discount_amount,
                )
            except (SQLAlchemyError, EntitlementConflictError) as e:
                log.error("confirm.entitlement_failed",
                          authorization_id=authorization_id, item_id=item_id,
                          error=str(e))
                failed.append(item_id)
                continue
            if created:
                granted.append(item_id)
                log.info("confirm.entitlement_recorded", item_id=item_id,
                         event_year=item.event_year,
                         item_ref=item.entitlement_ref)
            else:
                present.append(item_id)
                log.info("confirm.entitlement_present", item_id=item_id)

        if failed:
            log.warning("confirm.incomplete",
                        authorization_id=authorization_id, failed=failed,
                        granted=len(granted))
            raise RecordingIncompleteError(authorization_id, failed)

        coupon_counted = False
        if snapshot.coupon_code:
            outcome = await self._coupons.record_redemption(
                authorization_id, snapshot.coupon_code
            )
            coupon_counted = outcome == REDEMPTION_COUNTED
            if outcome == REDEMPTION_OVER_CAP:
                # paid at a quoted discount; the counter stays at its cap
                log.warning("confirm.coupon_over_cap",
                            code=snapshot.coupon_code,
                            authorization_id=authorization_id)
            else:
                log.info("confirm.coupon_redemption",
                         code=snapshot.coupon_code, outcome=outcome)

        if snapshot.cart_owner:
            cleared = await self._carts.clear(
                CartOwner.parse(snapshot.cart_owner)
            )
            log.info("confirm.cart_cleared", lines=cleared)

        result = ConfirmResult(
            authorization_id=authorization_id,
            account_id=owner.account_id,
            account_created=owner.account_created,
            granted=granted,
            already_present=present,
            coupon_counted=coupon_counted,
        )
        # once per authorization, even if an earlier call granted the items
        # and then failed before getting here
        if await self._entitlements.mark_complete(
            authorization_id, owner.account_id
        ):
            await self._notify(auth, snapshot, items, result)
        log.info("confirm.complete", authorization_id=authorization_id,
                 granted=len(granted), already_present=len(present))
        return result

    async def _notify(
        self,
        auth: Authorization,
        snapshot: CheckoutSnapshot,
        items: Dict[str, Item],
        result: ConfirmResult,
    ) -> None:
        """Order confirmation email; a failure here never undoes a grant."""
        if self._mailer is None:
            return
        recipient = snapshot.guest_email or await self._accounts.email_of(
            result.account_id
        )
        if not recipient:
            return
        currency = auth["currency"]
        lines = [
            {"name": items[i].name,
             "amount": format_amount(items[i].amount, currency)}
            for i in snapshot.item_ids if i in items
        ]
        variables = {
            "authorization_id": auth["id"],
            "lines": lines,
            "discount": (format_amount(snapshot.discount_amount, currency)
                         if snapshot.discount_amount else ""),
            "coupon_code": snapshot.coupon_code,
            "total": format_amount(auth["amount"], currency),
            "account_created": result.account_created,
            "email": recipient,
        }
        try:
            message_id = await self._mailer.send(
                "order_confirmation", recipient, variables
            )
        except Exception as e:
            log.warning("confirm.email_failed", to=recipient, error=str(e))
            return
        log.info("confirm.email_sent", to=recipient, message_id=message_id)
