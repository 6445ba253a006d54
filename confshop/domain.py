"""Domain values shared by the stores, pricing and the checkout flow.

Rows come out of the stores as these frozen dataclasses; nothing here talks
to the database or the gateway.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .model.db import KIND_BUNDLE, KIND_REPLAY


@dataclass(frozen=True)
class Item:
    id: str
    name: str
    kind: str
    event_year: int
    amount: int
    currency: str
    content_ref: Optional[str] = None
    active: bool = True

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Item:
        return cls(
            id=row["id"],
            name=row["name"],
            kind=row["kind"],
            event_year=int(row["event_year"]),
            amount=int(row["amount"]),
            currency=row["currency"].lower(),
            content_ref=row.get("content_ref"),
            active=bool(row["active"]),
        )

    @property
    def entitlement_ref(self) -> Optional[str]:
        """Key an entitlement for this item is stored under.

        Bundles cover the whole year (None); a replay is keyed on the replay
        it unlocks so two listings of one replay converge; anything else on
        the catalog id.
        """
        if self.kind == KIND_BUNDLE:
            return None
        if self.kind == KIND_REPLAY and self.content_ref:
            return self.content_ref
        return self.id

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind,
            "event_year": self.event_year,
            "amount": self.amount,
            "currency": self.currency,
            "content_ref": self.content_ref,
            "active": self.active,
        }


@dataclass(frozen=True)
class CouponRule:
    id: str
    code: str
    discount_kind: str
    discount_value: int
    currency: Optional[str] = None
    item_id: Optional[str] = None
    valid_from: Optional[float] = None
    valid_until: Optional[float] = None
    max_redemptions: Optional[int] = None
    times_redeemed: int = 0
    active: bool = True
    gateway_coupon_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> CouponRule:
        return cls(
            id=row["id"],
            code=row["code"],
            discount_kind=row["discount_kind"],
            discount_value=int(row["discount_value"]),
            currency=(row.get("currency") or None),
            item_id=row.get("item_id"),
            valid_from=row.get("valid_from"),
            valid_until=row.get("valid_until"),
            max_redemptions=row.get("max_redemptions"),
            times_redeemed=int(row.get("times_redeemed") or 0),
            active=bool(row["active"]),
            gateway_coupon_id=row.get("gateway_coupon_id"),
        )


@dataclass(frozen=True)
class CartOwner:
    """Who a cart belongs to: a browser session token or an account."""

    session_token: Optional[str] = None
    account_id: Optional[str] = None

    def __post_init__(self) -> None:
        if bool(self.session_token) == bool(self.account_id):
            raise ValueError(
                "CartOwner needs exactly one of session_token or account_id"
            )

    @classmethod
    def for_session(cls, token: str) -> CartOwner:
        return cls(session_token=token)

    @classmethod
    def for_account(cls, account_id: str) -> CartOwner:
        return cls(account_id=account_id)

    @classmethod
    def parse(cls, key: str) -> CartOwner:
        kind, _, value = key.partition(":")
        if kind == "session":
            return cls(session_token=value)
        if kind == "account":
            return cls(account_id=value)
        raise ValueError(f"not a cart owner key: {key!r}")

    @property
    def key(self) -> str:
        if self.account_id:
            return f"account:{self.account_id}"
        return f"session:{self.session_token}"


@dataclass(frozen=True)
class AdminContext:
    """Capability handed to admin-only operations.

    Resolved once at the request boundary; holding one is the permission.
    """

    admin_id: str
