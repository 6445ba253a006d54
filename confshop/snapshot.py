"""Checkout snapshot carried in the payment authorization's metadata.

Gateways only store flat string-to-string metadata, so the snapshot is
flattened on the way out and validated on the way back in. Confirmation
trusts nothing else: prices and coupons are never re-derived from the
current catalog.
"""

from __future__ import annotations

from typing import Dict, List, Mapping

from pydantic import BaseModel, Field, ValidationError, field_validator

SNAPSHOT_VERSION = 1


class SnapshotError(ValueError):
    pass


class CheckoutSnapshot(BaseModel):
    version: int = SNAPSHOT_VERSION
    item_ids: List[str] = Field(min_length=1)
    coupon_code: str = ""
    discount_amount: int = Field(default=0, ge=0)
    guest_email: str = ""
    account_id: str = ""
    cart_owner: str = ""

    @field_validator("item_ids")
    @classmethod
    def _no_blank_ids(cls, v: List[str]) -> List[str]:
        ids = [i.strip() for i in v]
        if any(not i for i in ids):
            raise ValueError("blank item id")
        return ids

    def to_metadata(self) -> Dict[str, str]:
        return {
            "snapshot_version": str(self.version),
            "item_ids": ",".join(self.item_ids),
            "coupon_code": self.coupon_code,
            "discount_amount": str(self.discount_amount),
            "guest_email": self.guest_email,
            "account_id": self.account_id,
            "cart_owner": self.cart_owner,
        }

    @classmethod
    def from_metadata(cls, metadata: Mapping[str, str]) -> CheckoutSnapshot:
        """Parse gateway metadata; raises SnapshotError if it is unusable.

        Authorizations created before versioning carried `product_ids`
        instead of `item_ids` and are read as version 0.
        """
        md = dict(metadata or {})
        if "snapshot_version" in md:
            raw_ids = md.get("item_ids", "")
            version = md["snapshot_version"]
        elif "product_ids" in md:
            raw_ids = md.get("product_ids", "")
            version = "0"
        else:
            raise SnapshotError("metadata carries no checkout snapshot")

        try:
            return cls(
                version=int(version),
                item_ids=[i for i in raw_ids.split(",") if i],
                coupon_code=md.get("coupon_code", "") or "",
                discount_amount=int(md.get("discount_amount") or 0),
                guest_email=md.get("guest_email", "") or "",
                account_id=md.get("account_id", "") or "",
                cart_owner=md.get("cart_owner", "") or "",
            )
        except (ValidationError, ValueError) as e:
            raise SnapshotError(str(e)) from e
