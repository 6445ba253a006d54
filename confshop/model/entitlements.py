# model/entitlements.py
"""
Entitlement rows: durable proof an account may access an item or a whole
year's bundle.

Uniqueness lives in the schema (two partial unique indexes, see db.py), so
every insert here is `ON CONFLICT DO NOTHING` and a replayed confirmation
collapses onto the row the first one wrote.
"""

from __future__ import annotations
import uuid
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain import Item
from ..errors import EntitlementConflictError
from ..helpers import now_ts, to_iso
from ..infra.sql import Gated


def _public(row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "account_id": row["account_id"],
        "item_ref": row["item_ref"],
        "event_year": int(row["event_year"]),
        "item_id": row["item_id"],
        "authorization_id": row["authorization_id"],
        "coupon_code": row["coupon_code"],
        "discount_amount": int(row["discount_amount"] or 0),
        "granted_by": row["granted_by"],
        "created_at": to_iso(row["created_at"]),
    }


# UN-GATED internal function
async def _find(
    db: AsyncSession, account_id: str, item_ref: Optional[str],
    event_year: int,
):
    if item_ref is None:
        return (await db.execute(text("""
            SELECT * FROM entitlements
            WHERE account_id=:aid AND event_year=:year AND item_ref IS NULL
        """), {"aid": account_id, "year": event_year})).mappings().first()
    return (await db.execute(text("""
        SELECT * FROM entitlements
        WHERE account_id=:aid AND event_year=:year AND item_ref=:ref
    """), {"aid": account_id, "year": event_year,
           "ref": item_ref})).mappings().first()


class EntitlementStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def insert_if_absent(
        self,
        account_id: str,
        item: Item,
        *,
        authorization_id: Optional[str] = None,
        coupon_code: Optional[str] = None,
        discount_amount: int = 0,
        granted_by: Optional[str] = None,
    ) -> Tuple[str, bool]:
        """Idempotent upsert keyed on (account, item ref, event year).

        Returns (entitlement_id, created).
        """
        item_ref = item.entitlement_ref
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                    INSERT INTO entitlements(
                        id, account_id, item_ref, event_year, item_id,
                        authorization_id, coupon_code, discount_amount,
                        granted_by, created_at
                    ) VALUES (
                        :id, :aid, :ref, :year, :item_id, :auth, :coupon,
                        :discount, :granted_by, :now
                    )
                    ON CONFLICT DO NOTHING
                    RETURNING id
                """), {
                    "id": uuid.uuid4().hex,
                    "aid": account_id,
                    "ref": item_ref,
                    "year": item.event_year,
                    "item_id": item.id,
                    "auth": authorization_id,
                    "coupon": coupon_code or None,
                    "discount": int(discount_amount),
                    "granted_by": granted_by,
                    "now": now_ts(),
                })).first()
                if row is not None:
                    return row[0], True

                existing = await _find(
                    self.db, account_id, item_ref, item.event_year
                )
        if existing is None:
            raise EntitlementConflictError(item_ref, item.event_year)
        return existing["id"], False

    async def find(
        self, account_id: str, item_ref: Optional[str], event_year: int
    ) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = await _find(self.db, account_id, item_ref, event_year)
        return _public(row) if row else None

    async def list_for_account(self, account_id: str) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                    SELECT * FROM entitlements WHERE account_id=:aid
                    ORDER BY event_year DESC, created_at
                """), {"aid": account_id})).mappings().all()
        return [_public(r) for r in rows]

    async def list_for_authorization(
        self, authorization_id: str
    ) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                    SELECT * FROM entitlements WHERE authorization_id=:auth
                    ORDER BY created_at
                """), {"auth": authorization_id})).mappings().all()
        return [_public(r) for r in rows]

    async def has_access(
        self, account_id: str, event_year: int,
        item_ref: Optional[str] = None,
    ) -> bool:
        """Bundle for the year always grants access. With `item_ref` the
        specific entitlement also counts; without it any entitlement for
        the year does."""
        if item_ref is None:
            sql = """
                SELECT 1 FROM entitlements
                WHERE account_id=:aid AND event_year=:year
                LIMIT 1
            """
        else:
            sql = """
                SELECT 1 FROM entitlements
                WHERE account_id=:aid AND event_year=:year
                  AND (item_ref IS NULL OR item_ref=:ref)
                LIMIT 1
            """
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text(sql), {
                    "aid": account_id, "year": event_year, "ref": item_ref,
                })).first()
        return row is not None

    async def owner_of(self, authorization_id: str) -> Optional[str]:
        """Account already holding entitlements from this authorization."""
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                    SELECT account_id FROM entitlements
                    WHERE authorization_id=:auth
                    ORDER BY created_at
                    LIMIT 1
                """), {"auth": authorization_id})).first()
        return row[0] if row else None

    async def mark_complete(
        self, authorization_id: str, account_id: str
    ) -> bool:
        """True only for the call that first completes this authorization."""
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                    INSERT INTO completed_orders(
                        authorization_id, account_id, created_at
                    ) VALUES (:auth, :aid, :now)
                    ON CONFLICT (authorization_id) DO NOTHING
                    RETURNING authorization_id
                """), {"auth": authorization_id, "aid": account_id,
                       "now": now_ts()})).first()
        return row is not None

    async def revoke(self, entitlement_id: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                result = await self.db.execute(
                    text("DELETE FROM entitlements WHERE id=:id"),
                    {"id": entitlement_id},
                )
                removed = result.rowcount
        return removed > 0

    async def recent_orders(self, limit: int = 200) -> List[Dict[str, Any]]:
        """Purchased entitlements grouped by authorization, newest first."""
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                    SELECT e.*, a.email AS email
                    FROM entitlements AS e
                    JOIN accounts AS a ON a.id = e.account_id
                    WHERE e.authorization_id IS NOT NULL
                    ORDER BY e.created_at DESC
                    LIMIT :lim
                """), {"lim": max(1, min(limit, 500))})).mappings().all()

        orders: Dict[str, Dict[str, Any]] = {}
        for r in rows:
            order = orders.get(r["authorization_id"])
            if order is None:
                order = {
                    "authorization_id": r["authorization_id"],
                    "email": r["email"],
                    "coupon_code": r["coupon_code"] or "",
                    "discount_amount": int(r["discount_amount"] or 0),
                    "created_at": to_iso(r["created_at"]),
                    "item_ids": [],
                }
                orders[r["authorization_id"]] = order
            order["item_ids"].append(r["item_id"])
        return list(orders.values())
