from __future__ import annotations
from typing import Any, Dict, List

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ...domain import CartOwner
from ...helpers import now_ts
from ...infra.sql import Gated


class CartStore:
    """Cart lines in SQL; the (owner, item_id) unique constraint is the
    only thing keeping concurrent adds from producing two lines."""

    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def add(self, owner: CartOwner, item_id: str) -> bool:
        """Upsert a line. Returns False if the item was already in the cart;
        quantity stays at 1 either way."""
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                    INSERT INTO cart_lines(owner, item_id, quantity, created_at)
                    VALUES (:owner, :item_id, 1, :now)
                    ON CONFLICT (owner, item_id) DO NOTHING
                    RETURNING id
                """), {"owner": owner.key, "item_id": item_id,
                       "now": now_ts()})).first()
        return row is not None

    async def remove(self, owner: CartOwner, item_id: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                result = await self.db.execute(text("""
                    DELETE FROM cart_lines
                    WHERE owner=:owner AND item_id=:item_id
                """), {"owner": owner.key, "item_id": item_id})
                removed = result.rowcount
        return removed > 0

    async def lines(self, owner: CartOwner) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                    SELECT item_id, quantity, created_at FROM cart_lines
                    WHERE owner=:owner
                    ORDER BY created_at, id
                """), {"owner": owner.key})).mappings().all()
        return [
            {
                "item_id": r["item_id"],
                "quantity": int(r["quantity"]),
                "added_at": float(r["created_at"]),
            }
            for r in rows
        ]

    async def clear(self, owner: CartOwner) -> int:
        async with self.gated():
            async with self.db.begin():
                result = await self.db.execute(
                    text("DELETE FROM cart_lines WHERE owner=:owner"),
                    {"owner": owner.key},
                )
                removed = result.rowcount
        return int(removed)
