from __future__ import annotations
from typing import Dict, List, Optional, Sequence

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain import Item
from ..helpers import now_ts
from ..infra.sql import Gated
from .db import ITEM_KINDS


class CatalogStore:
    """Read side of the catalog, plus the upsert admin seeding uses."""

    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def get_items(self, item_ids: Sequence[str]) -> Dict[str, Item]:
        """Items by id, active or not; unknown ids are simply absent."""
        if not item_ids:
            return {}
        stmt = text(
            "SELECT * FROM catalog_items WHERE id IN :ids"
        ).bindparams(bindparam("ids", expanding=True))
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    stmt, {"ids": list(item_ids)}
                )).mappings().all()
        return {r["id"]: Item.from_row(r) for r in rows}

    async def get_item(self, item_id: str) -> Optional[Item]:
        return (await self.get_items([item_id])).get(item_id)

    async def list_active(self) -> List[Item]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                    SELECT * FROM catalog_items
                    WHERE active
                    ORDER BY event_year DESC, kind, name
                """))).mappings().all()
        return [Item.from_row(r) for r in rows]

    async def upsert(self, item: Item) -> Item:
        if item.kind not in ITEM_KINDS:
            raise ValueError(f"unknown item kind: {item.kind}")
        if item.amount < 0:
            raise ValueError("amount cannot be negative")
        now = now_ts()
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                    INSERT INTO catalog_items(
                        id, name, kind, event_year, amount, currency,
                        content_ref, active, created_at, updated_at
                    ) VALUES (
                        :id, :name, :kind, :event_year, :amount, :currency,
                        :content_ref, :active, :now, :now
                    )
                    ON CONFLICT (id) DO UPDATE SET
                        name=EXCLUDED.name, kind=EXCLUDED.kind,
                        event_year=EXCLUDED.event_year,
                        amount=EXCLUDED.amount, currency=EXCLUDED.currency,
                        content_ref=EXCLUDED.content_ref,
                        active=EXCLUDED.active,
                        updated_at=EXCLUDED.updated_at
                """), {**item.as_dict(), "now": now})
        return item
