from __future__ import annotations
import uuid
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import normalize_email, now_ts
from ..infra.sql import Gated


class AccountStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def get(self, account_id: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    text("SELECT * FROM accounts WHERE id=:id"),
                    {"id": account_id},
                )).mappings().first()
        return dict(row) if row else None

    async def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    text("SELECT * FROM accounts WHERE email=:email"),
                    {"email": normalize_email(email)},
                )).mappings().first()
        return dict(row) if row else None

    async def create_preconfirmed(self, email: str) -> Tuple[str, bool]:
        """Return (account_id, created).

        Lookup-then-create on the unique email; a concurrent create for the
        same address loses the insert and reads the winner's row.
        """
        email = normalize_email(email)
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                    INSERT INTO accounts(id, email, confirmed, created_at)
                    VALUES (:id, :email, :confirmed, :now)
                    ON CONFLICT (email) DO NOTHING
                    RETURNING id
                """), {"id": uuid.uuid4().hex, "email": email,
                       "confirmed": True, "now": now_ts()})).first()
                if row is not None:
                    return row[0], True
                existing = (await self.db.execute(
                    text("SELECT id FROM accounts WHERE email=:email"),
                    {"email": email},
                )).first()
        return existing[0], False
