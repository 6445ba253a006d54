from __future__ import annotations
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain import CouponRule
from ..helpers import normalize_code, now_ts
from ..infra.sql import Gated

# record_redemption outcomes
REDEMPTION_COUNTED = "counted"
REDEMPTION_REPEAT = "repeat"  # authorization already recorded
REDEMPTION_OVER_CAP = "over_cap"


class CouponStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def find_by_code(self, code: str) -> Optional[CouponRule]:
        code = normalize_code(code)
        if not code:
            return None
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    text("SELECT * FROM coupons WHERE code=:code"),
                    {"code": code},
                )).mappings().first()
        return CouponRule.from_row(row) if row else None

    async def get(self, coupon_id: str) -> Optional[CouponRule]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    text("SELECT * FROM coupons WHERE id=:id"),
                    {"id": coupon_id},
                )).mappings().first()
        return CouponRule.from_row(row) if row else None

    async def list_all(self) -> List[CouponRule]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text(
                    "SELECT * FROM coupons ORDER BY created_at DESC"
                ))).mappings().all()
        return [CouponRule.from_row(r) for r in rows]

    async def create(self, data: Dict[str, Any]) -> CouponRule:
        now = now_ts()
        params = {
            "id": data.get("id") or uuid.uuid4().hex,
            "code": normalize_code(data["code"]),
            "discount_kind": data["discount_kind"],
            "discount_value": int(data["discount_value"]),
            "currency": (data.get("currency") or "gbp").lower(),
            "item_id": data.get("item_id"),
            "valid_from": data.get("valid_from"),
            "valid_until": data.get("valid_until"),
            "max_redemptions": data.get("max_redemptions"),
            "times_redeemed": int(data.get("times_redeemed") or 0),
            "active": bool(data.get("active", True)),
            "gateway_coupon_id": data.get("gateway_coupon_id"),
            "now": now,
        }
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                    INSERT INTO coupons(
                        id, code, discount_kind, discount_value, currency,
                        item_id, valid_from, valid_until, max_redemptions,
                        times_redeemed, active, gateway_coupon_id,
                        created_at, updated_at
                    ) VALUES (
                        :id, :code, :discount_kind, :discount_value,
                        :currency, :item_id, :valid_from, :valid_until,
                        :max_redemptions, :times_redeemed, :active,
                        :gateway_coupon_id, :now, :now
                    )
                """), params)
        params.pop("now")
        return CouponRule.from_row(params)

    async def toggle_active(self, coupon_id: str) -> Optional[CouponRule]:
        async with self.gated():
            async with self.db.begin():
                result = await self.db.execute(text("""
                    UPDATE coupons SET active = NOT active, updated_at=:now
                    WHERE id=:id
                """), {"id": coupon_id, "now": now_ts()})
                if result.rowcount == 0:
                    return None
                row = (await self.db.execute(
                    text("SELECT * FROM coupons WHERE id=:id"),
                    {"id": coupon_id},
                )).mappings().first()
        return CouponRule.from_row(row)

    async def delete(self, coupon_id: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                result = await self.db.execute(
                    text("DELETE FROM coupons WHERE id=:id"),
                    {"id": coupon_id},
                )
                deleted = result.rowcount
        return deleted > 0

    async def record_redemption(
            self, authorization_id: str, code: str
    ) -> str:
        """Count one redemption of `code` for `authorization_id`.

        The redemption row and the counter bump share a transaction, so an
        authorization is counted at most once however often it is replayed.
        The bump never takes the counter past `max_redemptions`; two
        checkouts that both quoted the last slot leave it at the cap
        (REDEMPTION_OVER_CAP for the later one).
        """
        code = normalize_code(code)
        async with self.gated():
            async with self.db.begin():
                gate = (await self.db.execute(text("""
                    INSERT INTO coupon_redemptions(
                        authorization_id, coupon_code, created_at
                    ) VALUES (:aid, :code, :now)
                    ON CONFLICT (authorization_id) DO NOTHING
                    RETURNING authorization_id
                """), {"aid": authorization_id, "code": code,
                       "now": now_ts()})).first()
                if gate is None:
                    return REDEMPTION_REPEAT
                result = await self.db.execute(text("""
                    UPDATE coupons
                    SET times_redeemed = times_redeemed + 1, updated_at=:now
                    WHERE code=:code
                      AND (max_redemptions IS NULL
                           OR times_redeemed < max_redemptions)
                """), {"code": code, "now": now_ts()})
                bumped = result.rowcount
        return REDEMPTION_COUNTED if bumped else REDEMPTION_OVER_CAP

    async def redemption_count(self, code: str) -> int:
        async with self.gated():
            async with self.db.begin():
                n = (await self.db.execute(text("""
                    SELECT COUNT(*) FROM coupon_redemptions
                    WHERE coupon_code=:code
                """), {"code": normalize_code(code)})).scalar_one()
        return int(n)
