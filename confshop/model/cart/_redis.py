from __future__ import annotations
from typing import Any, Dict, List
import redis.asyncio as redis

from ...domain import CartOwner
from ...helpers import now_ts


# ---- keys
def k_cart(owner_key: str) -> str: return f"cart:{owner_key}"


class CartStore:
    """One hash per owner: field = item id, value = time added.

    HSETNX makes add an upsert; quantity is always 1.
    """

    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def add(self, owner: CartOwner, item_id: str) -> bool:
        key = k_cart(owner.key)
        pipe = self.r.pipeline(transaction=True)
        pipe.hsetnx(key, item_id, str(now_ts()))
        pipe.expire(key, self.ttl)
        added, _ = await pipe.execute()
        return bool(added)

    async def remove(self, owner: CartOwner, item_id: str) -> bool:
        removed = await self.r.hdel(k_cart(owner.key), item_id)
        return bool(removed)

    async def lines(self, owner: CartOwner) -> List[Dict[str, Any]]:
        h = await self.r.hgetall(k_cart(owner.key))
        out = []
        for item_id, added in h.items():
            if isinstance(item_id, bytes):
                item_id = item_id.decode()
            try:
                added_at = float(added)
            except ValueError:
                added_at = 0.0
            out.append({"item_id": item_id, "quantity": 1,
                        "added_at": added_at})
        out.sort(key=lambda line: (line["added_at"], line["item_id"]))
        return out

    async def clear(self, owner: CartOwner) -> int:
        key = k_cart(owner.key)
        pipe = self.r.pipeline(transaction=True)
        pipe.hlen(key)
        pipe.delete(key)
        n, _ = await pipe.execute()
        return int(n)
