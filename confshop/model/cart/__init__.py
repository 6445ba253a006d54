# model/cart/__init__.py
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ...config import CART_BACKEND as BACKEND, CART_TTL_SECONDS
from ...infra.sql import Gated

if BACKEND == "redis":
    from ._redis import CartStore as _CartStore
else:
    from ._postgres import CartStore as _CartStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = CART_TTL_SECONDS,
              gated: Optional[Gated] = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "CartStore(redis) requires r=redis.Redis"
            )
        return _CartStore(r=r, ttl_seconds=ttl_seconds)
    else:
        if db is None:
            raise RuntimeError(
                "CartStore(pg) requires db=AsyncSession"
            )
        if gated is None:
            raise RuntimeError(
                "CartStore(pg) requires gated=Gated"
            )
        return _CartStore(db=db, gated=gated)


CartStore = _CartStore
__all__ = ["CartStore", "new_store", "BACKEND"]
