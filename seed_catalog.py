import asyncio
import os

from confshop.domain import Item
from confshop.infra.sql import create_schema, make_async_engine
from confshop.model.catalog import CatalogStore
from confshop.model.db import KIND_BUNDLE, KIND_REPLAY, KIND_TICKET, Base

# Config
EventYear = int(os.getenv("EVENT_YEAR", "2025"))
Currency = os.getenv("CURRENCY", "gbp")

# Catalog
ITEMS = [
    Item(id=f"ticket-{EventYear}", name=f"Conference ticket {EventYear}",
         kind=KIND_TICKET, event_year=EventYear, amount=49_700,
         currency=Currency),
    Item(id=f"bundle-{EventYear}", name=f"All replays {EventYear}",
         kind=KIND_BUNDLE, event_year=EventYear, amount=19_900,
         currency=Currency),
    Item(id=f"replay-{EventYear}-keynote", name="Replay: opening keynote",
         kind=KIND_REPLAY, event_year=EventYear, amount=2_900,
         currency=Currency, content_ref=f"{EventYear}-keynote"),
    Item(id=f"replay-{EventYear}-workshop", name="Replay: hands-on workshop",
         kind=KIND_REPLAY, event_year=EventYear, amount=4_900,
         currency=Currency, content_ref=f"{EventYear}-workshop"),
]


async def seed(database_url: str):
    engine, SessionAsync, _, gated = make_async_engine(database_url)
    await create_schema(engine, Base.metadata)
    print('✅ schema created')

    async with SessionAsync() as session:
        catalog = CatalogStore(db=session, gated=gated)
        for item in ITEMS:
            await catalog.upsert(item)
            print(f'  {item.id}: {item.amount} {item.currency}')
    print(f'✅ {len(ITEMS)} catalog items upserted')
    await engine.dispose()


if __name__ == '__main__':
    asyncio.run(seed(os.getenv("DATABASE_URL", "sqlite:///./confshop.db")))
