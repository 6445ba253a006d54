import os
import tempfile

# config is read at import time; point the app at throwaway resources first
_tmp = tempfile.mkdtemp(prefix="confshop-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_tmp}/server.db"
os.environ["CART_BACKEND"] = "pg"
os.environ["PAYMENT_GATEWAY"] = "mock"
os.environ["MAILER"] = "log"
os.environ["MOCK_SECRET"] = "test-mock-secret"
# nothing listens here: /mockpay emits fail delivery and tests post the
# webhook themselves
os.environ["MOCK_WEBHOOK_URL"] = "http://127.0.0.1:9/payments/webhook"
os.environ["SESSION_SECRET"] = "test-session-secret"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "test-admin-pw"
os.environ["LOG_JSON"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"

from dataclasses import dataclass  # noqa: E402
from typing import Optional  # noqa: E402
import uuid  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402

from confshop.checkout import CheckoutResult, CheckoutService  # noqa: E402
from confshop.domain import CartOwner, Item  # noqa: E402
from confshop.fulfillment import EntitlementRecorder  # noqa: E402
from confshop.gateway import SUCCEEDED, MockPay  # noqa: E402
from confshop.identity import AccountDirectory  # noqa: E402
from confshop.infra.sql import create_schema, make_async_engine  # noqa: E402
from confshop.mailer import LogMailer  # noqa: E402
from confshop.model.accounts import AccountStore  # noqa: E402
from confshop.model.cart._postgres import CartStore  # noqa: E402
from confshop.model.catalog import CatalogStore  # noqa: E402
from confshop.model.coupons import CouponStore  # noqa: E402
from confshop.model.db import KIND_TICKET, Base  # noqa: E402
from confshop.model.entitlements import EntitlementStore  # noqa: E402


@dataclass
class Shop:
    """Every store and service wired onto one session, MockPay as gateway."""

    db: AsyncSession
    gated: object
    catalog: CatalogStore
    coupons: CouponStore
    carts: CartStore
    accounts: AccountStore
    directory: AccountDirectory
    entitlements: EntitlementStore
    gateway: MockPay
    mailer: LogMailer
    checkout: CheckoutService
    recorder: EntitlementRecorder

    async def item(
        self,
        item_id: Optional[str] = None,
        *,
        amount: int = 49_700,
        kind: str = KIND_TICKET,
        event_year: int = 2025,
        currency: str = "gbp",
        content_ref: Optional[str] = None,
        active: bool = True,
    ) -> Item:
        return await self.catalog.upsert(Item(
            id=item_id or f"item-{uuid.uuid4().hex[:8]}",
            name=f"{kind} {event_year}",
            kind=kind,
            event_year=event_year,
            amount=amount,
            currency=currency,
            content_ref=content_ref,
            active=active,
        ))

    async def paid(
        self,
        item_ids,
        *,
        email: str = "buyer@example.com",
        coupon_code: Optional[str] = None,
        account_id: Optional[str] = None,
        guest_email: Optional[str] = None,
        cart_owner: Optional[CartOwner] = None,
    ) -> CheckoutResult:
        result = await self.checkout.create(
            item_ids,
            email=email,
            coupon_code=coupon_code,
            account_id=account_id,
            guest_email=guest_email,
            cart_owner=cart_owner,
        )
        self.gateway.settle(result.authorization_id, SUCCEEDED)
        return result


def wire_shop(session, gated, gateway: MockPay, mailer: LogMailer) -> Shop:
    catalog = CatalogStore(db=session, gated=gated)
    coupons = CouponStore(db=session, gated=gated)
    carts = CartStore(db=session, gated=gated)
    accounts = AccountStore(db=session, gated=gated)
    directory = AccountDirectory(accounts)
    entitlements = EntitlementStore(db=session, gated=gated)
    return Shop(
        db=session,
        gated=gated,
        catalog=catalog,
        coupons=coupons,
        carts=carts,
        accounts=accounts,
        directory=directory,
        entitlements=entitlements,
        gateway=gateway,
        mailer=mailer,
        checkout=CheckoutService(catalog, coupons, gateway),
        recorder=EntitlementRecorder(
            gateway=gateway,
            catalog=catalog,
            entitlements=entitlements,
            coupons=coupons,
            carts=carts,
            accounts=directory,
            mailer=mailer,
        ),
    )


@pytest.fixture
async def database(tmp_path):
    database = make_async_engine(f"sqlite:///{tmp_path}/test.db")
    await create_schema(database.engine, Base.metadata)
    yield database
    await database.engine.dispose()


@pytest.fixture
async def db(database):
    async with database.sessions() as session:
        yield session, database.gated


@pytest.fixture
async def shop(db):
    session, gated = db
    return wire_shop(session, gated, MockPay("test-secret"), LogMailer())


@pytest.fixture
async def other_shop(database, shop):
    """Same database and gateway as `shop`, on its own session."""
    async with database.sessions() as session:
        yield wire_shop(session, database.gated, shop.gateway, shop.mailer)


# ---
# HTTP
# ---
@pytest.fixture(scope="session")
def app_client():
    from fastapi.testclient import TestClient
    from confshop import server

    # one client (and event loop) for the whole run; the engine's pool
    # stays on that loop
    with TestClient(server.app) as c:
        yield c


@pytest.fixture
def client(app_client):
    app_client.cookies.clear()
    yield app_client
    app_client.cookies.clear()
