from __future__ import annotations

import uuid
from typing import List, Optional

import httpx
import redis.asyncio as redis
import structlog
from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import ORJSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .config import (
    ADMIN_PASSWORD,
    ADMIN_USERNAME,
    CART_BACKEND,
    DATABASE_URL,
    MAIL_FROM,
    MAILER,
    MOCK_SECRET,
    MOCK_WEBHOOK_URL,
    PAYMENT_GATEWAY,
    REDIS_MAX_CONN,
    REDIS_URL,
    RESEND_API_KEY,
    SESSION_SECRET,
    STRIPE_TEST_MODE,
    STRIPE_WEBHOOK_SECRET,
    stripe_api_key,
)
from .checkout import CheckoutService, unique_ids
from .domain import AdminContext, CartOwner, Item
from .errors import (
    AdminRequiredError,
    CouponNotFoundError,
    DomainError,
    ErrorCode,
    IdentityRequiredError,
    ItemInactiveError,
    ItemNotFoundError,
)
from .fulfillment import EntitlementRecorder
from .gateway import FAILED, SUCCEEDED, MockPay, PaymentAdapter, StripeGateway
from .helpers import ct_equal, from_iso, normalize_code, to_iso
from .identity import (
    SESSION_ADMIN_KEY,
    AccountDirectory,
    admin_from_request,
    checkout_email,
)
from .infra.logs import configure_logging
from .infra.sql import create_schema, make_async_engine
from .mailer import LogMailer, Mailer, ResendMailer
from .model.accounts import AccountStore
from .model.cart import CartStore, new_store
from .model.catalog import CatalogStore
from .model.coupons import CouponStore
from .model.db import DISCOUNT_KINDS, DISCOUNT_PERCENTAGE, ITEM_KINDS, Base
from .model.entitlements import EntitlementStore
from .pricing import charge_total, evaluate, subtotal_of

configure_logging()
log = structlog.get_logger(__name__)

SESSION_CART_KEY = "cart_session"

engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)


async def get_db() -> AsyncSession:
    async with SessionAsync() as session:
        yield session


if PAYMENT_GATEWAY == "stripe":
    adapter: PaymentAdapter = StripeGateway(
        stripe_api_key(), STRIPE_WEBHOOK_SECRET
    )
else:
    adapter = MockPay(MOCK_SECRET)

if MAILER == "resend":
    mailer: Mailer = ResendMailer(RESEND_API_KEY, MAIL_FROM)
else:
    mailer = LogMailer()

app = FastAPI(
    title="confshop",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)


def get_gateway() -> PaymentAdapter:
    return adapter


def get_mailer() -> Mailer:
    return mailer


# ----------------------------
# Stores & services per request
# ----------------------------
async def carts(db: AsyncSession = Depends(get_db)) -> CartStore:
    if CART_BACKEND == "redis":
        yield new_store(r=app.state.redis)
    else:
        yield new_store(db=db, gated=gated)


def catalog_store(db: AsyncSession = Depends(get_db)) -> CatalogStore:
    return CatalogStore(db=db, gated=gated)


def coupon_store(db: AsyncSession = Depends(get_db)) -> CouponStore:
    return CouponStore(db=db, gated=gated)


def entitlement_store(db: AsyncSession = Depends(get_db)) -> EntitlementStore:
    return EntitlementStore(db=db, gated=gated)


def accounts(db: AsyncSession = Depends(get_db)) -> AccountDirectory:
    return AccountDirectory(AccountStore(db=db, gated=gated))


def checkout_service(
    catalog: CatalogStore = Depends(catalog_store),
    coupons: CouponStore = Depends(coupon_store),
    gateway: PaymentAdapter = Depends(get_gateway),
) -> CheckoutService:
    return CheckoutService(catalog, coupons, gateway)


def recorder(
    catalog: CatalogStore = Depends(catalog_store),
    coupons: CouponStore = Depends(coupon_store),
    entitlements: EntitlementStore = Depends(entitlement_store),
    cart: CartStore = Depends(carts),
    directory: AccountDirectory = Depends(accounts),
    gateway: PaymentAdapter = Depends(get_gateway),
    mail: Mailer = Depends(get_mailer),
) -> EntitlementRecorder:
    return EntitlementRecorder(
        gateway=gateway,
        catalog=catalog,
        entitlements=entitlements,
        coupons=coupons,
        carts=cart,
        accounts=directory,
        mailer=mail,
    )


def cart_owner(
    request: Request, directory: AccountDirectory = Depends(accounts)
) -> CartOwner:
    account_id = directory.current_from_request(request)
    if account_id:
        return CartOwner.for_account(account_id)
    token = request.session.get(SESSION_CART_KEY)
    if not token:
        token = uuid.uuid4().hex
        request.session[SESSION_CART_KEY] = token
    return CartOwner.for_session(token)


def require_admin(request: Request) -> AdminContext:
    admin = admin_from_request(request)
    if admin is None:
        raise AdminRequiredError()
    return admin


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    log.info(
        "startup",
        gateway=PAYMENT_GATEWAY,
        stripe_test_mode=STRIPE_TEST_MODE,
        cart_backend=CART_BACKEND,
        mailer=MAILER,
    )


@app.on_event("startup")
async def _db_init():
    await create_schema(engine, Base.metadata)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(timeout=5.0)


@app.on_event("startup")
async def _redis_start():
    if CART_BACKEND == "redis":
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=REDIS_MAX_CONN,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    await engine.dispose()


# ----------------------------
# Errors
# ----------------------------
ERROR_STATUS = {
    ErrorCode.EMPTY_CART: 400,
    ErrorCode.CURRENCY_MISMATCH: 400,
    ErrorCode.IDENTITY_REQUIRED: 400,
    ErrorCode.ITEM_INACTIVE: 400,
    ErrorCode.COUPON_INVALID: 400,
    ErrorCode.ITEM_NOT_FOUND: 404,
    ErrorCode.COUPON_NOT_FOUND: 404,
    ErrorCode.NOT_SUCCEEDED: 409,
    ErrorCode.SNAPSHOT_INVALID: 422,
    ErrorCode.ADMIN_REQUIRED: 401,
    ErrorCode.ENTITLEMENT_CONFLICT: 500,
    ErrorCode.GATEWAY_ERROR: 502,
    ErrorCode.RECORDING_INCOMPLETE: 503,
}


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    status = ERROR_STATUS.get(exc.code, 400)
    log.info("request.domain_error", path=request.url.path,
             code=exc.code.value, status=status)
    body = {"error": exc.code.value, "detail": exc.message}
    if exc.code in (ErrorCode.NOT_SUCCEEDED,
                    ErrorCode.RECORDING_INCOMPLETE):
        body["retry"] = True
    return ORJSONResponse(body, status_code=status)


# ----------------------------
# Request bodies
# ----------------------------
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CheckoutRequest(CamelModel):
    item_ids: List[str] = Field(default_factory=list)
    coupon_code: Optional[str] = None
    guest_email: Optional[str] = None


class ConfirmRequest(CamelModel):
    authorization_id: str
    create_account: bool = False


class CartAdd(CamelModel):
    item_id: str


class CouponPreview(CamelModel):
    item_ids: List[str] = Field(default_factory=list)
    coupon_code: str


class AccessCheck(CamelModel):
    event_year: int
    item_ref: Optional[str] = None


class CouponCreate(CamelModel):
    code: str
    discount_kind: str
    discount_value: int
    currency: Optional[str] = None
    item_id: Optional[str] = None
    valid_from: Optional[str] = None
    valid_until: Optional[str] = None
    max_redemptions: Optional[int] = None


class CatalogUpsert(CamelModel):
    id: Optional[str] = None
    name: str
    kind: str
    event_year: int
    amount: int
    currency: str = "gbp"
    content_ref: Optional[str] = None
    active: bool = True


class GrantRequest(CamelModel):
    item_id: str
    account_id: Optional[str] = None
    email: Optional[str] = None


def _item_json(item: Item) -> dict:
    return {
        "id": item.id,
        "name": item.name,
        "kind": item.kind,
        "eventYear": item.event_year,
        "amount": item.amount,
        "currency": item.currency,
        "contentRef": item.content_ref,
    }


def _coupon_json(coupon) -> dict:
    return {
        "id": coupon.id,
        "code": coupon.code,
        "discountKind": coupon.discount_kind,
        "discountValue": coupon.discount_value,
        "currency": coupon.currency,
        "itemId": coupon.item_id,
        "validFrom": to_iso(coupon.valid_from),
        "validUntil": to_iso(coupon.valid_until),
        "maxRedemptions": coupon.max_redemptions,
        "timesRedeemed": coupon.times_redeemed,
        "active": coupon.active,
    }


# ----------------------------
# Catalog & cart
# ----------------------------
@app.get("/api/catalog")
async def list_catalog(catalog: CatalogStore = Depends(catalog_store)):
    return {"items": [_item_json(i) for i in await catalog.list_active()]}


@app.get("/api/cart")
async def get_cart(
    owner: CartOwner = Depends(cart_owner),
    cart: CartStore = Depends(carts),
    catalog: CatalogStore = Depends(catalog_store),
):
    lines = await cart.lines(owner)
    items = await catalog.get_items([line["item_id"] for line in lines])
    out = []
    for line in lines:
        item = items.get(line["item_id"])
        if item is None:
            continue
        out.append({**_item_json(item), "quantity": line["quantity"],
                    "available": item.active})
    return {
        "items": out,
        "itemCount": sum(line["quantity"] for line in out),
        "total": sum(line["amount"] * line["quantity"] for line in out),
    }


@app.post("/api/cart/items")
async def add_to_cart(
    payload: CartAdd,
    owner: CartOwner = Depends(cart_owner),
    cart: CartStore = Depends(carts),
    catalog: CatalogStore = Depends(catalog_store),
):
    item = await catalog.get_item(payload.item_id)
    if item is None or not item.active:
        raise ItemInactiveError([payload.item_id])
    added = await cart.add(owner, item.id)
    return {"added": added, "alreadyInCart": not added}


@app.delete("/api/cart/items/{item_id}")
async def remove_from_cart(
    item_id: str,
    owner: CartOwner = Depends(cart_owner),
    cart: CartStore = Depends(carts),
):
    return {"removed": await cart.remove(owner, item_id)}


@app.delete("/api/cart")
async def clear_cart(
    owner: CartOwner = Depends(cart_owner),
    cart: CartStore = Depends(carts),
):
    return {"removed": await cart.clear(owner)}


# ----------------------------
# Coupons (storefront)
# ----------------------------
@app.post("/api/coupons/preview")
async def preview_coupon(
    payload: CouponPreview,
    service: CheckoutService = Depends(checkout_service),
    coupons: CouponStore = Depends(coupon_store),
):
    items = await service.resolve_items(payload.item_ids)
    evaluation = evaluate(await coupons.find_by_code(payload.coupon_code),
                          items)
    subtotal = subtotal_of(items)
    return {
        "valid": evaluation.valid,
        "reason": evaluation.reason,
        "code": normalize_code(payload.coupon_code),
        "subtotal": subtotal,
        "discount": evaluation.discount_amount,
        "total": charge_total(subtotal, evaluation.discount_amount),
    }


# ----------------------------
# Checkout & confirmation
# ----------------------------
@app.post("/api/checkout")
async def create_checkout(
    payload: CheckoutRequest,
    request: Request,
    owner: CartOwner = Depends(cart_owner),
    directory: AccountDirectory = Depends(accounts),
    service: CheckoutService = Depends(checkout_service),
):
    account_id = directory.current_from_request(request)
    email = None
    if unique_ids(payload.item_ids):
        email = await checkout_email(directory, account_id,
                                     payload.guest_email)
    result = await service.create(
        payload.item_ids,
        email=email,
        coupon_code=payload.coupon_code,
        account_id=account_id,
        guest_email=None if account_id else email,
        cart_owner=owner,
    )
    return {
        "clientHandle": result.client_handle,
        "authorizationId": result.authorization_id,
        "amount": result.total_amount,
        "discount": result.discount_amount,
        "currency": result.currency,
        "couponCode": result.coupon_code,
    }


@app.post("/api/checkout/confirm")
async def confirm_checkout(
    payload: ConfirmRequest,
    request: Request,
    directory: AccountDirectory = Depends(accounts),
    rec: EntitlementRecorder = Depends(recorder),
):
    result = await rec.confirm(
        payload.authorization_id,
        create_account=payload.create_account,
        session_account_id=directory.current_from_request(request),
    )
    return {
        "success": True,
        "accountId": result.account_id,
        "accountCreated": result.account_created,
        "granted": result.granted,
        "alreadyPresent": result.already_present,
    }


# ----------------------------
# Webhook endpoint (shared for Mock/Stripe)
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    gateway: PaymentAdapter = Depends(get_gateway),
    rec: EntitlementRecorder = Depends(recorder),
):
    payload = await request.body()
    headers = dict(request.headers)

    try:
        event = gateway.verify_webhook(payload, headers)
    except ValueError as e:
        raise HTTPException(400, detail=str(e))
    kind = gateway.event_kind(event)  # succeeded | failed | canceled
    authorization_id, idem = gateway.event_ids(event)
    if not authorization_id:
        raise HTTPException(400, detail="missing authorization id")

    log.info("webhook.received", kind=kind, authorization_id=authorization_id,
             event_id=idem)
    if kind != "succeeded":
        # nothing to undo: entitlements only ever follow a success
        return {"ok": True, "recorded": False}

    try:
        result = await rec.confirm(authorization_id)
    except IdentityRequiredError:
        # guest who has not come back to claim it yet; the browser
        # confirmation (with createAccount) will record it
        log.info("webhook.awaiting_owner", authorization_id=authorization_id)
        return {"ok": True, "recorded": False}
    return {"ok": True, "recorded": True,
            "idempotent": not result.granted}


# ----------------------------
# Entitlements
# ----------------------------
@app.get("/api/entitlements")
async def my_entitlements(
    request: Request,
    directory: AccountDirectory = Depends(accounts),
    entitlements: EntitlementStore = Depends(entitlement_store),
):
    account_id = directory.current_from_request(request)
    if not account_id:
        raise IdentityRequiredError("Sign in to see your purchases")
    return {"items": await entitlements.list_for_account(account_id)}


@app.post("/api/entitlements/access")
async def check_access(
    payload: AccessCheck,
    request: Request,
    directory: AccountDirectory = Depends(accounts),
    entitlements: EntitlementStore = Depends(entitlement_store),
):
    if admin_from_request(request) is not None:
        return {"hasAccess": True, "isAdmin": True}
    account_id = directory.current_from_request(request)
    if not account_id:
        return {"hasAccess": False, "isAdmin": False}
    has = await entitlements.has_access(
        account_id, payload.event_year, payload.item_ref
    )
    return {"hasAccess": has, "isAdmin": False}


# ----------------------------
# MockPay (outcome buttons as JSON)
# ----------------------------
def _mockpay() -> MockPay:
    if not isinstance(adapter, MockPay):
        raise HTTPException(404, detail="mock gateway disabled")
    return adapter


@app.get("/mockpay/{authorization_id}")
async def mockpay_screen(authorization_id: str):
    mock = _mockpay()
    auth = mock.authorizations.get(authorization_id)
    if not auth:
        raise HTTPException(404, "authorization not found")
    return {
        "authorizationId": authorization_id,
        "amount": auth["amount"],
        "currency": auth["currency"],
        "status": auth["status"],
        "webhookUrl": MOCK_WEBHOOK_URL,
    }


@app.post("/mockpay/{authorization_id}/emit")
async def mockpay_emit(authorization_id: str, t: str = Form(...)):
    mock = _mockpay()
    if t not in {"succeeded", "failed", "canceled"}:
        raise HTTPException(400, detail="invalid kind")
    if authorization_id not in mock.authorizations:
        raise HTTPException(404, "authorization not found")

    auth = mock.settle(authorization_id,
                       SUCCEEDED if t == "succeeded" else FAILED)
    payload = mock.build_event(authorization_id, t)

    client_http: httpx.AsyncClient = app.state.http
    delivered = True
    try:
        await client_http.post(
            MOCK_WEBHOOK_URL,
            content=payload,
            headers={
                "x-mockpay-signature": mock.sign(payload),
                "content-type": "application/json",
            },
        )
    except httpx.HTTPError as e:
        # the browser confirmation still records the purchase; user can
        # retry the webhook from here
        log.warning("mockpay.webhook_failed", error=str(e))
        delivered = False

    return {"status": auth["status"], "webhookDelivered": delivered}


# ----------------------------
# Admin
# ----------------------------
@app.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form("/api/admin/orders"),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session[SESSION_ADMIN_KEY] = username.strip()
        return RedirectResponse(
            url=(next or "/api/admin/orders"),
            status_code=HTTP_303_SEE_OTHER
        )
    return ORJSONResponse({"error": "Invalid credentials."}, status_code=401)


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.pop(SESSION_ADMIN_KEY, None)
    return RedirectResponse(url="/", status_code=HTTP_303_SEE_OTHER)


@app.get("/api/admin/orders")
async def api_admin_orders(
    limit: int = 200,
    admin: AdminContext = Depends(require_admin),
    entitlements: EntitlementStore = Depends(entitlement_store),
):
    return {"items": await entitlements.recent_orders(limit=limit),
            "limit": limit}


@app.post("/api/admin/catalog")
async def api_admin_catalog_upsert(
    payload: CatalogUpsert,
    admin: AdminContext = Depends(require_admin),
    catalog: CatalogStore = Depends(catalog_store),
):
    if payload.kind not in ITEM_KINDS:
        raise HTTPException(400, detail="invalid item kind")
    if payload.amount < 0:
        raise HTTPException(400, detail="amount cannot be negative")
    item = await catalog.upsert(Item(
        id=payload.id or uuid.uuid4().hex,
        name=payload.name,
        kind=payload.kind,
        event_year=payload.event_year,
        amount=payload.amount,
        currency=payload.currency.lower(),
        content_ref=payload.content_ref,
        active=payload.active,
    ))
    log.info("admin.catalog_upsert", admin=admin.admin_id, item_id=item.id)
    return {"item": _item_json(item)}


@app.get("/api/admin/coupons")
async def api_admin_coupons(
    admin: AdminContext = Depends(require_admin),
    coupons: CouponStore = Depends(coupon_store),
):
    return {"items": [_coupon_json(c) for c in await coupons.list_all()]}


@app.post("/api/admin/coupons")
async def api_admin_coupon_create(
    payload: CouponCreate,
    admin: AdminContext = Depends(require_admin),
    coupons: CouponStore = Depends(coupon_store),
    catalog: CatalogStore = Depends(catalog_store),
    gateway: PaymentAdapter = Depends(get_gateway),
):
    code = normalize_code(payload.code)
    if not code:
        raise HTTPException(400, detail="code is required")
    if payload.discount_kind not in DISCOUNT_KINDS:
        raise HTTPException(400, detail="invalid discount kind")
    if payload.discount_value <= 0:
        raise HTTPException(400, detail="discount value must be positive")
    if (payload.discount_kind == DISCOUNT_PERCENTAGE
            and payload.discount_value > 100):
        raise HTTPException(400, detail="percentage cannot exceed 100")
    if payload.item_id and await catalog.get_item(payload.item_id) is None:
        raise ItemNotFoundError(payload.item_id)
    if await coupons.find_by_code(code) is not None:
        raise HTTPException(409, detail="coupon code already exists")
    try:
        valid_from = from_iso(payload.valid_from)
        valid_until = from_iso(payload.valid_until)
    except ValueError:
        raise HTTPException(400, detail="dates must be ISO 8601")

    gateway_coupon_id = await gateway.create_coupon(
        code, payload.discount_kind, payload.discount_value,
        payload.currency, payload.max_redemptions,
    )
    try:
        coupon = await coupons.create({
            "code": code,
            "discount_kind": payload.discount_kind,
            "discount_value": payload.discount_value,
            "currency": payload.currency,
            "item_id": payload.item_id,
            "valid_from": valid_from,
            "valid_until": valid_until,
            "max_redemptions": payload.max_redemptions,
            "gateway_coupon_id": gateway_coupon_id,
        })
    except IntegrityError:
        # a concurrent create of the same code won the insert
        raise HTTPException(409, detail="coupon code already exists")
    log.info("admin.coupon_created", admin=admin.admin_id, code=code)
    return {"success": True, "coupon": _coupon_json(coupon)}


@app.post("/api/admin/coupons/{coupon_id}/toggle")
async def api_admin_coupon_toggle(
    coupon_id: str,
    admin: AdminContext = Depends(require_admin),
    coupons: CouponStore = Depends(coupon_store),
):
    coupon = await coupons.toggle_active(coupon_id)
    if coupon is None:
        raise CouponNotFoundError(coupon_id)
    log.info("admin.coupon_toggled", admin=admin.admin_id,
             coupon_id=coupon_id, active=coupon.active)
    return {"success": True, "coupon": _coupon_json(coupon)}


@app.delete("/api/admin/coupons/{coupon_id}")
async def api_admin_coupon_delete(
    coupon_id: str,
    admin: AdminContext = Depends(require_admin),
    coupons: CouponStore = Depends(coupon_store),
):
    if not await coupons.delete(coupon_id):
        raise CouponNotFoundError(coupon_id)
    log.info("admin.coupon_deleted", admin=admin.admin_id,
             coupon_id=coupon_id)
    return {"success": True}


@app.post("/api/admin/entitlements")
async def api_admin_grant(
    payload: GrantRequest,
    admin: AdminContext = Depends(require_admin),
    catalog: CatalogStore = Depends(catalog_store),
    entitlements: EntitlementStore = Depends(entitlement_store),
    db: AsyncSession = Depends(get_db),
):
    item = await catalog.get_item(payload.item_id)
    if item is None:
        raise ItemNotFoundError(payload.item_id)
    store = AccountStore(db=db, gated=gated)
    account_id = payload.account_id
    if not account_id and payload.email:
        account = await store.find_by_email(payload.email)
        account_id = account["id"] if account else None
    if not account_id or await store.get(account_id) is None:
        raise HTTPException(404, detail="account not found")

    entitlement_id, created = await entitlements.insert_if_absent(
        account_id, item, granted_by=admin.admin_id
    )
    log.info("admin.entitlement_granted", admin=admin.admin_id,
             account_id=account_id, item_id=item.id, created=created)
    return {"entitlementId": entitlement_id, "created": created}


@app.delete("/api/admin/entitlements/{entitlement_id}")
async def api_admin_revoke(
    entitlement_id: str,
    admin: AdminContext = Depends(require_admin),
    entitlements: EntitlementStore = Depends(entitlement_store),
):
    if not await entitlements.revoke(entitlement_id):
        raise HTTPException(404, detail="entitlement not found")
    log.info("admin.entitlement_revoked", admin=admin.admin_id,
             entitlement_id=entitlement_id)
    return {"success": True}
