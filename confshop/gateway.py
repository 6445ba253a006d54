from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple, TypedDict
import base64
import hashlib
import hmac
import json
import uuid

import stripe

from .errors import GatewayError
from .helpers import now_ts


# authorization statuses
PENDING = "pending"
SUCCEEDED = "succeeded"
FAILED = "failed"


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class Authorization(TypedDict):
    id: str
    amount: int
    currency: str
    status: str  # pending | succeeded | failed
    client_handle: str
    customer_id: str
    metadata: Dict[str, str]


class PaymentAdapter(ABC):
    """Boundary to the payment provider.

    Every provider failure is raised as GatewayError carrying the provider's
    own message; nothing here retries.
    """

    @abstractmethod
    async def find_customer(self, email: str) -> Optional[str]: ...

    @abstractmethod
    async def create_customer(self, email: str) -> str: ...

    @abstractmethod
    async def create_authorization(
        self, amount: int, currency: str, customer_id: str,
        metadata: Dict[str, str],
    ) -> Authorization: ...

    @abstractmethod
    async def retrieve_authorization(
        self, authorization_id: str
    ) -> Authorization: ...

    @abstractmethod
    async def create_coupon(
        self, code: str, discount_kind: str, discount_value: int,
        currency: Optional[str], max_redemptions: Optional[int],
    ) -> str: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "succeeded" | "failed" | "canceled" | anything else is ignored
    @abstractmethod
    def event_kind(self, event: dict) -> str:
        ...

    # (authorization_id, idempotency_key)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        ...


# ----------------------------
# MockPay implementation
# ----------------------------
def mock_signature(secret: str, payload: bytes) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


class MockPay(PaymentAdapter):
    """In-process stand-in for the provider, for local runs and tests.

    Outcomes are set with `settle()` (the /mockpay buttons do this) and
    announced with an HMAC-signed webhook. Setting `outage` makes every call
    fail the way an unreachable provider would.
    """

    def __init__(self, secret: str) -> None:
        self.secret = secret
        self.customers: Dict[str, str] = {}
        self.authorizations: Dict[str, Authorization] = {}
        self.coupons: Dict[str, str] = {}
        self.outage: Optional[str] = None

    def _check(self) -> None:
        if self.outage:
            raise GatewayError(self.outage)

    async def find_customer(self, email: str) -> Optional[str]:
        self._check()
        return self.customers.get(email.lower())

    async def create_customer(self, email: str) -> str:
        self._check()
        cid = f"cus_mock_{uuid.uuid4().hex[:14]}"
        self.customers[email.lower()] = cid
        return cid

    async def create_authorization(
        self, amount: int, currency: str, customer_id: str,
        metadata: Dict[str, str],
    ) -> Authorization:
        self._check()
        if amount < 0:
            raise GatewayError("amount must be non-negative")
        aid = f"pi_mock_{uuid.uuid4().hex}"
        auth: Authorization = {
            "id": aid,
            "amount": int(amount),
            "currency": currency,
            "status": PENDING,
            "client_handle": f"{aid}_secret_{uuid.uuid4().hex[:12]}",
            "customer_id": customer_id,
            "metadata": dict(metadata),
        }
        self.authorizations[aid] = auth
        return dict(auth)

    async def retrieve_authorization(
        self, authorization_id: str
    ) -> Authorization:
        self._check()
        auth = self.authorizations.get(authorization_id)
        if auth is None:
            raise GatewayError(f"No such payment_intent: '{authorization_id}'")
        return dict(auth)

    async def create_coupon(
        self, code: str, discount_kind: str, discount_value: int,
        currency: Optional[str], max_redemptions: Optional[int],
    ) -> str:
        self._check()
        cid = f"coupon_mock_{uuid.uuid4().hex[:10]}"
        self.coupons[cid] = code
        return cid

    def settle(self, authorization_id: str, status: str) -> Authorization:
        """Move an authorization to its terminal state, exactly once."""
        auth = self.authorizations.get(authorization_id)
        if auth is None:
            raise KeyError(authorization_id)
        if auth["status"] == PENDING:
            auth["status"] = status
        return dict(auth)

    def build_event(self, authorization_id: str, kind: str) -> bytes:
        auth = self.authorizations[authorization_id]
        event = {
            "type": f"payment.{kind}",
            "authorization_id": authorization_id,
            "amount": auth["amount"],
            "currency": auth["currency"],
            "created_at": int(now_ts()),
            "idempotency_key": f"evt_{uuid.uuid4().hex}",
        }
        return json.dumps(event).encode()

    def sign(self, payload: bytes) -> str:
        return mock_signature(self.secret, payload)

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-mockpay-signature")
        expected = self.sign(payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise ValueError("Invalid signature")
        try:
            return json.loads(payload.decode())
        except json.JSONDecodeError:
            raise ValueError("Invalid JSON")

    def event_kind(self, event: dict) -> str:
        return event.get("type", "").split(".")[-1]

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        return (
                event.get("authorization_id", ""),
                event.get("idempotency_key")
        )


# ----------------------------
# Stripe implementation (PaymentIntents)
# ----------------------------
_STRIPE_STATUS = {
    "succeeded": SUCCEEDED,
    "canceled": FAILED,
}


def _from_intent(intent) -> Authorization:
    return {
        "id": intent.id,
        "amount": int(intent.amount),
        "currency": intent.currency,
        "status": _STRIPE_STATUS.get(intent.status, PENDING),
        "client_handle": intent.client_secret or "",
        "customer_id": intent.customer or "",
        "metadata": dict(intent.metadata or {}),
    }


class StripeGateway(PaymentAdapter):
    """PaymentIntents-backed adapter.

    Stripe will not create a PaymentIntent for a zero amount, so a checkout
    discounted to nothing (a 100% coupon) is refused here with GatewayError
    before any API call. Free orders need MockPay or a manual admin grant.
    """

    def __init__(self, api_key: str, webhook_secret: str) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    async def find_customer(self, email: str) -> Optional[str]:
        try:
            customers = await stripe.Customer.list_async(
                email=email, limit=1, api_key=self.api_key
            )
        except stripe.StripeError as e:
            raise GatewayError(str(e)) from e
        if customers.data:
            return customers.data[0].id
        return None

    async def create_customer(self, email: str) -> str:
        try:
            customer = await stripe.Customer.create_async(
                email=email, api_key=self.api_key
            )
        except stripe.StripeError as e:
            raise GatewayError(str(e)) from e
        return customer.id

    async def create_authorization(
        self, amount: int, currency: str, customer_id: str,
        metadata: Dict[str, str],
    ) -> Authorization:
        if amount <= 0:
            raise GatewayError(
                "Stripe cannot authorize a zero amount; "
                "free orders are not supported with this gateway"
            )
        try:
            intent = await stripe.PaymentIntent.create_async(
                amount=amount,
                currency=currency,
                customer=customer_id,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            raise GatewayError(str(e)) from e
        return _from_intent(intent)

    async def retrieve_authorization(
        self, authorization_id: str
    ) -> Authorization:
        try:
            intent = await stripe.PaymentIntent.retrieve_async(
                authorization_id, api_key=self.api_key
            )
        except stripe.StripeError as e:
            raise GatewayError(str(e)) from e
        return _from_intent(intent)

    async def create_coupon(
        self, code: str, discount_kind: str, discount_value: int,
        currency: Optional[str], max_redemptions: Optional[int],
    ) -> str:
        params = {"name": code, "api_key": self.api_key}
        if discount_kind == "percentage":
            params["percent_off"] = discount_value
        else:
            params["amount_off"] = discount_value
            params["currency"] = currency or "gbp"
        if max_redemptions:
            params["max_redemptions"] = max_redemptions
        try:
            coupon = await stripe.Coupon.create_async(**params)
        except stripe.StripeError as e:
            raise GatewayError(str(e)) from e
        return coupon.id

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("stripe-signature", "")
        try:
            event = stripe.Webhook.construct_event(
                payload, sig, self.webhook_secret
            )
        except stripe.SignatureVerificationError as e:
            raise ValueError("Invalid signature") from e
        return event.to_dict()

    def event_kind(self, event: dict) -> str:
        return {
            "payment_intent.succeeded": "succeeded",
            "payment_intent.payment_failed": "failed",
            "payment_intent.canceled": "canceled",
        }.get(event.get("type", ""), "")

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        obj = (event.get("data") or {}).get("object") or {}
        return obj.get("id", ""), event.get("id")
