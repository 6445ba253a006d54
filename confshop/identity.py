"""Who is buying, and who ends up owning what was bought."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog
from starlette.requests import Request

from .domain import AdminContext
from .errors import IdentityRequiredError
from .helpers import is_valid_email, normalize_email
from .model.accounts import AccountStore
from .snapshot import CheckoutSnapshot

log = structlog.get_logger(__name__)

SESSION_ACCOUNT_KEY = "account_id"
SESSION_ADMIN_KEY = "admin_user"


class AccountDirectory:
    """Identity/account boundary.

    Sign-in itself happens elsewhere; by the time a request reaches us an
    authenticated user has `account_id` in the signed session cookie.
    """

    def __init__(self, store: AccountStore) -> None:
        self._store = store

    def current_from_request(self, request: Request) -> Optional[str]:
        return request.session.get(SESSION_ACCOUNT_KEY) or None

    async def create_preconfirmed(self, email: str) -> tuple[str, bool]:
        return await self._store.create_preconfirmed(email)

    async def email_of(self, account_id: str) -> Optional[str]:
        account = await self._store.get(account_id)
        return account["email"] if account else None


async def checkout_email(
    directory: AccountDirectory,
    account_id: Optional[str],
    guest_email: Optional[str],
) -> Optional[str]:
    """The signed-in account's address wins over anything typed in.

    None when neither yields a usable address; checkout turns that into
    IdentityRequiredError before touching the gateway.
    """
    if account_id:
        email = await directory.email_of(account_id)
        if email:
            return email
    if is_valid_email(guest_email):
        return normalize_email(guest_email)
    return None


@dataclass(frozen=True)
class Owner:
    account_id: str
    account_created: bool = False


async def resolve_owner(
    directory: AccountDirectory,
    snapshot: CheckoutSnapshot,
    *,
    session_account_id: Optional[str],
    create_account: bool,
    recorded_account_id: Optional[str] = None,
) -> Owner:
    """Decide which account a confirmed payment belongs to.

    The account signed in at checkout owns it, whoever confirms. For a guest
    payment, the account already holding its entitlements (an earlier
    confirmation) keeps it. Otherwise a guest asking for an account gets a
    pre-confirmed one for the email on the payment, or the caller's session
    claims it.
    """
    if snapshot.account_id:
        if session_account_id and session_account_id != snapshot.account_id:
            log.warning("identity.foreign_session_ignored",
                        owner=snapshot.account_id,
                        session_account_id=session_account_id)
        return Owner(account_id=snapshot.account_id)
    if recorded_account_id:
        return Owner(account_id=recorded_account_id)
    if create_account and snapshot.guest_email and not session_account_id:
        account_id, created = await directory.create_preconfirmed(
            snapshot.guest_email
        )
        log.info("identity.account_provisioned", account_id=account_id,
                 created=created)
        return Owner(account_id=account_id, account_created=created)
    if session_account_id:
        return Owner(account_id=session_account_id)
    raise IdentityRequiredError(
        "An account is required to record this purchase"
    )


def admin_from_request(request: Request) -> Optional[AdminContext]:
    admin = request.session.get(SESSION_ADMIN_KEY)
    return AdminContext(admin_id=admin) if admin else None
