"""Domain error codes for checkout and entitlement resolution."""

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    EMPTY_CART = "EMPTY_CART"
    CURRENCY_MISMATCH = "CURRENCY_MISMATCH"
    IDENTITY_REQUIRED = "IDENTITY_REQUIRED"
    ITEM_INACTIVE = "ITEM_INACTIVE"
    ITEM_NOT_FOUND = "ITEM_NOT_FOUND"
    COUPON_INVALID = "COUPON_INVALID"
    COUPON_NOT_FOUND = "COUPON_NOT_FOUND"
    GATEWAY_ERROR = "GATEWAY_ERROR"
    NOT_SUCCEEDED = "NOT_SUCCEEDED"
    SNAPSHOT_INVALID = "SNAPSHOT_INVALID"
    ENTITLEMENT_CONFLICT = "ENTITLEMENT_CONFLICT"
    RECORDING_INCOMPLETE = "RECORDING_INCOMPLETE"
    ADMIN_REQUIRED = "ADMIN_REQUIRED"


@dataclass(frozen=True)
class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class EmptyCartError(DomainError):
    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.EMPTY_CART,
            message="Add at least one item before checking out",
        )


class CurrencyMismatchError(DomainError):
    """Raised when a cart mixes items priced in different currencies."""

    def __init__(self, currencies: set[str]) -> None:
        super().__init__(
            code=ErrorCode.CURRENCY_MISMATCH,
            message="Items in one checkout must share a currency",
        )
        self.currencies = frozenset(currencies)


class IdentityRequiredError(DomainError):
    def __init__(self, message: str = "An email address is required") -> None:
        super().__init__(code=ErrorCode.IDENTITY_REQUIRED, message=message)


class ItemInactiveError(DomainError):
    """Raised when a requested catalog item is unknown or switched off."""

    def __init__(self, item_ids: list[str]) -> None:
        super().__init__(
            code=ErrorCode.ITEM_INACTIVE,
            message="Some items are no longer available",
        )
        self.item_ids = tuple(item_ids)


class ItemNotFoundError(DomainError):
    def __init__(self, item_id: str) -> None:
        super().__init__(
            code=ErrorCode.ITEM_NOT_FOUND,
            message="Catalog item not found",
        )
        self.item_id = item_id


class CouponNotFoundError(DomainError):
    def __init__(self, coupon_id: str) -> None:
        super().__init__(
            code=ErrorCode.COUPON_NOT_FOUND,
            message="Coupon not found",
        )
        self.coupon_id = coupon_id


class GatewayError(DomainError):
    """The payment provider failed or was unreachable.

    `message` is the provider's own text, passed through unchanged.
    """

    def __init__(self, message: str) -> None:
        super().__init__(code=ErrorCode.GATEWAY_ERROR, message=message)


class NotSucceededError(DomainError):
    def __init__(self, authorization_id: str, status: str) -> None:
        super().__init__(
            code=ErrorCode.NOT_SUCCEEDED,
            message="We couldn't verify your payment yet",
        )
        self.authorization_id = authorization_id
        self.status = status


class SnapshotInvalidError(DomainError):
    def __init__(self, authorization_id: str) -> None:
        super().__init__(
            code=ErrorCode.SNAPSHOT_INVALID,
            message="Payment metadata is missing or malformed",
        )
        self.authorization_id = authorization_id


class EntitlementConflictError(DomainError):
    """An insert was ignored but no matching entitlement exists.

    Only reachable if the store's uniqueness constraints are missing.
    """

    def __init__(self, item_ref: str | None, event_year: int) -> None:
        super().__init__(
            code=ErrorCode.ENTITLEMENT_CONFLICT,
            message="Entitlement could not be recorded",
        )
        self.item_ref = item_ref
        self.event_year = event_year


class RecordingIncompleteError(DomainError):
    def __init__(self, authorization_id: str, failed: list[str]) -> None:
        super().__init__(
            code=ErrorCode.RECORDING_INCOMPLETE,
            message="We couldn't verify your payment yet, please retry",
        )
        self.authorization_id = authorization_id
        self.failed_item_ids = tuple(failed)


class AdminRequiredError(DomainError):
    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.ADMIN_REQUIRED,
            message="Admin access required",
        )
