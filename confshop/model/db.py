from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    ForeignKey,
    Index,
    UniqueConstraint,
    text,
)


Base = declarative_base()

# item kinds
KIND_TICKET = "ticket"
KIND_REPLAY = "individual_replay"
KIND_BUNDLE = "year_bundle"
ITEM_KINDS = (KIND_TICKET, KIND_REPLAY, KIND_BUNDLE)

# discount kinds
DISCOUNT_PERCENTAGE = "percentage"
DISCOUNT_FIXED = "fixed_amount"
DISCOUNT_KINDS = (DISCOUNT_PERCENTAGE, DISCOUNT_FIXED)


# ----------------------------
# ORM models
# ----------------------------
class CatalogItem(Base):
    __tablename__ = "catalog_items"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    kind = Column(String, nullable=False)  # ticket | individual_replay | year_bundle
    event_year = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String, nullable=False, default="gbp")
    content_ref = Column(String, nullable=True)  # e.g. replay id
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class Coupon(Base):
    __tablename__ = "coupons"
    id = Column(String, primary_key=True)
    code = Column(String, nullable=False, unique=True)  # upper-cased
    discount_kind = Column(String, nullable=False)  # percentage | fixed_amount
    discount_value = Column(Integer, nullable=False)
    currency = Column(String, nullable=True)  # fixed_amount only
    item_id = Column(
        String, ForeignKey("catalog_items.id", ondelete="SET NULL"),
        nullable=True,
    )
    valid_from = Column(Float, nullable=True)
    valid_until = Column(Float, nullable=True)
    max_redemptions = Column(Integer, nullable=True)
    times_redeemed = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)
    gateway_coupon_id = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class CouponRedemption(Base):
    # one row per authorization that consumed a coupon
    __tablename__ = "coupon_redemptions"
    authorization_id = Column(String, primary_key=True)
    coupon_code = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)


class CartLine(Base):
    __tablename__ = "cart_lines"
    id = Column(Integer, primary_key=True, autoincrement=True)
    # "session:<token>" or "account:<id>", never both
    owner = Column(String, nullable=False)
    item_id = Column(
        String, ForeignKey("catalog_items.id", ondelete="CASCADE"),
        nullable=False,
    )
    quantity = Column(Integer, nullable=False, default=1)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint("owner", "item_id", name="uq_cart_owner_item"),
    )


class Account(Base):
    __tablename__ = "accounts"
    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True)  # lower-cased
    confirmed = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)


class Entitlement(Base):
    __tablename__ = "entitlements"
    id = Column(String, primary_key=True)
    account_id = Column(
        String, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    item_ref = Column(String, nullable=True)  # NULL = whole-year bundle
    event_year = Column(Integer, nullable=False)
    item_id = Column(String, nullable=True)  # catalog item that granted it
    authorization_id = Column(String, nullable=True)
    coupon_code = Column(String, nullable=True)
    discount_amount = Column(Integer, nullable=False, default=0)
    granted_by = Column(String, nullable=True)  # admin for manual grants
    created_at = Column(Float, nullable=False)

    # NULLs are distinct in unique constraints, so item rows and bundle rows
    # each get their own partial index
    __table_args__ = (
        Index(
            "uq_entitlement_item",
            "account_id", "item_ref", "event_year",
            unique=True,
            postgresql_where=text("item_ref IS NOT NULL"),
            sqlite_where=text("item_ref IS NOT NULL"),
        ),
        Index(
            "uq_entitlement_bundle",
            "account_id", "event_year",
            unique=True,
            postgresql_where=text("item_ref IS NULL"),
            sqlite_where=text("item_ref IS NULL"),
        ),
        Index("idx_entitlement_authorization", "authorization_id"),
    )


class CompletedOrder(Base):
    # written once a confirmation has finished every step; gates the
    # order email
    __tablename__ = "completed_orders"
    authorization_id = Column(String, primary_key=True)
    account_id = Column(
        String, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    created_at = Column(Float, nullable=False)
