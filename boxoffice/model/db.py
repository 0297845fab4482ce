from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    ForeignKey,
    CheckConstraint,
    UniqueConstraint,
    Index,
)


Base = declarative_base()

# CatalogEntity.kind
KIND_EVENT = "event"
KIND_PRODUCT = "product"

# InventoryTier.kind
TIER_TICKET = "ticket_tier"
TIER_APPAREL = "apparel_size"

# FulfillmentUnit.status / Fulfillment.status
STATUS_CONFIRMED = "confirmed"
STATUS_REDEEMED = "redeemed"
STATUS_REFUNDED = "refunded"

# GuestlistEntry.status
GUEST_PENDING = "pending"
GUEST_CHECKED_IN = "checked_in"


# ----------------------------
# ORM models
# ----------------------------
class CatalogEntity(Base):
    __tablename__ = "catalog_entities"
    id = Column(String, primary_key=True)
    # event | product
    kind = Column(String, nullable=False)
    title = Column(String, nullable=False)
    starts_at = Column(String, nullable=True)   # events only
    location = Column(String, nullable=True)    # events only


class InventoryTier(Base):
    __tablename__ = "inventory_tiers"
    __table_args__ = (
        CheckConstraint("available >= 0", name="ck_tier_available"),
    )
    id = Column(String, primary_key=True)
    catalog_id = Column(
        String, ForeignKey("catalog_entities.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    # ticket_tier | apparel_size
    kind = Column(String, nullable=False)
    name = Column(String, nullable=False)
    unit_price = Column(Integer, nullable=False)  # cents
    available = Column(Integer, nullable=False)


class Fulfillment(Base):
    """One row per fulfilled payment: the idempotency ledger."""
    __tablename__ = "fulfillments"
    payment_reference = Column(String, primary_key=True)
    provider = Column(String, nullable=False)
    # ticket | merch | guestlist
    kind = Column(String, nullable=False)
    catalog_id = Column(String, nullable=False)
    tier_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    buyer_email = Column(String, nullable=True)
    buyer_name = Column(String, nullable=True)
    buyer_phone = Column(String, nullable=True)
    # JSON object, merch orders ship here
    shipping_address = Column(String, nullable=True)
    amount = Column(Integer, nullable=False, default=0)  # cents
    # confirmed | refunded
    status = Column(String, nullable=False, default=STATUS_CONFIRMED)
    created_at = Column(Float, nullable=False)


class FulfillmentUnit(Base):
    __tablename__ = "fulfillment_units"
    __table_args__ = (
        UniqueConstraint("payment_reference", "sequence",
                         name="uq_unit_payment_sequence"),
    )
    unit_id = Column(String, primary_key=True)
    payment_reference = Column(
        String, ForeignKey("fulfillments.payment_reference"),
        nullable=False, index=True,
    )
    sequence = Column(Integer, nullable=False)  # 1..quantity
    catalog_id = Column(String, nullable=False, index=True)
    tier_id = Column(String, nullable=False)
    tier_name = Column(String, nullable=False)
    buyer_email = Column(String, nullable=True)
    scannable_code = Column(String, nullable=False, unique=True)
    # confirmed | redeemed | refunded
    status = Column(String, nullable=False, default=STATUS_CONFIRMED)
    created_at = Column(Float, nullable=False)
    redeemed_at = Column(Float, nullable=True)


class GuestlistEntry(Base):
    __tablename__ = "guestlist"
    __table_args__ = (
        Index("ix_guestlist_event", "event_id"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(
        String, ForeignKey("catalog_entities.id"), nullable=False
    )
    name = Column(String, nullable=False)
    category = Column(String, nullable=False)
    plus_one = Column(Boolean, nullable=False, default=False)
    email = Column(String, nullable=True)
    # pending | checked_in
    status = Column(String, nullable=False, default=GUEST_PENDING)
    ticket_id = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
