from __future__ import annotations
from dataclasses import dataclass
from typing import Union

from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
)

from ..helpers import normalize_identifier


Base = declarative_base()

# User roles
ROLE_BUYER = "buyer"
ROLE_HOST = "host"
ROLE_ADMIN = "admin"

# Event status
EVENT_ACTIVE = "active"
EVENT_PAUSED = "paused"
EVENT_CANCELLED = "cancelled"
EVENT_COMPLETED = "completed"

# Order status
ORDER_PENDING = "pending"
ORDER_COMPLETED = "completed"
ORDER_FAILED = "failed"
ORDER_REFUNDED = "refunded"

# Ticket status
TICKET_VALID = "valid"
TICKET_USED = "used"
TICKET_CANCELLED = "cancelled"
TICKET_REFUNDED = "refunded"

_ONE_EVENT_REF = (
    "(event_id IS NOT NULL AND external_event_id IS NULL) OR "
    "(event_id IS NULL AND external_event_id IS NOT NULL)"
)


# ----------------------------
# Event references
# ----------------------------
@dataclass(frozen=True)
class Local:
    id: int

    def columns(self) -> dict:
        return {"event_id": self.id, "external_event_id": None}


@dataclass(frozen=True)
class External:
    uuid: str

    def __post_init__(self):
        object.__setattr__(self, "uuid", normalize_identifier(self.uuid))

    def columns(self) -> dict:
        return {"event_id": None, "external_event_id": self.uuid}


EventRef = Union[Local, External]


def event_ref_of(row) -> EventRef:
    """EventRef for an Order or Ticket row."""
    if row.event_id is not None:
        return Local(row.event_id)
    return External(row.external_event_id)


# ----------------------------
# ORM models
# ----------------------------
class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=True)

    # buyer | host | admin
    role = Column(String, nullable=False, default=ROLE_BUYER)

    # processor connected account; hosts only
    payout_account_id = Column(String, nullable=True, unique=True)
    payouts_enabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        CheckConstraint("capacity >= 1", name="events_capacity_check"),
        CheckConstraint(
            "tickets_sold >= 0 AND tickets_sold <= capacity",
            name="events_tickets_sold_check",
        ),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    host_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    title = Column(String, nullable=False)
    venue = Column(String, nullable=True)
    starts_at = Column(Float, nullable=False)
    capacity = Column(Integer, nullable=False)
    tickets_sold = Column(Integer, nullable=False, default=0)
    price_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="usd")

    # active | paused | cancelled | completed
    status = Column(String, nullable=False, default=EVENT_ACTIVE)
    created_at = Column(Float, nullable=False)


class ExternalEvent(Base):
    # mirror of the external catalog; written by the sync job only
    __tablename__ = "external_events"
    id = Column(String, primary_key=True)  # lowercase uuid
    host_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    title = Column(String, nullable=False)
    starts_at = Column(Float, nullable=False)
    price_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="usd")
    status = Column(String, nullable=False, default=EVENT_ACTIVE)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint(_ONE_EVENT_REF, name="orders_event_check"),
        CheckConstraint(
            "quantity >= 1 AND quantity <= 10", name="orders_quantity_check"
        ),
        Index("idx_orders_event", "event_id"),
        Index("idx_orders_external_event", "external_event_id"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=True)
    external_event_id = Column(
        String, ForeignKey("external_events.id"), nullable=True
    )
    quantity = Column(Integer, nullable=False)
    amount_cents = Column(Integer, nullable=False)
    platform_fee_cents = Column(Integer, nullable=False)
    host_amount_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="usd")

    # the processor's id for this payment; the fulfillment idempotency key
    payment_reference = Column(String, nullable=False, unique=True)
    charge_reference = Column(String, nullable=True)

    buyer_email = Column(String, nullable=False)
    buyer_name = Column(String, nullable=True)

    # pending | completed | failed | refunded
    status = Column(String, nullable=False, default=ORDER_PENDING)
    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)

    @property
    def event_ref(self) -> EventRef:
        return event_ref_of(self)


class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (
        CheckConstraint(_ONE_EVENT_REF, name="tickets_event_check"),
        Index("idx_tickets_order", "order_id"),
        Index("idx_tickets_event", "event_id"),
        Index("idx_tickets_external_event", "external_event_id"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=True)
    external_event_id = Column(
        String, ForeignKey("external_events.id"), nullable=True
    )
    scan_token = Column(String, nullable=False, unique=True)
    sequence_number = Column(String, nullable=False, unique=True)
    holder_name = Column(String, nullable=True)
    holder_email = Column(String, nullable=True)

    # valid | used | cancelled | refunded
    status = Column(String, nullable=False, default=TICKET_VALID)
    scanned_at = Column(Float, nullable=True)
    scanned_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(Float, nullable=False)

    @property
    def event_ref(self) -> EventRef:
        return event_ref_of(self)


async def create_schema(conn) -> None:
    await conn.run_sync(Base.metadata.create_all)
