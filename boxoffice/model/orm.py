from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    ForeignKey,
    CheckConstraint,
    UniqueConstraint,
    Index,
)


Base = declarative_base()

# Hold statuses
HOLD_ACTIVE = "ACTIVE"
HOLD_EXPIRED = "EXPIRED"
HOLD_CONSUMED = "CONSUMED"

# Payment statuses (also the canonical statuses providers classify into)
PAY_PENDING = "PENDING"
PAY_PAID = "PAID"
PAY_FAILED = "FAILED"
PAY_CANCELLED = "CANCELLED"
PAYMENT_STATUSES = (PAY_PENDING, PAY_PAID, PAY_FAILED, PAY_CANCELLED)

# Ticket statuses
TICKET_VALID = "VALID"
TICKET_USED = "USED"
TICKET_CANCELLED = "CANCELLED"


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    currency = Column(String, nullable=False, default="clp")
    created_at = Column(Float, nullable=False)


class TicketType(Base):
    __tablename__ = "ticket_types"
    __table_args__ = (
        CheckConstraint("sold >= 0", name="ck_ticket_types_sold"),
        CheckConstraint("held >= 0", name="ck_ticket_types_held"),
        CheckConstraint(
            "capacity IS NULL OR capacity >= 0",
            name="ck_ticket_types_capacity",
        ),
    )
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False,
                      index=True)
    name = Column(String, nullable=False)
    unit_price = Column(Integer, nullable=False)  # minor units
    # NULL = unlimited
    capacity = Column(Integer, nullable=True)
    sold = Column(Integer, nullable=False, default=0)
    held = Column(Integer, nullable=False, default=0)


class Hold(Base):
    __tablename__ = "holds"
    __table_args__ = (
        Index("holds_status_expires_idx", "status", "expires_at"),
    )
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    # ACTIVE | EXPIRED | CONSUMED
    status = Column(String, nullable=False, default=HOLD_ACTIVE)
    created_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False)


class HoldItem(Base):
    __tablename__ = "hold_items"
    __table_args__ = (
        UniqueConstraint("hold_id", "ticket_type_id",
                         name="uq_hold_items_hold_type"),
        CheckConstraint("qty > 0", name="ck_hold_items_qty"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    hold_id = Column(String, ForeignKey("holds.id"), nullable=False,
                     index=True)
    event_id = Column(String, nullable=False)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            nullable=False)
    # snapshots taken from the locked ticket type row
    ticket_type_name = Column(String, nullable=False)
    unit_price = Column(Integer, nullable=False)
    qty = Column(Integer, nullable=False)


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index("payments_provider_ref_idx", "provider", "provider_ref"),
    )
    id = Column(String, primary_key=True)
    # one payment per hold
    hold_id = Column(String, ForeignKey("holds.id"), nullable=False,
                     unique=True)
    provider = Column(String, nullable=False)
    provider_ref = Column(String, nullable=True)
    amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String, nullable=False)
    # PENDING | PAID | FAILED | CANCELLED
    status = Column(String, nullable=False, default=PAY_PENDING)
    buyer_name = Column(String, nullable=False)
    buyer_email = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    event_title = Column(String, nullable=False)
    order_id = Column(String, nullable=True)
    failure_reason = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    # second idempotence barrier for settlement
    hold_id = Column(String, ForeignKey("holds.id"), nullable=False,
                     unique=True)
    event_id = Column(String, nullable=False)
    event_title = Column(String, nullable=False)
    buyer_name = Column(String, nullable=False)
    buyer_email = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)


class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (
        Index("tickets_event_status_idx", "event_id", "status"),
    )
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    event_id = Column(String, nullable=False)
    ticket_type_id = Column(String, nullable=False)
    ticket_type_name = Column(String, nullable=False)
    buyer_email = Column(String, nullable=False)
    # VALID | USED | CANCELLED
    status = Column(String, nullable=False, default=TICKET_VALID)
    # position inside the order, keeps fan-out order stable
    seq = Column(Integer, nullable=False)
    created_at = Column(Float, nullable=False)
    used_at = Column(Float, nullable=True)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    provider = Column(String, primary_key=True)
    external_event_id = Column(String, primary_key=True)
    received_at = Column(Float, nullable=False)
