from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    PrimaryKeyConstraint,
)


Base = declarative_base()

# Order status
PENDING = "pending"
PAID = "paid"
EXPIRED = "expired"
REFUNDED = "refunded"
ORDER_STATUSES = (PENDING, PAID, EXPIRED, REFUNDED)

# Ticket status (only 'valid' is issued here)
TICKET_VALID = "valid"


# ----------------------------
# ORM models
# ----------------------------
class TicketType(Base):
    __tablename__ = "ticket_types"
    id = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)  # minor currency units
    total_stock = Column(Integer, nullable=False)
    available_stock = Column(Integer, nullable=False)
    per_user_limit = Column(Integer, nullable=True)
    active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        PrimaryKeyConstraint("event_id", "id"),
        CheckConstraint("price >= 0", name="ck_ticket_types_price"),
        CheckConstraint(
            "available_stock >= 0", name="ck_ticket_types_stock_floor"
        ),
        CheckConstraint(
            "available_stock <= total_stock",
            name="ck_ticket_types_stock_ceiling"
        ),
    )


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    event_id = Column(String, nullable=False)

    # pending | paid | expired | refunded
    status = Column(String, nullable=False, default=PENDING)
    subtotal = Column(Integer, nullable=False)
    fees = Column(Integer, nullable=False, default=0)
    total = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)

    # set once the provider session exists
    payment_session_id = Column(String, nullable=True, unique=True)
    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','paid','expired','refunded')",
            name="ck_orders_status"
        ),
    )


class OrderLine(Base):
    __tablename__ = "order_lines"
    order_id = Column(
        String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    position = Column(Integer, nullable=False)
    ticket_type_id = Column(String, nullable=False)
    qty = Column(Integer, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("order_id", "position"),
        CheckConstraint("qty > 0", name="ck_order_lines_qty"),
    )


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False)
    event_id = Column(String, nullable=False)
    ticket_type_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    code = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default=TICKET_VALID)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("ix_tickets_order_id", "order_id"),
        Index("ix_tickets_user_type", "user_id", "event_id", "ticket_type_id"),
    )


class WebhookEventSeen(Base):
    __tablename__ = "webhook_events_seen"
    event_id = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)
