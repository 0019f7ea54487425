# model/orders.py
"""
Order record store.

An order is created `pending` by checkout and flipped to `paid` exactly once
by settlement (compare-and-swap on the status column). Orders are never
deleted here.
"""

from __future__ import annotations
import uuid
from typing import List, NamedTuple, Optional, Sequence

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from .db import Order, OrderLine, PENDING, PAID


class LineItem(NamedTuple):
    ticket_type_id: str
    qty: int


def new_order_id() -> str:
    return uuid.uuid4().hex


# ------------------------------------------------------------------------------
# UN-GATED: caller owns the gate and the transaction
# ------------------------------------------------------------------------------

async def add_pending_order(
    db: AsyncSession,
    *,
    order_id: str,
    user_id: str,
    event_id: str,
    lines: Sequence[LineItem],
    subtotal: int,
    fees: int,
    currency: str,
) -> Order:
    order = Order(
        id=order_id,
        user_id=user_id,
        event_id=event_id,
        status=PENDING,
        subtotal=subtotal,
        fees=fees,
        total=subtotal + fees,
        currency=currency,
        payment_session_id=None,
        created_at=now_ts(),
        paid_at=None,
    )
    db.add(order)
    # lines reference the order row
    await db.flush()
    for pos, line in enumerate(lines):
        db.add(OrderLine(
            order_id=order_id,
            position=pos,
            ticket_type_id=line.ticket_type_id,
            qty=line.qty,
        ))
    return order


async def get_order(db: AsyncSession, order_id: str) -> Optional[Order]:
    # the session may hold this order from an earlier transaction
    return (await db.execute(
        select(Order)
        .where(Order.id == order_id)
        .execution_options(populate_existing=True)
    )).scalars().first()


async def get_lines(db: AsyncSession, order_id: str) -> List[LineItem]:
    rows = (await db.execute(
        select(OrderLine)
        .where(OrderLine.order_id == order_id)
        .order_by(OrderLine.position)
    )).scalars().all()
    return [LineItem(r.ticket_type_id, r.qty) for r in rows]


async def mark_paid(db: AsyncSession, order_id: str, paid_at: float) -> bool:
    """
    pending -> paid. Returns True only for the caller that performed the flip;
    any concurrent or later attempt sees 0 rows.
    """
    res = await db.execute(text("""
        UPDATE orders
        SET status=:paid, paid_at=:paid_at
        WHERE id=:id AND status=:pending
    """), {"id": order_id, "paid": PAID, "pending": PENDING,
           "paid_at": paid_at})
    return res.rowcount == 1


# ------------------------------------------------------------------------------
# Public API (gated, own transaction)
# ------------------------------------------------------------------------------

async def attach_payment_session(
    db: GatedAsyncSession, order_id: str, payment_session_id: str
) -> None:
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(text("""
                UPDATE orders SET payment_session_id=:psid
                WHERE id=:id AND payment_session_id IS NULL
            """), {"id": order_id, "psid": payment_session_id})


async def find_by_payment_session(
    db: GatedAsyncSession, payment_session_id: str
) -> Optional[Order]:
    async with db.gated():
        async with db.session.begin():
            return (await db.session.execute(
                select(Order)
                .where(Order.payment_session_id == payment_session_id)
            )).scalars().first()
