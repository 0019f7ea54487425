# model/inventory.py
"""
Inventory store: per-event, per-ticket-type stock counters.

- advisory reads for checkout validation
- conditional (floor-checked) decrement, only ever called from inside the
  settlement transaction
- inventory summary for the public read endpoint
"""

from __future__ import annotations
from typing import Dict, Any, Iterable, Optional

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts, to_iso
from ..infra.sql import GatedAsyncSession
from .db import TicketType


# ------------------------------------------------------------------------------
# Core logic (UN-GATED: caller owns the gate and the transaction)
# ------------------------------------------------------------------------------

async def get_ticket_types(
    db: AsyncSession, event_id: str, ids: Iterable[str]
) -> Dict[str, TicketType]:
    ids = list(set(ids))
    if not ids:
        return {}
    rows = (await db.execute(
        select(TicketType).where(
            TicketType.event_id == event_id,
            TicketType.id.in_(ids),
        )
    )).scalars().all()
    return {tt.id: tt for tt in rows}


async def available_stock(
    db: AsyncSession, event_id: str, ticket_type_id: str
) -> Optional[int]:
    row = (await db.execute(text("""
        SELECT available_stock FROM ticket_types
        WHERE event_id=:ev AND id=:tt
    """), {"ev": event_id, "tt": ticket_type_id})).first()
    return None if row is None else int(row[0])


async def decrement_stock(
    db: AsyncSession, event_id: str, ticket_type_id: str, qty: int
) -> bool:
    """
    Atomically take `qty` units off the counter if that leaves it >= 0.
    Returns False (and writes nothing) when the floor would be crossed or the
    ticket type does not exist.
    """
    res = await db.execute(text("""
        UPDATE ticket_types
        SET available_stock = available_stock - :qty
        WHERE event_id=:ev AND id=:tt
          AND available_stock >= :qty
    """), {"ev": event_id, "tt": ticket_type_id, "qty": qty})
    return res.rowcount == 1


# ------------------------------------------------------------------------------
# Read APIs
# ------------------------------------------------------------------------------

async def compute_inventory(db: GatedAsyncSession, event_id: str
                            ) -> Dict[str, Any]:
    """
    Returns:
      {
        "event_id": ...,
        "ticket_types": {
          "<id>": { "name": ..., "price": ..., "capacity": ..., "sold": ...,
                    "available": ..., "sold_out": ..., "active": ... },
        },
        "timestamp": ...
      }
    """
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(
                select(TicketType)
                .where(TicketType.event_id == event_id)
                .order_by(TicketType.id)
            )).scalars().all()

    types: Dict[str, Any] = {}
    for tt in rows:
        types[tt.id] = {
            "name": tt.name,
            "price": tt.price,
            "capacity": tt.total_stock,
            "sold": tt.total_stock - tt.available_stock,
            "available": tt.available_stock,
            "sold_out": tt.available_stock <= 0,
            "active": bool(tt.active),
        }
    return {
        "event_id": event_id,
        "ticket_types": types,
        "timestamp": to_iso(now_ts()),
    }
