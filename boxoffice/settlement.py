# settlement.py
"""
Settlement engine: turns a verified payment confirmation into a paid order,
decremented stock and issued tickets.

All effects for one confirmation run in ONE database transaction:

    order pending -> paid            (compare-and-swap on status)
    stock -= qty for every line      (conditional update, floor at 0)
    one ticket row per unit          (batch insert)

Either everything commits or nothing does. Duplicate and concurrent
confirmations are absorbed by the status compare-and-swap: exactly one
transaction sees `pending`, every other one sees `paid` and does nothing.

Conflicts and storage hiccups (locked database, serialization failure,
deadlock, dropped connection) are retried a bounded number of times; the
status guard makes every retry safe.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession

from . import config
from .errors import StockInvariantViolation, TransientStorageFailure
from .helpers import now_ts
from .infra.sql import GatedAsyncSession
from .infra.timings import timeit
from .model import inventory, orders, tickets
from .model.db import PAID, PENDING

log = logging.getLogger(__name__)

# serialization_failure, deadlock_detected, lock_not_available,
# connection_exception, connection_failure, admin_shutdown
_RETRYABLE_SQLSTATES = ("40001", "40P01", "55P03", "08000", "08006", "57P01")

# sqlite reports contention only through the message
_SQLITE_BUSY_MARKERS = ("database is locked", "database table is locked",
                        "database is busy")


class Outcome(str, Enum):
    SETTLED = "settled"
    ALREADY_PAID = "already_paid"
    UNKNOWN_ORDER = "unknown_order"
    NOT_PENDING = "not_pending"


@dataclass
class SettlementResult:
    outcome: Outcome
    order_id: str
    tickets_issued: int = 0


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (PoolTimeoutError, OSError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return True
        orig = exc.orig
        if isinstance(exc, OperationalError):
            msg = str(orig).lower()
            if any(m in msg for m in _SQLITE_BUSY_MARKERS):
                return True
        code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        return code in _RETRYABLE_SQLSTATES
    return False


async def _settle_once(db: AsyncSession, order_id: str) -> SettlementResult:
    # UN-GATED: runs inside the caller's transaction
    order = await orders.get_order(db, order_id)
    if order is None:
        return SettlementResult(Outcome.UNKNOWN_ORDER, order_id)
    if order.status == PAID:
        return SettlementResult(Outcome.ALREADY_PAID, order_id)
    if order.status != PENDING:
        return SettlementResult(Outcome.NOT_PENDING, order_id)

    paid_at = now_ts()
    if not await orders.mark_paid(db, order_id, paid_at):
        # a concurrent settlement flipped it between our read and write
        return SettlementResult(Outcome.ALREADY_PAID, order_id)

    lines = await orders.get_lines(db, order_id)

    # fixed lock order across concurrent settlements
    for line in sorted(lines, key=lambda ln: ln.ticket_type_id):
        ok = await inventory.decrement_stock(
            db, order.event_id, line.ticket_type_id, line.qty
        )
        if not ok:
            have = await inventory.available_stock(
                db, order.event_id, line.ticket_type_id
            )
            raise StockInvariantViolation(
                order_id, line.ticket_type_id, line.qty, have
            )

    issued = 0
    for line in lines:
        issued += len(tickets.add_tickets(
            db,
            order_id=order_id,
            event_id=order.event_id,
            ticket_type_id=line.ticket_type_id,
            user_id=order.user_id,
            qty=line.qty,
            created_at=paid_at,
        ))
    await db.flush()
    return SettlementResult(Outcome.SETTLED, order_id, issued)


async def settle_order(
    db: GatedAsyncSession,
    order_id: str,
    *,
    max_attempts: Optional[int] = None,
) -> SettlementResult:
    """
    Settle one order for a verified payment confirmation.

    Unknown orders and orders that are already paid (or no longer pending)
    are reported through the result outcome, not as errors.

    Raises:
        StockInvariantViolation: a line would drive stock below zero. The
            transaction was rolled back; not retryable.
        TransientStorageFailure: storage kept failing after all attempts.
            Nothing was committed; safe to retry later.
    """
    attempts = max(1, max_attempts or config.SETTLE_MAX_ATTEMPTS)
    for attempt in range(1, attempts + 1):
        try:
            async with timeit("settlement.tx"):
                async with db.gated():
                    async with db.session.begin():
                        result = await _settle_once(db.session, order_id)
        except StockInvariantViolation as e:
            log.critical(
                "STOCK INVARIANT VIOLATION, order %s left pending, needs "
                "manual reconciliation: %s", order_id, e.message
            )
            raise
        except Exception as e:
            if not _is_transient(e):
                raise
            if attempt == attempts:
                log.error("settlement of order %s failed after %d attempts: %s",
                          order_id, attempts, e)
                raise TransientStorageFailure(
                    f"settlement of order {order_id} not committed"
                ) from e
            log.warning("settlement of order %s hit %s (attempt %d/%d), "
                        "retrying", order_id, type(e).__name__, attempt,
                        attempts)
            await asyncio.sleep(
                config.SETTLE_BACKOFF_SECONDS * (2 ** (attempt - 1))
            )
            continue

        if result.outcome is Outcome.SETTLED:
            log.info("order %s paid, %d tickets issued",
                     order_id, result.tickets_issued)
        else:
            log.info("order %s: nothing to do (%s)",
                     order_id, result.outcome.value)
        return result

    # unreachable: the loop either returns or raises
    raise TransientStorageFailure()
