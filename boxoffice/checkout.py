# checkout.py
"""
Checkout session initiator.

Validates a cart against current ticket types, persists a pending order and
opens a payment session for it. The stock check here is advisory: nothing is
reserved, settlement re-checks authoritatively when payment is confirmed.
"""

from __future__ import annotations
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence

from . import config
from .auth import User
from .errors import FailedPrecondition, InvalidArgument, Unauthenticated
from .infra.sql import GatedAsyncSession
from .infra.timings import timeit
from .model import inventory, orders, tickets
from .model.orders import LineItem
from .payments import PaymentAdapter, SessionLine

log = logging.getLogger(__name__)


def _parse_items(event_id: Any, items: Any) -> List[LineItem]:
    if not isinstance(event_id, str) or not event_id.strip():
        raise InvalidArgument("invalid payload")
    if not isinstance(items, (list, tuple)) or not items:
        raise InvalidArgument("invalid payload")
    lines = []
    for it in items:
        if isinstance(it, dict):
            tt_id, qty = it.get("ticket_type_id"), it.get("qty")
        else:
            tt_id, qty = getattr(it, "ticket_type_id", None), \
                getattr(it, "qty", None)
        if not isinstance(tt_id, str) or not tt_id:
            raise InvalidArgument("invalid payload")
        if not isinstance(qty, int) or isinstance(qty, bool):
            raise InvalidArgument("invalid payload")
        lines.append(LineItem(tt_id, qty))
    return lines


def compute_fees(subtotal: int) -> int:
    # integer basis points, rounded down
    return subtotal * config.SERVICE_FEE_BPS // 10_000


def checkout_urls(order_id: str) -> tuple[str, str]:
    base = config.PUBLIC_URL.rstrip("/")
    return (
        f"{base}/checkout/success?order={order_id}",
        f"{base}/checkout/cancel?order={order_id}",
    )


async def create_checkout(
    db: GatedAsyncSession,
    adapter: PaymentAdapter,
    user: Optional[User],
    event_id: Any,
    items: Sequence[Any],
) -> Dict[str, Any]:
    """
    Returns {"order_id", "session_id", "url", "subtotal", "fees", "total",
    "currency"}.

    Raises:
        Unauthenticated: no user.
        InvalidArgument: empty or malformed cart.
        FailedPrecondition: invalid ticket, invalid quantity, insufficient
            stock or purchase limit exceeded. Nothing is persisted.
        PaymentProviderError: the session could not be created; the order
            stays pending without a session reference.
    """
    if user is None:
        raise Unauthenticated("login required")
    lines = _parse_items(event_id, items)

    order_id = orders.new_order_id()
    session_lines: List[SessionLine] = []

    async with timeit("checkout.validate_and_create"):
        async with db.gated():
            async with db.session.begin():
                types = await inventory.get_ticket_types(
                    db.session, event_id, (ln.ticket_type_id for ln in lines)
                )
                subtotal = 0
                wanted: Dict[str, int] = defaultdict(int)
                for ln in lines:
                    tt = types.get(ln.ticket_type_id)
                    if tt is None or not tt.active:
                        raise FailedPrecondition("invalid ticket")
                    if not (config.MIN_LINE_QTY <= ln.qty
                            <= config.MAX_LINE_QTY):
                        raise FailedPrecondition("invalid quantity")
                    if ln.qty > tt.available_stock:
                        raise FailedPrecondition("insufficient stock")
                    wanted[tt.id] += ln.qty
                    subtotal += tt.price * ln.qty
                    session_lines.append(SessionLine(
                        unit_amount=tt.price,
                        qty=ln.qty,
                        description=f"{tt.name} - {event_id}",
                    ))

                # repeated lines of one type share the same pool
                for tt_id, qty in wanted.items():
                    tt = types[tt_id]
                    if qty > tt.available_stock:
                        raise FailedPrecondition("insufficient stock")
                    if tt.per_user_limit is not None:
                        held = await tickets.count_held(
                            db.session, user.id, event_id, tt_id
                        )
                        if held + qty > tt.per_user_limit:
                            raise FailedPrecondition(
                                "purchase limit exceeded"
                            )

                fees = compute_fees(subtotal)
                # must be durable before the provider can reference it
                order = await orders.add_pending_order(
                    db.session,
                    order_id=order_id,
                    user_id=user.id,
                    event_id=event_id,
                    lines=lines,
                    subtotal=subtotal,
                    fees=fees,
                    currency=config.CURRENCY,
                )

    if fees > 0:
        session_lines.append(SessionLine(fees, 1, "Service fee"))

    success_url, cancel_url = checkout_urls(order_id)
    async with timeit("payments.create_session"):
        session = await adapter.create_session(
            lines=session_lines,
            currency=order.currency,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={
                "order_id": order_id,
                "event_id": event_id,
                "user_id": user.id,
            },
            customer_email=user.email,
        )

    psid = session["payment_session_id"]
    async with timeit("orders.attach_session"):
        await orders.attach_payment_session(db, order_id, psid)

    log.info("order %s pending: event=%s total=%d %s session=%s",
             order_id, event_id, order.total, order.currency, psid)
    return {
        "order_id": order_id,
        "session_id": psid,
        "url": session["redirect_url"],
        "subtotal": order.subtotal,
        "fees": order.fees,
        "total": order.total,
        "currency": order.currency,
    }
