from __future__ import annotations
import logging
from typing import AsyncIterator, List, Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel

from . import config
from .auth import User, current_user, optional_user
from .checkout import checkout_urls, create_checkout
from .errors import (
    BoxOfficeError, ErrorKind, InvalidArgument, NotFound,
    SignatureVerificationFailure, StockInvariantViolation,
)
from .helpers import to_iso
from .infra.sql import GatedAsyncSession, make_async_engine
from .infra.timings import summary as timings_summary, timeit
from .model import inventory, orders, tickets
from .model.db import Base, PAID
from .model.eventlog import BACKEND as EVENTLOG_BACKEND, new_eventlog
from .model.orders import LineItem
from .payments import PaymentAdapter, new_adapter
from .payments.mockpay import MockPay, SIGNATURE_HEADER as MOCK_SIG_HEADER
from . import settlement

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger(__name__)

app = FastAPI(
    title="BoxOffice",
    default_response_class=ORJSONResponse,
)

_STATUS_FOR_KIND = {
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.INVALID_ARGUMENT: 400,
    ErrorKind.FAILED_PRECONDITION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.STOCK_INVARIANT_VIOLATION: 409,
    ErrorKind.TRANSIENT_STORAGE_FAILURE: 503,
    ErrorKind.SIGNATURE_VERIFICATION_FAILURE: 400,
    ErrorKind.PAYMENT_PROVIDER_ERROR: 502,
}


# ----------------------------
# Request bodies
# ----------------------------
class CartItem(BaseModel):
    ticket_type_id: str
    qty: int


class CheckoutRequest(BaseModel):
    event_id: str
    items: List[CartItem]


# ----------------------------
# Dependencies
# ----------------------------
async def get_db() -> AsyncIterator[GatedAsyncSession]:
    async with app.state.SessionAsync() as session:
        yield GatedAsyncSession(session=session, gated=app.state.gated)


def get_adapter() -> PaymentAdapter:
    return app.state.adapter


async def eventlog(db: GatedAsyncSession = Depends(get_db)):
    if EVENTLOG_BACKEND == "redis":
        yield new_eventlog(r=app.state.redis)
    else:
        yield new_eventlog(db=db)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    print('\n' * 2)
    print('=' * 50)
    print('BoxOffice is starting up...')
    print(f'   - Database:         {config.DATABASE_URL.split("://")[0]}')
    print(f'   - Payment provider: {config.PAYMENT_PROVIDER}')
    print(f'   - Event log:        {EVENTLOG_BACKEND}')
    print('=' * 50)
    print('\n' * 2)


@app.on_event("startup")
async def _db_init():
    engine, SessionAsync, gated = make_async_engine(config.DATABASE_URL)
    app.state.engine = engine
    app.state.SessionAsync = SessionAsync
    app.state.gated = gated
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@app.on_event("startup")
async def _payments_start():
    app.state.adapter = new_adapter()


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=64
        ),
    )


@app.on_event("startup")
async def _redis_start():
    if EVENTLOG_BACKEND == "redis":
        app.state.redis = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.dispose()
        app.state.engine = None


# ----------------------------
# Error mapping
# ----------------------------
@app.exception_handler(BoxOfficeError)
async def _boxoffice_error(request: Request, exc: BoxOfficeError):
    return ORJSONResponse(
        status_code=_STATUS_FOR_KIND.get(exc.kind, 400),
        content={"error": exc.to_dict()},
    )


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    return ORJSONResponse(
        status_code=400,
        content={"error": InvalidArgument("invalid payload").to_dict()},
    )


@app.get("/health")
async def health():
    return {"ok": True}


# ----------------------------
# API: Checkout
# ----------------------------
@app.post("/api/checkout")
async def api_checkout(
    payload: CheckoutRequest,
    user: Optional[User] = Depends(optional_user),
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
):
    return await create_checkout(
        db, adapter, user, payload.event_id,
        [LineItem(it.ticket_type_id, it.qty) for it in payload.items],
    )


# ----------------------------
# API: Order status (polled by success page)
# ----------------------------
@app.get("/api/orders/{order_id}")
async def api_get_order(
    order_id: str,
    user: User = Depends(current_user),
    db: GatedAsyncSession = Depends(get_db),
):
    async with timeit("db.get_order"):
        async with db.gated():
            async with db.session.begin():
                order = await orders.get_order(db.session, order_id)
                # other users' orders do not exist for this caller
                if order is None or order.user_id != user.id:
                    raise NotFound("order not found")
                lines = await orders.get_lines(db.session, order_id)
                issued = []
                if order.status == PAID:
                    issued = await tickets.tickets_for_order(
                        db.session, order_id
                    )
    return {
        "order_id": order.id,
        "event_id": order.event_id,
        "status": order.status,
        "items": [
            {"ticket_type_id": ln.ticket_type_id, "qty": ln.qty}
            for ln in lines
        ],
        "subtotal": order.subtotal,
        "fees": order.fees,
        "total": order.total,
        "currency": order.currency,
        "created_at": to_iso(order.created_at),
        "paid_at": to_iso(order.paid_at),
        "tickets": [
            {**tickets.public_fields(t), "code": t.code,
             "qr": tickets.qr_text(t)}
            for t in issued
        ],
    }


# ----------------------------
# API: Inventory & ticket lookups (read-only)
# ----------------------------
@app.get("/api/events/{event_id}/inventory")
async def api_inventory(event_id: str,
                        db: GatedAsyncSession = Depends(get_db)):
    return await inventory.compute_inventory(db, event_id)


@app.get("/api/tickets/lookup")
async def api_ticket_lookup(code: str = "",
                            db: GatedAsyncSession = Depends(get_db)):
    if not code.strip():
        raise InvalidArgument("code required")
    t = await tickets.find_ticket(db, code)
    if t is None:
        raise NotFound("ticket not found")
    return {"ok": True, "ticket": tickets.public_fields(t)}


@app.get("/api/tickets/verify")
async def api_ticket_verify(code: str = "",
                            db: GatedAsyncSession = Depends(get_db)):
    payload = tickets.decode_qr(code)
    t = await tickets.find_ticket(db, payload["t"])
    if t is None or t.code != payload["c"]:
        raise NotFound("ticket not found")
    return {"ok": True, "ticket": tickets.public_fields(t)}


@app.get("/api/timings")
async def api_timings():
    return timings_summary()


# ----------------------------
# Webhook endpoint (shared for Mock/Stripe)
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
    events=Depends(eventlog),
):
    # signature covers the exact bytes
    payload = await request.body()
    headers = dict(request.headers)

    try:
        event = adapter.verify_webhook(payload, headers)
    except SignatureVerificationFailure as e:
        client = request.client.host if request.client else "?"
        log.warning("webhook rejected (%s) from %s: possible spoofing",
                    e.message, client)
        raise

    if not adapter.is_payment_completed(event):
        return {"received": True}

    order_id, evt_id = adapter.event_ids(event)
    if not order_id:
        log.warning("completed payment event %s carries no order id", evt_id)
        return {"received": True}

    async with timeit("eventlog.seen"):
        if await events.seen(evt_id):
            return {"received": True, "idempotent": True}

    try:
        result = await settlement.settle_order(db, order_id)
    except StockInvariantViolation:
        # acknowledged: a redelivery cannot fix an oversell
        return {
            "received": True,
            "settled": False,
            "error": ErrorKind.STOCK_INVARIANT_VIOLATION.value,
        }

    async with timeit("eventlog.mark"):
        await events.mark(evt_id)

    return {
        "received": True,
        "outcome": result.outcome.value,
        "order_id": result.order_id,
        "tickets_issued": result.tickets_issued,
    }


# ----------------------------
# MockPay: dev-only stand-in for the hosted checkout page
# ----------------------------
def _mockpay(adapter: PaymentAdapter) -> MockPay:
    if not isinstance(adapter, MockPay):
        raise NotFound("mock payments disabled")
    return adapter


@app.get("/mockpay/{psid}")
async def mockpay_screen(
    psid: str,
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
):
    _mockpay(adapter)
    order = await orders.find_by_payment_session(db, psid)
    if order is None:
        raise NotFound("payment session not found")
    return {
        "psid": psid,
        "order_id": order.id,
        "amount": order.total,
        "currency": order.currency,
        "webhook_url": config.MOCK_WEBHOOK_URL,
    }


@app.post("/mockpay/{psid}/emit")
async def mockpay_emit(
    psid: str,
    t: str = "succeeded",
    repeat: int = 1,
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
):
    """Sign a provider event for this session and deliver it to the webhook.

    `repeat` re-sends the identical event, like a provider retry would.
    """
    mock = _mockpay(adapter)
    if t not in {"succeeded", "failed", "canceled"}:
        raise InvalidArgument("invalid kind")
    if not 1 <= repeat <= 5:
        raise InvalidArgument("repeat must be within [1, 5]")

    order = await orders.find_by_payment_session(db, psid)
    if order is None:
        raise NotFound("payment session not found")

    payload = mock.build_event(
        kind=t, psid=psid, order_id=order.id,
        amount=order.total, currency=order.currency,
    )
    client_http: httpx.AsyncClient = app.state.http
    statuses = []
    for _ in range(repeat):
        try:
            r = await client_http.post(
                config.MOCK_WEBHOOK_URL,
                content=payload,
                headers={
                    MOCK_SIG_HEADER: mock.sign(payload),
                    "content-type": "application/json",
                },
            )
            statuses.append(r.status_code)
        except httpx.HTTPError as e:
            # the buyer can emit again
            log.warning("mock webhook delivery failed: %s", e)
            statuses.append(None)

    success_url, cancel_url = checkout_urls(order.id)
    return {
        "order_id": order.id,
        "webhook_statuses": statuses,
        "redirect_url": success_url if t == "succeeded" else cancel_url,
    }
