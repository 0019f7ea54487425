# model/tickets.py
"""
Ticket issuance store.

Tickets are written in one batch by settlement, one row per purchased unit,
and never mutated here afterwards.

Each ticket carries a random, URL-safe `code` distinct from its id so codes
cannot be enumerated from ticket ids. `qr_text()` wraps the public fields in
a compact `BOX:` payload, HMAC-signed when QR_SECRET_KEY is configured.
"""

from __future__ import annotations
import base64
import hashlib
import hmac
import json
import secrets
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .. import config
from ..errors import InvalidArgument, SignatureVerificationFailure
from ..infra.sql import GatedAsyncSession
from .db import Ticket, TICKET_VALID

QR_PREFIX = "BOX:"
QR_VERSION = 1


def new_ticket_code() -> str:
    return secrets.token_urlsafe(16)


# ------------------------------------------------------------------------------
# UN-GATED: caller owns the gate and the transaction
# ------------------------------------------------------------------------------

def add_tickets(
    db: AsyncSession,
    *,
    order_id: str,
    event_id: str,
    ticket_type_id: str,
    user_id: str,
    qty: int,
    created_at: float,
) -> List[Ticket]:
    tickets = []
    for _ in range(qty):
        t = Ticket(
            id=uuid.uuid4().hex,
            order_id=order_id,
            event_id=event_id,
            ticket_type_id=ticket_type_id,
            user_id=user_id,
            code=new_ticket_code(),
            status=TICKET_VALID,
            created_at=created_at,
        )
        db.add(t)
        tickets.append(t)
    return tickets


async def count_held(
    db: AsyncSession, user_id: str, event_id: str, ticket_type_id: str
) -> int:
    return int((await db.execute(
        select(func.count(Ticket.id)).where(
            Ticket.user_id == user_id,
            Ticket.event_id == event_id,
            Ticket.ticket_type_id == ticket_type_id,
            Ticket.status == TICKET_VALID,
        )
    )).scalar_one())


async def tickets_for_order(db: AsyncSession, order_id: str) -> List[Ticket]:
    return list((await db.execute(
        select(Ticket)
        .where(Ticket.order_id == order_id)
        .order_by(Ticket.ticket_type_id, Ticket.created_at, Ticket.id)
    )).scalars().all())


# ------------------------------------------------------------------------------
# Read APIs
# ------------------------------------------------------------------------------

async def find_ticket(db: GatedAsyncSession, code: str) -> Optional[Ticket]:
    """
    Look a ticket up by its id, its code or its scanned `BOX:` QR text.
    A QR text is decoded (and its signature checked) first.
    """
    code = (code or "").strip()
    if not code:
        return None
    if code.startswith(QR_PREFIX):
        code = decode_qr(code)["t"]
    async with db.gated():
        async with db.session.begin():
            return (await db.session.execute(
                select(Ticket)
                .where(or_(Ticket.id == code, Ticket.code == code))
                .limit(1)
            )).scalars().first()


def public_fields(t: Ticket) -> Dict[str, Any]:
    return {
        "id": t.id,
        "status": t.status,
        "order_id": t.order_id,
        "event_id": t.event_id,
        "ticket_type_id": t.ticket_type_id,
    }


# ------------------------------------------------------------------------------
# QR payloads
# ------------------------------------------------------------------------------

def _sign(payload: Dict[str, Any], secret: str) -> str:
    base = (
        f"{payload['t']}.{payload['o']}.{payload['e']}."
        f"{payload['c']}.v{payload['v']}"
    )
    return hmac.new(secret.encode(), base.encode(), hashlib.sha256).hexdigest()


def qr_text(t: Ticket, secret: Optional[str] = None) -> str:
    secret = config.QR_SECRET_KEY if secret is None else secret
    payload: Dict[str, Any] = {
        "t": t.id, "o": t.order_id, "e": t.event_id,
        "tp": t.ticket_type_id, "c": t.code, "v": QR_VERSION,
    }
    if secret:
        payload["sig"] = _sign(payload, secret)
    raw = json.dumps(payload, separators=(",", ":")).encode()
    return QR_PREFIX + base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def decode_qr(text: str, secret: Optional[str] = None) -> Dict[str, Any]:
    """
    Parse a `BOX:` payload and check its signature.
    Raises InvalidArgument on a malformed payload and
    SignatureVerificationFailure on a bad or missing signature.
    """
    secret = config.QR_SECRET_KEY if secret is None else secret
    text = (text or "").strip()
    if not text.startswith(QR_PREFIX):
        raise InvalidArgument("invalid payload")
    b64 = text[len(QR_PREFIX):]
    try:
        raw = base64.urlsafe_b64decode(b64 + "=" * (-len(b64) % 4))
        payload = json.loads(raw.decode())
    except (ValueError, UnicodeDecodeError):
        raise InvalidArgument("invalid payload")
    if not isinstance(payload, dict) or not all(
        isinstance(payload.get(k), str) and payload[k]
        for k in ("t", "o", "e", "c")
    ):
        raise InvalidArgument("invalid payload")
    payload.setdefault("v", QR_VERSION)
    if secret:
        sig = payload.get("sig")
        if not isinstance(sig, str) or not hmac.compare_digest(
            _sign(payload, secret), sig
        ):
            raise SignatureVerificationFailure("invalid signature")
    return payload
