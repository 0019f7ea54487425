import asyncio

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from boxoffice import config
from boxoffice.auth import issue_token
from boxoffice.helpers import now_ts
from boxoffice.infra.sql import GatedAsyncSession, make_async_engine
from boxoffice.model.db import Base, Order, OrderLine, Ticket, TicketType
from boxoffice.server import app as fastapi_app

EVENT = "ev-rock-night"


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "boxoffice_test.db"


@pytest.fixture
def database_url(db_path):
    return f"sqlite:///{db_path}"


@pytest.fixture
def sync_engine(database_url):
    engine = create_engine(database_url)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def TestingSessionLocal(sync_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=sync_engine)


@pytest.fixture(autouse=True)
def _fast_settings(monkeypatch):
    monkeypatch.setattr(config, "PAYMENT_PROVIDER", "mock")
    monkeypatch.setattr(config, "SERVICE_FEE_BPS", 0)
    monkeypatch.setattr(config, "SETTLE_BACKOFF_SECONDS", 0.0)
    monkeypatch.setattr(config, "QR_SECRET_KEY", "qr-test-secret")


@pytest.fixture
def client(monkeypatch, database_url, sync_engine):
    monkeypatch.setattr(config, "DATABASE_URL", database_url)
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def run_async(database_url, sync_engine):
    """Run `fn(new_db)` on a fresh event loop against the test database.

    `new_db()` hands out a GatedAsyncSession on its own AsyncSession, so
    concurrent callers really use separate connections.
    """
    def _run(fn):
        async def main():
            engine, SessionAsync, gated = make_async_engine(database_url)
            sessions = []

            def new_db():
                s = SessionAsync()
                sessions.append(s)
                return GatedAsyncSession(session=s, gated=gated)

            try:
                return await fn(new_db)
            finally:
                for s in sessions:
                    await s.close()
                await engine.dispose()
        return asyncio.run(main())
    return _run


def auth_headers(user_id="user-1", email=None):
    return {"Authorization": f"Bearer {issue_token(user_id, email)}"}


# ----------------------------
# Seeding helpers (sync engine on the same file)
# ----------------------------
def seed_ticket_type(SessionLocal, tt_id="T1", *, event_id=EVENT, price=5000,
                     stock=5, total=None, active=True, per_user_limit=None,
                     name=None):
    db = SessionLocal()
    db.add(TicketType(
        id=tt_id,
        event_id=event_id,
        name=name or f"General {tt_id}",
        price=price,
        total_stock=stock if total is None else total,
        available_stock=stock,
        per_user_limit=per_user_limit,
        active=active,
    ))
    db.commit()
    db.close()


def seed_order(SessionLocal, order_id, lines, *, user_id="user-1",
               event_id=EVENT, status="pending", price=5000):
    db = SessionLocal()
    subtotal = sum(qty * price for _, qty in lines)
    db.add(Order(
        id=order_id, user_id=user_id, event_id=event_id, status=status,
        subtotal=subtotal, fees=0, total=subtotal, currency="clp",
        payment_session_id=f"mock_{order_id}", created_at=now_ts(),
    ))
    db.commit()
    for pos, (tt_id, qty) in enumerate(lines):
        db.add(OrderLine(order_id=order_id, position=pos,
                         ticket_type_id=tt_id, qty=qty))
    db.commit()
    db.close()


def stock_of(SessionLocal, tt_id="T1", event_id=EVENT):
    db = SessionLocal()
    tt = db.get(TicketType, (event_id, tt_id))
    db.close()
    return tt.available_stock


def order_of(SessionLocal, order_id):
    db = SessionLocal()
    order = db.get(Order, order_id)
    db.close()
    return order


def tickets_of(SessionLocal, order_id):
    db = SessionLocal()
    rows = db.query(Ticket).filter_by(order_id=order_id).all()
    db.close()
    return rows


def count_orders(SessionLocal):
    db = SessionLocal()
    n = db.query(Order).count()
    db.close()
    return n
