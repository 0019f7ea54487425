"""Checkout session initiator through POST /api/checkout."""

import pytest

from boxoffice import config
from boxoffice.errors import PaymentProviderError
from boxoffice.model.db import Order, OrderLine
from boxoffice.server import app as fastapi_app, get_adapter

from conftest import (
    EVENT, auth_headers, count_orders, seed_ticket_type, seed_order,
    order_of,
)


def _cart(*lines, event_id=EVENT):
    return {
        "event_id": event_id,
        "items": [{"ticket_type_id": tt, "qty": qty} for tt, qty in lines],
    }


def test_checkout_creates_pending_order_and_session(client,
                                                    TestingSessionLocal):
    seed_ticket_type(TestingSessionLocal, "T1", price=5000, stock=5)
    seed_ticket_type(TestingSessionLocal, "VIP", price=12000, stock=2)

    response = client.post(
        "/api/checkout",
        json=_cart(("T1", 2), ("VIP", 1)),
        headers=auth_headers("user-1"),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["session_id"].startswith("mock_")
    assert body["url"] == f"/mockpay/{body['session_id']}"
    assert body["subtotal"] == 22000
    assert body["fees"] == 0
    assert body["total"] == 22000
    assert body["currency"] == config.CURRENCY

    db = TestingSessionLocal()
    order = db.get(Order, body["order_id"])
    assert order.status == "pending"
    assert order.user_id == "user-1"
    assert order.event_id == EVENT
    assert order.payment_session_id == body["session_id"]
    assert order.paid_at is None
    lines = (db.query(OrderLine).filter_by(order_id=order.id)
             .order_by(OrderLine.position).all())
    assert [(ln.ticket_type_id, ln.qty) for ln in lines] == [
        ("T1", 2), ("VIP", 1)
    ]
    db.close()


def test_checkout_does_not_touch_stock(client, TestingSessionLocal):
    seed_ticket_type(TestingSessionLocal, "T1", stock=5)

    response = client.post("/api/checkout", json=_cart(("T1", 5)),
                           headers=auth_headers())
    assert response.status_code == 200

    response = client.get(f"/api/events/{EVENT}/inventory")
    assert response.json()["ticket_types"]["T1"]["available"] == 5


def test_checkout_requires_login(client, TestingSessionLocal):
    seed_ticket_type(TestingSessionLocal, "T1")

    response = client.post("/api/checkout", json=_cart(("T1", 1)))

    assert response.status_code == 401
    assert response.json()["error"]["kind"] == "unauthenticated"
    assert count_orders(TestingSessionLocal) == 0


def test_checkout_rejects_bad_token(client, TestingSessionLocal):
    seed_ticket_type(TestingSessionLocal, "T1")

    response = client.post("/api/checkout", json=_cart(("T1", 1)),
                           headers={"Authorization": "Bearer not-a-jwt"})

    assert response.status_code == 401
    assert count_orders(TestingSessionLocal) == 0


@pytest.mark.parametrize("payload", [
    {"event_id": EVENT, "items": []},
    {"event_id": "", "items": [{"ticket_type_id": "T1", "qty": 1}]},
    {"event_id": EVENT},
    {"event_id": EVENT, "items": [{"ticket_type_id": "T1", "qty": "two"}]},
    {"event_id": EVENT, "items": "T1"},
])
def test_checkout_rejects_malformed_payload(client, TestingSessionLocal,
                                            payload):
    seed_ticket_type(TestingSessionLocal, "T1")

    response = client.post("/api/checkout", json=payload,
                           headers=auth_headers())

    assert response.status_code == 400
    assert response.json()["error"]["kind"] == "invalid-argument"
    assert count_orders(TestingSessionLocal) == 0


@pytest.mark.parametrize("lines, message", [
    ([("T1", 0)], "invalid quantity"),
    ([("T1", 21)], "invalid quantity"),
    ([("OFF", 1)], "invalid ticket"),
    ([("NOPE", 1)], "invalid ticket"),
    ([("T1", 6)], "insufficient stock"),
    ([("T1", 3), ("T1", 3)], "insufficient stock"),
])
def test_checkout_rejects_business_rule_violations(
        client, TestingSessionLocal, lines, message):
    seed_ticket_type(TestingSessionLocal, "T1", stock=5)
    seed_ticket_type(TestingSessionLocal, "OFF", stock=5, active=False)

    response = client.post("/api/checkout", json=_cart(*lines),
                           headers=auth_headers())

    assert response.status_code == 400
    assert response.json()["error"] == {
        "kind": "failed-precondition", "message": message,
    }
    assert count_orders(TestingSessionLocal) == 0


def test_checkout_ticket_type_of_another_event_is_invalid(
        client, TestingSessionLocal):
    seed_ticket_type(TestingSessionLocal, "T1", event_id="other-event")

    response = client.post("/api/checkout", json=_cart(("T1", 1)),
                           headers=auth_headers())

    assert response.status_code == 400
    assert response.json()["error"]["message"] == "invalid ticket"


def test_checkout_enforces_per_user_limit(client, TestingSessionLocal,
                                          run_async):
    from boxoffice.settlement import settle_order

    seed_ticket_type(TestingSessionLocal, "T1", stock=50, per_user_limit=4)
    seed_order(TestingSessionLocal, "O-old", [("T1", 3)], user_id="user-1")
    run_async(lambda new_db: settle_order(new_db(), "O-old"))

    over = client.post("/api/checkout", json=_cart(("T1", 2)),
                       headers=auth_headers("user-1"))
    assert over.status_code == 400
    assert over.json()["error"]["message"] == "purchase limit exceeded"

    ok = client.post("/api/checkout", json=_cart(("T1", 1)),
                     headers=auth_headers("user-1"))
    assert ok.status_code == 200

    other_user = client.post("/api/checkout", json=_cart(("T1", 4)),
                             headers=auth_headers("user-2"))
    assert other_user.status_code == 200


def test_checkout_adds_service_fee(client, TestingSessionLocal, monkeypatch,
                                   mocker):
    monkeypatch.setattr(config, "SERVICE_FEE_BPS", 1200)
    seed_ticket_type(TestingSessionLocal, "T1", price=4999, stock=5)
    spy = mocker.spy(fastapi_app.state.adapter, "create_session")

    response = client.post("/api/checkout", json=_cart(("T1", 2)),
                           headers=auth_headers())

    body = response.json()
    assert body["subtotal"] == 9998
    # 9998 * 1200 // 10000
    assert body["fees"] == 1199
    assert body["total"] == 11197
    lines = spy.call_args.kwargs["lines"]
    assert [(ln.unit_amount, ln.qty) for ln in lines] == [(4999, 2), (1199, 1)]


def test_checkout_session_request_shape(client, TestingSessionLocal, mocker):
    seed_ticket_type(TestingSessionLocal, "T1", price=5000, stock=5,
                     name="General")
    spy = mocker.spy(fastapi_app.state.adapter, "create_session")

    response = client.post("/api/checkout", json=_cart(("T1", 2)),
                           headers=auth_headers("user-9", "fan@example.com"))

    order_id = response.json()["order_id"]
    kwargs = spy.call_args.kwargs
    assert kwargs["metadata"] == {
        "order_id": order_id, "event_id": EVENT, "user_id": "user-9",
    }
    assert kwargs["success_url"].endswith(f"/checkout/success?order={order_id}")
    assert kwargs["cancel_url"].endswith(f"/checkout/cancel?order={order_id}")
    assert kwargs["customer_email"] == "fan@example.com"
    assert kwargs["lines"][0].description == f"General - {EVENT}"


def test_order_exists_before_provider_is_called(client, TestingSessionLocal,
                                                mocker):
    seed_ticket_type(TestingSessionLocal, "T1", stock=5)
    seen = {}

    async def create_session(**kwargs):
        seen["order"] = order_of(TestingSessionLocal,
                                 kwargs["metadata"]["order_id"])
        return {"payment_session_id": "ps_1", "redirect_url": "/pay/ps_1"}

    adapter = mocker.Mock()
    adapter.create_session = create_session
    fastapi_app.dependency_overrides[get_adapter] = lambda: adapter

    response = client.post("/api/checkout", json=_cart(("T1", 1)),
                           headers=auth_headers())

    assert response.status_code == 200
    assert seen["order"] is not None
    assert seen["order"].status == "pending"


def test_provider_failure_leaves_pending_order_without_session(
        client, TestingSessionLocal, mocker):
    seed_ticket_type(TestingSessionLocal, "T1", stock=5)
    adapter = mocker.Mock()
    adapter.create_session = mocker.AsyncMock(
        side_effect=PaymentProviderError()
    )
    fastapi_app.dependency_overrides[get_adapter] = lambda: adapter

    response = client.post("/api/checkout", json=_cart(("T1", 1)),
                           headers=auth_headers())

    assert response.status_code == 502
    assert response.json()["error"]["kind"] == "payment-provider-error"
    db = TestingSessionLocal()
    orders = db.query(Order).all()
    db.close()
    assert len(orders) == 1
    assert orders[0].status == "pending"
    assert orders[0].payment_session_id is None
