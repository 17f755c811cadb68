"""HTTP ingress: checkout, webhook and mock gateway routes."""

import pytest
from sqlalchemy.exc import OperationalError

from app import create_app
from config import Settings
from errors import PaymentNotFound, StaleReservation, http_status_for
from models import PaymentStatus


@pytest.fixture
def client(db, catalog, gateway, notifier, clock):
    app = create_app(
        settings=Settings(database_url="sqlite://", backend_url="http://testserver"),
        db=db,
        gateway=gateway,
        notifier=notifier,
        clock=clock,
        start_sweeper=False,
    )
    app.config["TESTING"] = True
    return app.test_client()


def checkout(client, ticket_type_id, **body):
    body.setdefault("quantity", 1)
    body.setdefault("buyer_id", 7)
    return client.post(f"/ticket-types/{ticket_type_id}/checkout", json=body)


def test_checkout_then_mockpay_approval(client, db, catalog, notifier):
    resp = checkout(client, catalog.general_id, quantity=2)
    assert resp.status_code == 201
    data = resp.get_json()
    assert data["summary"]["total"] == 30000
    assert data["hold_expires_at"]

    payment = db.get_payment(data["payment_id"])
    assert data["checkout_url"].endswith(f"/mockpay/{payment.external_reference}")

    screen = client.get(f"/mockpay/{payment.external_reference}")
    assert screen.status_code == 200
    assert screen.get_json()["items"][0]["quantity"] == 2

    settle = client.post(f"/mockpay/{payment.external_reference}", json={"status": "approved"})
    assert settle.status_code == 200
    assert settle.get_json()["outcome"] == "confirmed"

    status = client.get(f"/payments/{payment.id}").get_json()
    assert status["status"] == PaymentStatus.SUCCESS.value

    inventory = client.get(f"/ticket-types/{catalog.general_id}/inventory").get_json()
    assert inventory["sold"] == 2
    assert inventory["available"] == 3
    assert len(notifier.sent) == 1


def test_webhook_delivers_gateway_status(client, db, catalog, gateway):
    data = checkout(client, catalog.general_id, quantity=1).get_json()
    payment = db.get_payment(data["payment_id"])
    event_id = gateway.simulate_payment(payment.external_reference, "rejected")

    resp = client.post("/webhooks/mercadopago", json={"type": "payment", "data": {"id": event_id}})

    assert resp.status_code == 200
    assert resp.get_json()["outcome"] == "released"
    assert db.get_payment(payment.id).status == PaymentStatus.FAILURE


def test_webhook_redelivery_is_acknowledged(client, db, catalog, gateway):
    data = checkout(client, catalog.general_id, quantity=1).get_json()
    payment = db.get_payment(data["payment_id"])
    event_id = gateway.simulate_payment(payment.external_reference, "approved")

    first = client.post("/webhooks/payments", json={"type": "payment", "eventId": event_id})
    second = client.post("/webhooks/payments", json={"type": "payment", "eventId": event_id})

    assert first.get_json()["outcome"] == "confirmed"
    assert second.status_code == 200
    assert second.get_json()["outcome"] == "duplicate"


def test_webhook_for_unknown_payment_is_acknowledged(client, gateway):
    event_id = gateway.simulate_payment("not-ours", "approved")

    resp = client.post("/webhooks/payments", json={"type": "payment", "eventId": event_id})

    assert resp.status_code == 200
    assert resp.get_json()["outcome"] == "not_found"


def test_webhook_asks_for_retry_when_gateway_lookup_fails(client):
    resp = client.post("/webhooks/payments", json={"type": "payment", "eventId": "missing"})

    assert resp.status_code == 502


def test_webhook_ignores_other_topics(client):
    resp = client.post("/webhooks/payments", json={"type": "merchant_order", "eventId": "1"})

    assert resp.status_code == 200
    assert resp.get_json()["ignored"] is True


def test_webhook_requires_event_id(client):
    resp = client.post("/webhooks/payments", json={"type": "payment"})

    assert resp.status_code == 400


def test_webhook_answers_500_when_store_fails(client, db, catalog, gateway, monkeypatch):
    data = checkout(client, catalog.general_id, quantity=1).get_json()
    payment = db.get_payment(data["payment_id"])
    event_id = gateway.simulate_payment(payment.external_reference, "approved")

    def broken_session():
        raise OperationalError("SELECT payments", {}, Exception("connection reset"))

    monkeypatch.setattr(db, "get_session", broken_session)

    resp = client.post("/webhooks/payments", json={"type": "payment", "eventId": event_id})

    assert resp.status_code == 500
    assert resp.get_json() == {"error": "store_unavailable"}


def test_stale_approval_is_acknowledged(client, db, catalog, clock):
    data = checkout(client, catalog.general_id, quantity=2).get_json()
    payment = db.get_payment(data["payment_id"])
    clock.advance(minutes=16)
    assert client.post("/reservations/sweep").get_json() == {"released": 2}

    resp = client.post(f"/mockpay/{payment.external_reference}", json={"status": "approved"})

    assert resp.status_code == 200
    assert resp.get_json()["outcome"] == "stale"
    assert db.get_payment(payment.id).status == PaymentStatus.PENDING


def test_reconciliation_errors_have_no_http_status():
    assert http_status_for(PaymentNotFound("missing")) == 500
    assert http_status_for(StaleReservation("p-1", expected=2, matched=1)) == 500


def test_manual_sweep_releases_lapsed_holds(client, catalog, clock):
    assert checkout(client, catalog.general_id, quantity=3).status_code == 201
    clock.advance(minutes=10)
    assert client.post("/reservations/sweep").get_json() == {"released": 0}

    clock.advance(minutes=6)
    resp = client.post("/reservations/sweep")

    assert resp.status_code == 200
    assert resp.get_json() == {"released": 3}
    inventory = client.get(f"/ticket-types/{catalog.general_id}/inventory").get_json()
    assert inventory["available"] == 5
    assert inventory["reserved"] == 0


def test_mockpay_screen_unknown_reference(client):
    assert client.get("/mockpay/nope").status_code == 404


def test_checkout_sold_out(client, catalog):
    assert checkout(client, catalog.general_id, quantity=4).status_code == 201

    resp = checkout(client, catalog.general_id, quantity=2, buyer_id=8)

    assert resp.status_code == 409
    assert resp.get_json() == {
        "error": "insufficient_inventory",
        "message": "only 1 tickets available",
        "available": 1,
    }


@pytest.mark.parametrize("body, status", [
    ({"quantity": 0}, 400),
    ({"quantity": "3"}, 400),
    ({"quantity": 1, "buyer_id": "seven"}, 400),
    ({"quantity": 1, "buyer_id": None, "buyer": {"email": "nope"}}, 400),
    ({"quantity": 1, "seller_key": "ghost"}, 400),
])
def test_checkout_rejects_bad_requests(client, catalog, body, status):
    resp = client.post(f"/ticket-types/{catalog.general_id}/checkout", json=body)

    assert resp.status_code == status


def test_checkout_anonymous_buyer(client, db, catalog):
    resp = checkout(client, catalog.general_id, buyer_id=None,
                    buyer={"email": "fan@example.com", "name": "Fan"})

    assert resp.status_code == 201
    payment = db.get_payment(resp.get_json()["payment_id"])
    assert payment.buyer_id is None
    assert payment.buyer_email == "fan@example.com"


def test_unknown_ticket_type(client):
    assert checkout(client, 999).status_code == 404
    assert client.get("/ticket-types/999/inventory").status_code == 404


def test_unknown_payment(client):
    assert client.get("/payments/nope").status_code == 404


def test_health(client):
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.get_json()["status"] == "healthy"
