from datetime import datetime, timezone

import pytest
import requests

from errors import ExternalGatewayError
from gateway import MercadoPagoGateway, MockGateway
from notifications import HttpNotifier, LogNotifier


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self._payload


class FakeSession(requests.Session):
    def __init__(self, responses):
        super().__init__()
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def test_create_preference_posts_checkout_request():
    http = FakeSession([FakeResponse(201, {"id": "pref-1", "init_point": "https://mp.example/pay/pref-1"})])
    gateway = MercadoPagoGateway("token-123", api_url="https://mp.example/", http=http)
    expires_at = datetime(2026, 10, 19, 12, 15, tzinfo=timezone.utc)

    preference = gateway.create_preference(
        items=[{"id": "1", "title": "General", "quantity": 2, "unit_price": 15000}],
        success_url="https://shop/ok",
        failure_url="https://shop/fail",
        pending_url="https://shop/pending",
        notify_url="https://api/webhooks/payments",
        expires_at=expires_at,
        external_reference="ref-1",
    )

    assert preference.preference_id == "pref-1"
    assert preference.checkout_url == "https://mp.example/pay/pref-1"
    method, url, kwargs = http.calls[0]
    assert (method, url) == ("POST", "https://mp.example/checkout/preferences")
    assert kwargs["json"]["external_reference"] == "ref-1"
    assert kwargs["json"]["expiration_date_to"] == expires_at.isoformat()
    assert http.headers["Authorization"] == "Bearer token-123"


def test_fetch_payment_status_maps_fields():
    http = FakeSession([FakeResponse(200, {
        "id": 987,
        "status": "approved",
        "preference_id": "pref-1",
        "external_reference": "ref-1",
    })])
    gateway = MercadoPagoGateway("token", http=http)

    payment = gateway.fetch_payment_status("987")

    assert payment.payment_id == "987"
    assert payment.status == "approved"
    assert payment.external_reference == "ref-1"
    assert http.calls[0][1] == "https://api.mercadopago.com/v1/payments/987"


@pytest.mark.parametrize("response", [
    FakeResponse(500, {}),
    requests.ConnectionError("connection refused"),
    FakeResponse(201, {"id": "pref-without-url"}),
])
def test_gateway_failures_raise_external_gateway_error(response):
    gateway = MercadoPagoGateway("token", http=FakeSession([response]))

    with pytest.raises(ExternalGatewayError):
        gateway.create_preference([], "s", "f", "p", "n",
                                  datetime.now(timezone.utc), "ref")


def test_gateway_requires_token():
    with pytest.raises(ValueError):
        MercadoPagoGateway("")


def test_http_notifier_posts_confirmation(monkeypatch):
    sent = {}

    def fake_post(url, json, timeout):
        sent.update(url=url, json=json, timeout=timeout)
        return FakeResponse(202, {})

    monkeypatch.setattr(requests, "post", fake_post)

    HttpNotifier("http://notify.local/").send({"email": "fan@example.com"}, {"quantity": 1}, ["ABC"])

    assert sent["url"] == "http://notify.local/send"
    assert sent["json"]["codes"] == ["ABC"]
    assert sent["timeout"] == 2.0


def test_create_preference_sends_payer():
    http = FakeSession([FakeResponse(201, {"id": "pref-2", "init_point": "https://mp.example/pay/pref-2"})])
    gateway = MercadoPagoGateway("token", http=http)
    payer = {"name": "Fan", "email": "fan@example.com", "phone": {"number": "555-0000"}}

    gateway.create_preference([], "s", "f", "p", "n", datetime.now(timezone.utc), "ref",
                              payer=payer)

    assert http.calls[0][2]["json"]["payer"] == payer


def test_create_preference_omits_missing_payer():
    http = FakeSession([FakeResponse(201, {"id": "pref-3", "init_point": "https://mp.example/pay/pref-3"})])
    gateway = MercadoPagoGateway("token", http=http)

    gateway.create_preference([], "s", "f", "p", "n", datetime.now(timezone.utc), "ref")

    assert "payer" not in http.calls[0][2]["json"]


def test_mock_gateway_finds_preference_by_reference():
    gateway = MockGateway()
    preference = gateway.create_preference([{"id": "1"}], "s", "f", "p", "n",
                                            datetime.now(timezone.utc), "ref-9")

    pref_id, stored = gateway.find_preference("ref-9")
    stored["items"] = []

    assert pref_id == preference.preference_id
    assert gateway.preferences[pref_id]["items"] == [{"id": "1"}]
    assert gateway.find_preference("other") is None

    event_id = gateway.simulate_payment("ref-9", "approved")
    assert gateway.fetch_payment_status(event_id).preference_id == pref_id


def test_log_notifier_only_logs(caplog):
    notifier = LogNotifier()

    with caplog.at_level("INFO", logger="notifications"):
        for _ in range(3):
            notifier.send({"email": "fan@example.com"}, {"ticket_type": "General"}, ["ABC"])

    assert not hasattr(notifier, "sent")
    assert caplog.text.count("Purchase confirmation for fan@example.com") == 3
