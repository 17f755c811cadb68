"""Payment gateway adapters: MercadoPago over REST and an in-memory mock."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple
import logging
import threading
import uuid

import requests

from errors import ExternalGatewayError

logger = logging.getLogger(__name__)


@dataclass
class Preference:
    preference_id: str
    checkout_url: str


@dataclass
class GatewayPayment:
    payment_id: str
    # approved | rejected | cancelled | pending | in_process | ...
    status: str
    preference_id: Optional[str] = None
    external_reference: Optional[str] = None


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class PaymentGateway(ABC):
    @abstractmethod
    def create_preference(
            self,
            items: List[Dict],
            success_url: str,
            failure_url: str,
            pending_url: str,
            notify_url: str,
            expires_at: datetime,
            external_reference: str,
            payer: Optional[Dict] = None,
    ) -> Preference: ...

    @abstractmethod
    def fetch_payment_status(self, event_id: str) -> GatewayPayment: ...


# ----------------------------
# MercadoPago implementation
# ----------------------------
class MercadoPagoGateway(PaymentGateway):

    def __init__(self, access_token: str,
                 api_url: str = "https://api.mercadopago.com",
                 timeout: float = 5.0,
                 http: Optional[requests.Session] = None):
        if not access_token:
            raise ValueError("MercadoPago access token is required")
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.http = http or requests.Session()
        self.http.headers.update({
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        })

    def _request(self, method: str, path: str, **kwargs) -> Dict:
        url = f"{self.api_url}{path}"
        try:
            resp = self.http.request(method, url, timeout=self.timeout, **kwargs)
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as e:
            raise ExternalGatewayError(f"{method} {path} failed: {e}") from e
        except ValueError as e:
            raise ExternalGatewayError(f"{method} {path} returned invalid JSON") from e

    def create_preference(self, items, success_url, failure_url, pending_url,
                          notify_url, expires_at, external_reference,
                          payer=None) -> Preference:
        body = {
            "items": items,
            "external_reference": external_reference,
            "notification_url": notify_url,
            "back_urls": {
                "success": success_url,
                "failure": failure_url,
                "pending": pending_url,
            },
            "auto_return": "approved",
            "expires": True,
            "expiration_date_to": expires_at.isoformat(),
        }
        if payer:
            body["payer"] = payer
        data = self._request("POST", "/checkout/preferences", json=body)
        try:
            return Preference(preference_id=str(data["id"]), checkout_url=data["init_point"])
        except KeyError as e:
            raise ExternalGatewayError(f"preference response missing {e}") from e

    def fetch_payment_status(self, event_id: str) -> GatewayPayment:
        data = self._request("GET", f"/v1/payments/{event_id}")
        return GatewayPayment(
            payment_id=str(data.get("id", event_id)),
            status=data.get("status", ""),
            preference_id=data.get("preference_id"),
            external_reference=data.get("external_reference"),
        )


# ----------------------------
# MockPay implementation
# ----------------------------
class MockGateway(PaymentGateway):
    """In-memory gateway for local runs: preferences and payments live in dicts."""

    def __init__(self, base_url: str = "http://localhost:5000"):
        self.base_url = base_url.rstrip("/")
        self.preferences: Dict[str, Dict] = {}
        self.payments: Dict[str, GatewayPayment] = {}
        self._lock = threading.Lock()

    def create_preference(self, items, success_url, failure_url, pending_url,
                          notify_url, expires_at, external_reference,
                          payer=None) -> Preference:
        pref_id = f"mock_pref_{uuid.uuid4().hex}"
        with self._lock:
            self.preferences[pref_id] = {
                "items": items,
                "external_reference": external_reference,
                "notify_url": notify_url,
                "expires_at": expires_at,
                "payer": payer,
            }
        return Preference(
            preference_id=pref_id,
            checkout_url=f"{self.base_url}/mockpay/{external_reference}",
        )

    def find_preference(self, external_reference: str) -> Optional[Tuple[str, Dict]]:
        """Return (preference id, copy of the stored preference) for a reference."""
        with self._lock:
            for pref_id, preference in self.preferences.items():
                if preference["external_reference"] == external_reference:
                    return pref_id, dict(preference)
        return None

    def simulate_payment(self, external_reference: str, status: str) -> str:
        """Record a gateway-side payment and return the event id a webhook would carry."""
        found = self.find_preference(external_reference)
        pref_id = found[0] if found else None
        with self._lock:
            event_id = f"mock_pay_{uuid.uuid4().hex}"
            self.payments[event_id] = GatewayPayment(
                payment_id=event_id,
                status=status,
                preference_id=pref_id,
                external_reference=external_reference,
            )
        return event_id

    def fetch_payment_status(self, event_id: str) -> GatewayPayment:
        with self._lock:
            payment = self.payments.get(event_id)
        if payment is None:
            raise ExternalGatewayError(f"unknown payment {event_id}")
        return payment
