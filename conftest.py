"""Shared pytest fixtures: temp-file SQLite store, manual clock, mock gateway."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import threading

import pytest

from database_manager import DatabaseManager
from errors import ExternalGatewayError
from gateway import MockGateway
from notifications import LogNotifier
from reconciler import PaymentReconciler
from reservations import ReservationEngine
from sellers import SellerDirectory
from sweeper import ExpirySweeper


class ManualClock:
    """Injectable clock that only moves when a test advances it."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FailingGateway(MockGateway):
    def create_preference(self, *args, **kwargs):
        raise ExternalGatewayError("gateway unavailable")


class RecordingNotifier(LogNotifier):
    """Keeps every confirmation so tests can inspect what was sent."""

    def __init__(self):
        self.sent = []
        self._lock = threading.Lock()

    def send(self, buyer_contact, purchase_summary, redemption_codes):
        super().send(buyer_contact, purchase_summary, redemption_codes)
        with self._lock:
            self.sent.append({
                "to": buyer_contact,
                "summary": purchase_summary,
                "codes": list(redemption_codes),
            })


class BrokenNotifier(RecordingNotifier):
    def send(self, buyer_contact, purchase_summary, redemption_codes):
        super().send(buyer_contact, purchase_summary, redemption_codes)
        raise ConnectionError("smtp relay down")


@dataclass
class Catalog:
    event_id: int
    seller_id: int
    promoter_id: int
    general_id: int


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def db(tmp_path):
    manager = DatabaseManager(f"sqlite:///{tmp_path / 'tickets.db'}")
    yield manager
    manager.close()


@pytest.fixture
def catalog(db):
    event_id = db.create_event("Rock Fest", producer_id=1)
    seller_id = db.add_seller("Box Office", seller_key="box-office", producer_id=1, is_default=True)
    promoter_id = db.add_seller("Promoter Ana", seller_key="qr-ana", producer_id=1)
    general_id = db.create_ticket_type(event_id, "General", unit_price=15000, total_count=5)
    return Catalog(event_id=event_id, seller_id=seller_id, promoter_id=promoter_id, general_id=general_id)


@pytest.fixture
def gateway():
    return MockGateway(base_url="http://testserver")


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(db, gateway, clock):
    return ReservationEngine(db, gateway, SellerDirectory(db), clock=clock)


@pytest.fixture
def reconciler(db, notifier, clock):
    return PaymentReconciler(db, notifier, clock=clock)


@pytest.fixture
def sweeper(db, clock):
    return ExpirySweeper(db, clock=clock, interval_seconds=0.05)
