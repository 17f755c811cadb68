"""Apply gateway payment-status events to local payments and their reserved tickets.

Delivery is at-least-once and unordered, so every path is idempotent: a payment
only ever leaves PENDING through a conditional update, and a duplicate event
that loses that race observes zero affected rows and is acknowledged as such.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional
import enum
import logging

from database_manager import DatabaseManager, release_held_tickets, settle_payment
from errors import PaymentNotFound, StaleReservation
from helpers import generate_redemption_code, utc_now
from models import Event, Payment, PaymentStatus, Ticket, TicketState, TicketType
from notifications import Notifier

logger = logging.getLogger(__name__)

APPROVED = {"approved"}
RELEASING = {"rejected": "payment rejected by gateway", "cancelled": "payment cancelled"}
IN_FLIGHT = {"pending", "in_process"}


class Outcome(str, enum.Enum):
    CONFIRMED = "confirmed"
    RELEASED = "released"
    PENDING = "pending"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"
    STALE = "stale"


@dataclass
class ReconcileResult:
    outcome: Outcome
    payment_id: Optional[str] = None
    # Every outcome is acknowledged; store errors propagate instead.
    acknowledged: bool = True

    def to_dict(self) -> Dict:
        return {"ok": self.acknowledged, "outcome": self.outcome.value, "payment_id": self.payment_id}


class _AlreadySettled(Exception):
    """A concurrent delivery settled the payment first; roll back and report a duplicate."""


@dataclass
class _Confirmation:
    contact: Dict
    summary: Dict
    codes: List[str]


class PaymentReconciler:

    def __init__(self, db: DatabaseManager, notifier: Notifier,
                 clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.notifier = notifier
        self.clock = clock

    def reconcile(self, status: str, external_reference: Optional[str] = None,
                  preference_id: Optional[str] = None,
                  external_payment_id: Optional[str] = None) -> ReconcileResult:
        status = (status or "").strip().lower()

        try:
            payment_id = self._lookup(external_reference, preference_id)
        except PaymentNotFound as e:
            logger.warning(f"Ignoring '{status}' event: {e.message}")
            return ReconcileResult(Outcome.NOT_FOUND)

        if status in APPROVED:
            return self._approve(payment_id, external_payment_id)
        if status in RELEASING:
            return self._release(payment_id, RELEASING[status], external_payment_id)
        if status in IN_FLIGHT:
            logger.info(f"Payment {payment_id} still {status} at the gateway")
            return ReconcileResult(Outcome.PENDING, payment_id)

        logger.info(f"Payment {payment_id}: unhandled gateway status {status!r}, no change")
        return ReconcileResult(Outcome.IGNORED, payment_id)

    def _lookup(self, external_reference: Optional[str], preference_id: Optional[str]) -> str:
        with self.db.get_session() as session:
            payment = None
            if external_reference:
                payment = session.query(Payment).filter(
                    Payment.external_reference == external_reference
                ).first()
            if payment is None and preference_id:
                payment = session.query(Payment).filter(
                    Payment.external_preference_id == preference_id
                ).first()
            if payment is None:
                raise PaymentNotFound(
                    f"no payment for reference={external_reference!r} preference={preference_id!r}"
                )
            return payment.id

    def _approve(self, payment_id: str, external_payment_id: Optional[str]) -> ReconcileResult:
        try:
            confirmation = self._confirm(payment_id, external_payment_id)
        except _AlreadySettled:
            logger.info(f"Duplicate approval for settled payment {payment_id}")
            return ReconcileResult(Outcome.DUPLICATE, payment_id)
        except StaleReservation as e:
            logger.error(f"ALERT stale reservation, payment left PENDING: {e.message}")
            return ReconcileResult(Outcome.STALE, payment_id)

        logger.info(f"Payment {payment_id} confirmed: {len(confirmation.codes)} ticket(s) sold")

        try:
            self.notifier.send(confirmation.contact, confirmation.summary, confirmation.codes)
        except Exception as e:
            logger.error(f"Confirmation for payment {payment_id} not delivered: {e}")

        return ReconcileResult(Outcome.CONFIRMED, payment_id)

    def _confirm(self, payment_id: str, external_payment_id: Optional[str]) -> _Confirmation:
        with self.db.get_session() as session:
            payment = session.get(Payment, payment_id)
            if payment.status.is_terminal:
                raise _AlreadySettled()

            now = self.clock()
            if not settle_payment(session, payment_id, PaymentStatus.SUCCESS, now,
                                  external_payment_id=external_payment_id):
                raise _AlreadySettled()

            codes = []
            for ticket_id in payment.ticket_ids:
                code = generate_redemption_code()
                sold = session.query(Ticket).filter(
                    Ticket.id == ticket_id,
                    Ticket.state == TicketState.RESERVED,
                    Ticket.payment_id == payment_id,
                ).update(
                    {
                        Ticket.state: TicketState.SOLD,
                        Ticket.qr_code: code,
                        Ticket.reserved_until: None,
                    },
                    synchronize_session=False
                )
                if sold != 1:
                    # Rolls back the payment update too.
                    raise StaleReservation(payment_id, len(payment.ticket_ids), len(codes))
                codes.append(code)

            ticket_type = session.get(TicketType, payment.ticket_type_id)
            event = session.get(Event, ticket_type.event_id)
            return _Confirmation(
                contact={
                    "buyer_id": payment.buyer_id,
                    "email": payment.buyer_email,
                    "name": payment.buyer_name,
                },
                summary={
                    "payment_id": payment.id,
                    "event": event.name,
                    "ticket_type": ticket_type.name,
                    "quantity": payment.quantity,
                    "amount": payment.amount,
                    "currency": payment.currency,
                },
                codes=codes,
            )

    def _release(self, payment_id: str, reason: str,
                 external_payment_id: Optional[str]) -> ReconcileResult:
        with self.db.get_session() as session:
            payment = session.get(Payment, payment_id)
            if payment.status.is_terminal:
                logger.info(f"Duplicate '{reason}' for settled payment {payment_id}")
                return ReconcileResult(Outcome.DUPLICATE, payment_id)

            if not settle_payment(session, payment_id, PaymentStatus.FAILURE, self.clock(),
                                  failure_reason=reason,
                                  external_payment_id=external_payment_id):
                return ReconcileResult(Outcome.DUPLICATE, payment_id)

            released = release_held_tickets(session, payment_id, payment.ticket_ids)

        logger.info(f"Payment {payment_id} failed ({reason}): released {released} ticket(s)")
        return ReconcileResult(Outcome.RELEASED, payment_id)
