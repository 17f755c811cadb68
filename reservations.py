"""Reservation engine: carve tickets out of the pool and open a pending payment for them."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
import logging

from sqlalchemy import func

from database_manager import DatabaseManager, release_held_tickets, settle_payment
from errors import (
    ExternalGatewayError,
    InsufficientInventory,
    InvalidBuyer,
    InvalidQuantity,
    InvalidSellerKey,
    NoSellerAvailable,
    PurchaseLimitExceeded,
    TicketTypeNotFound,
)
from gateway import PaymentGateway
from helpers import generate_reference, is_valid_email, to_iso, utc_now
from models import Payment, PaymentStatus, Ticket, TicketState, TicketType
from sellers import SellerDirectory, SellerIdentity

logger = logging.getLogger(__name__)

RESERVATION_TTL = timedelta(minutes=15)


@dataclass(frozen=True)
class Buyer:
    """Either a registered buyer id or contact details for anonymous checkout."""
    buyer_id: Optional[int] = None
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None

    def payer(self) -> Optional[Dict]:
        """Payer details for the gateway checkout page, or None when nothing is known."""
        payer = {}
        if self.name:
            payer["name"] = self.name
        if self.email:
            payer["email"] = self.email
        if self.phone:
            payer["phone"] = {"number": self.phone}
        return payer or None


@dataclass
class Reservation:
    payment_id: str
    checkout_url: str
    hold_expires_at: datetime
    summary: Dict
    ticket_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "payment_id": self.payment_id,
            "checkout_url": self.checkout_url,
            "hold_expires_at": to_iso(self.hold_expires_at),
            "summary": self.summary,
        }


@dataclass(frozen=True)
class _TicketTypeInfo:
    id: int
    name: str
    unit_price: int
    max_per_buyer: Optional[int]
    event_id: int
    event_name: str
    producer_id: int


class ReservationEngine:

    def __init__(
        self,
        db: DatabaseManager,
        gateway: PaymentGateway,
        sellers: SellerDirectory,
        clock: Callable[[], datetime] = utc_now,
        hold_ttl: timedelta = RESERVATION_TTL,
        currency: str = "ARS",
        frontend_url: str = "http://localhost:3000",
        backend_url: str = "http://localhost:5000",
    ):
        self.db = db
        self.gateway = gateway
        self.sellers = sellers
        self.clock = clock
        self.hold_ttl = hold_ttl
        self.currency = currency
        self.frontend_url = frontend_url.rstrip("/")
        self.backend_url = backend_url.rstrip("/")

    def reserve(self, ticket_type_id: int, quantity: int, buyer: Buyer,
                seller_key: Optional[str] = None) -> Reservation:
        """Hold `quantity` tickets for the buyer and return a checkout URL for them.

        The hold is committed before the gateway is contacted. If the gateway
        call fails the hold is released again and ExternalGatewayError raised.
        """
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidQuantity("quantity must be a positive integer")
        if buyer.buyer_id is None and not is_valid_email(buyer.email):
            raise InvalidBuyer("a buyer id or a valid contact email is required")

        info = self._load_ticket_type(ticket_type_id)
        seller = self._resolve_seller(seller_key, info.producer_id)

        now = self.clock()
        hold_expires_at = now + self.hold_ttl
        payment_id, ticket_ids, external_reference = self._claim(
            info, quantity, buyer, seller, now, hold_expires_at
        )
        logger.info(
            f"Reserved {len(ticket_ids)} ticket(s) of type {info.id} for payment {payment_id} "
            f"until {hold_expires_at.isoformat()}"
        )

        amount = info.unit_price * quantity
        try:
            preference = self.gateway.create_preference(
                items=[{
                    "id": str(info.id),
                    "title": f"{info.name} - {info.event_name}",
                    "quantity": quantity,
                    "unit_price": info.unit_price,
                    "currency_id": self.currency,
                }],
                success_url=f"{self.frontend_url}/purchase/success?payment_id={payment_id}",
                failure_url=f"{self.frontend_url}/purchase/failure?payment_id={payment_id}",
                pending_url=f"{self.frontend_url}/purchase/pending?payment_id={payment_id}",
                notify_url=f"{self.backend_url}/webhooks/payments",
                expires_at=hold_expires_at,
                external_reference=external_reference,
                payer=buyer.payer(),
            )
        except Exception as e:
            logger.error(f"Preference creation failed for payment {payment_id}: {e}")
            self._compensate(payment_id, ticket_ids, f"payment gateway error: {e}")
            if isinstance(e, ExternalGatewayError):
                raise
            raise ExternalGatewayError(str(e)) from e

        self._attach_preference(payment_id, preference.preference_id, preference.checkout_url)

        return Reservation(
            payment_id=payment_id,
            checkout_url=preference.checkout_url,
            hold_expires_at=hold_expires_at,
            ticket_ids=ticket_ids,
            summary={
                "event": info.event_name,
                "ticket_type": info.name,
                "quantity": quantity,
                "unit_price": info.unit_price,
                "total": amount,
                "currency": self.currency,
            },
        )

    def _load_ticket_type(self, ticket_type_id: int) -> _TicketTypeInfo:
        with self.db.get_session() as session:
            ticket_type = session.get(TicketType, ticket_type_id)
            if ticket_type is None:
                raise TicketTypeNotFound(ticket_type_id)
            event = ticket_type.event
            return _TicketTypeInfo(
                id=ticket_type.id,
                name=ticket_type.name,
                unit_price=ticket_type.unit_price,
                max_per_buyer=ticket_type.max_per_buyer,
                event_id=event.id,
                event_name=event.name,
                producer_id=event.producer_id,
            )

    def _resolve_seller(self, seller_key: Optional[str], producer_id: int) -> SellerIdentity:
        if seller_key:
            seller = self.sellers.resolve_by_seller_key(seller_key)
            if seller is None:
                raise InvalidSellerKey(f"unknown seller key {seller_key!r}")
            return seller

        seller = self.sellers.default_seller_for(producer_id)
        if seller is None:
            raise NoSellerAvailable(f"producer {producer_id} has no default seller")
        return seller

    def _claim(self, info: _TicketTypeInfo, quantity: int, buyer: Buyer,
               seller: SellerIdentity, now: datetime, hold_expires_at: datetime):
        """Single transaction: pick FIFO rows, open the payment, flip rows to RESERVED."""
        with self.db.get_session() as session:
            if buyer.buyer_id is not None and info.max_per_buyer is not None:
                # Serializes limited reservations of this type so two requests
                # from one buyer cannot both count the same prior holdings.
                session.query(TicketType.id).filter(
                    TicketType.id == info.id
                ).with_for_update().one()
                held = session.query(func.count(Ticket.id)).filter(
                    Ticket.ticket_type_id == info.id,
                    Ticket.buyer_id == buyer.buyer_id,
                    Ticket.state.in_([TicketState.RESERVED, TicketState.SOLD]),
                ).scalar()
                if held + quantity > info.max_per_buyer:
                    raise PurchaseLimitExceeded(limit=info.max_per_buyer, held=held)

            # Postgres: concurrent reservers skip each other's rows instead of
            # queueing behind them. SQLite ignores the lock clause.
            candidates = session.query(Ticket.id).filter(
                Ticket.ticket_type_id == info.id,
                Ticket.state == TicketState.AVAILABLE,
            ).order_by(
                Ticket.created_at.asc(), Ticket.id.asc()
            ).limit(quantity).with_for_update(skip_locked=True).all()

            ticket_ids = [row.id for row in candidates]
            if len(ticket_ids) < quantity:
                raise InsufficientInventory(available=len(ticket_ids))

            payment_id = generate_reference()
            external_reference = generate_reference()
            session.add(Payment(
                id=payment_id,
                buyer_id=buyer.buyer_id,
                buyer_email=buyer.email,
                buyer_name=buyer.name,
                ticket_type_id=info.id,
                seller_id=seller.id,
                quantity=quantity,
                amount=info.unit_price * quantity,
                currency=self.currency,
                status=PaymentStatus.PENDING,
                external_reference=external_reference,
                ticket_ids=ticket_ids,
                hold_expires_at=hold_expires_at,
                created_at=now,
                updated_at=now,
            ))
            session.flush()

            claimed = session.query(Ticket).filter(
                Ticket.id.in_(ticket_ids),
                Ticket.state == TicketState.AVAILABLE,
            ).update(
                {
                    Ticket.state: TicketState.RESERVED,
                    Ticket.buyer_id: buyer.buyer_id,
                    Ticket.seller_id: seller.id,
                    Ticket.payment_id: payment_id,
                    Ticket.reserved_until: hold_expires_at,
                },
                synchronize_session=False
            )
            if claimed != quantity:
                logger.warning(f"Lost race for ticket type {info.id}: claimed {claimed} of {quantity}")
                raise InsufficientInventory(available=claimed)

            return payment_id, ticket_ids, external_reference

    def _compensate(self, payment_id: str, ticket_ids: List[int], reason: str):
        with self.db.get_session() as session:
            released = release_held_tickets(session, payment_id, ticket_ids)
            settle_payment(session, payment_id, PaymentStatus.FAILURE, self.clock(),
                           failure_reason=reason)
        logger.info(f"Compensated payment {payment_id}: released {released} ticket(s)")

    def _attach_preference(self, payment_id: str, preference_id: str, checkout_url: str):
        with self.db.get_session() as session:
            updated = session.query(Payment).filter(
                Payment.id == payment_id,
                Payment.status == PaymentStatus.PENDING,
            ).update(
                {
                    Payment.external_preference_id: preference_id,
                    Payment.checkout_url: checkout_url,
                    Payment.updated_at: self.clock(),
                },
                synchronize_session=False
            )
        if not updated:
            logger.warning(f"Payment {payment_id} settled before its preference was recorded")
