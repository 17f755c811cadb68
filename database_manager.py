"""Database coordination layer: engine lifecycle, transactional scope and catalog queries."""

from sqlalchemy import create_engine, event, func, text
from sqlalchemy.orm import sessionmaker
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional
import logging

from models import Base, Event, Seller, TicketType, Ticket, Payment, TicketState, PaymentStatus

logger = logging.getLogger(__name__)


def release_held_tickets(session, payment_id: str, ticket_ids: List[int]) -> int:
    """Return tickets still RESERVED for this payment to the pool; SOLD rows are untouched."""
    if not ticket_ids:
        return 0
    return session.query(Ticket).filter(
        Ticket.id.in_(ticket_ids),
        Ticket.state == TicketState.RESERVED,
        Ticket.payment_id == payment_id,
    ).update(
        {
            Ticket.state: TicketState.AVAILABLE,
            Ticket.buyer_id: None,
            Ticket.seller_id: None,
            Ticket.payment_id: None,
            Ticket.reserved_until: None,
        },
        synchronize_session=False
    )


def settle_payment(session, payment_id: str, status: PaymentStatus, now: datetime, **fields) -> bool:
    """Move a PENDING payment to a terminal status. False if it was no longer PENDING."""
    values = {Payment.status: status, Payment.updated_at: now}
    for name, value in fields.items():
        values[getattr(Payment, name)] = value
    updated = session.query(Payment).filter(
        Payment.id == payment_id,
        Payment.status == PaymentStatus.PENDING,
    ).update(values, synchronize_session=False)
    return updated == 1


class DatabaseManager:
    """Thread-safe façade over SQLAlchemy sessions, created once per process."""

    def __init__(self, database_url: str, create_schema: bool = True):
        self.is_sqlite = database_url.startswith('sqlite')
        if self.is_sqlite:
            self.engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
            self._install_sqlite_hooks()
        else:
            self.engine = create_engine(
                database_url,
                pool_size=20,
                max_overflow=40,
                pool_pre_ping=True,  # Reconnect if connection lost
                pool_recycle=3600,   # Recycle connections after 1 hour
                echo=False
            )
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

        if create_schema:
            Base.metadata.create_all(self.engine)

    def _install_sqlite_hooks(self):
        # pysqlite defers BEGIN until the first write, which lets two readers
        # both decide to claim the same row. Take the write lock up front.
        @event.listens_for(self.engine, "connect")
        def _sqlite_connect(dbapi_connection, _):
            dbapi_connection.isolation_level = None
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA busy_timeout=30000;")
            cur.close()

        @event.listens_for(self.engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    @contextmanager
    def get_session(self):
        """Provide a transactional scope, committing on success and rolling back otherwise."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.debug(f"Transaction rolled back: {e!r}")
            raise
        finally:
            session.close()

    def close(self):
        self.engine.dispose()

    # Catalog setup

    def create_event(self, name: str, producer_id: int) -> int:
        with self.get_session() as session:
            ev = Event(name=name, producer_id=producer_id)
            session.add(ev)
            session.flush()
            return ev.id

    def add_seller(self, name: str, seller_key: str, producer_id: int,
                   is_default: bool = False, email: Optional[str] = None) -> int:
        with self.get_session() as session:
            seller = Seller(
                name=name,
                email=email,
                seller_key=seller_key,
                producer_id=producer_id,
                is_default=is_default,
            )
            session.add(seller)
            session.flush()
            return seller.id

    def create_ticket_type(self, event_id: int, name: str, unit_price: int,
                           total_count: int, max_per_buyer: Optional[int] = None) -> int:
        """Create a ticket type and pre-provision its pool of AVAILABLE tickets."""
        if total_count < 0:
            raise ValueError("total_count must not be negative")

        with self.get_session() as session:
            ticket_type = TicketType(
                event_id=event_id,
                name=name,
                unit_price=unit_price,
                total_count=total_count,
                max_per_buyer=max_per_buyer,
            )
            session.add(ticket_type)
            session.flush()

            session.add_all([
                Ticket(
                    ticket_type_id=ticket_type.id,
                    event_id=event_id,
                    state=TicketState.AVAILABLE,
                ) for _ in range(total_count)
            ])

            logger.info(f"Provisioned {total_count} tickets for ticket type {ticket_type.id} ({name})")
            return ticket_type.id

    # Queries

    def get_inventory(self, ticket_type_id: int) -> Optional[Dict]:
        """Return per-state ticket counts for a ticket type."""
        with self.get_session() as session:
            ticket_type = session.get(TicketType, ticket_type_id)
            if ticket_type is None:
                return None

            counts = session.query(
                Ticket.state,
                func.count(Ticket.id)
            ).filter(
                Ticket.ticket_type_id == ticket_type_id
            ).group_by(Ticket.state).all()

            count_dict = {state: 0 for state in TicketState}
            for state, count in counts:
                count_dict[state] = count

            return {
                "ticket_type_id": ticket_type.id,
                "name": ticket_type.name,
                "unit_price": ticket_type.unit_price,
                "total_count": ticket_type.total_count,
                "provisioned": sum(count_dict.values()),
                "available": count_dict[TicketState.AVAILABLE],
                "reserved": count_dict[TicketState.RESERVED],
                "sold": count_dict[TicketState.SOLD],
            }

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        with self.get_session() as session:
            return session.get(Payment, payment_id)

    def get_tickets(self, ticket_ids: List[int]) -> List[Ticket]:
        with self.get_session() as session:
            return session.query(Ticket).filter(
                Ticket.id.in_(ticket_ids)
            ).order_by(Ticket.id).all()

    def count_payments(self) -> int:
        with self.get_session() as session:
            return session.query(func.count(Payment.id)).scalar()

    def count_lapsed_pending_payments(self, now: datetime) -> int:
        """PENDING payments whose hold has already lapsed (never auto-failed)."""
        with self.get_session() as session:
            return session.query(func.count(Payment.id)).filter(
                Payment.status == PaymentStatus.PENDING,
                Payment.hold_expires_at < now,
            ).scalar()

    def health_check(self) -> Dict:
        """Report database connectivity; used by the /health endpoint."""
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
                ticket_type_count = session.query(func.count(TicketType.id)).scalar()

                return {
                    "status": "healthy",
                    "database": "connected",
                    "ticket_types": ticket_type_count
                }
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return {
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(e)
            }
