"""ORM model definitions describing the ticket inventory and payment schema."""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
import enum

Base = declarative_base()


def _now():
    return datetime.now(timezone.utc)


class TicketState(str, enum.Enum):
    """Ticket lifecycle: AVAILABLE -> RESERVED -> SOLD, or RESERVED -> AVAILABLE."""
    AVAILABLE = 'AVAILABLE'
    RESERVED = 'RESERVED'
    SOLD = 'SOLD'


class PaymentStatus(str, enum.Enum):
    """Payment lifecycle; SUCCESS and FAILURE are terminal."""
    PENDING = 'PENDING'
    SUCCESS = 'SUCCESS'
    FAILURE = 'FAILURE'

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class Event(Base):
    __tablename__ = 'events'

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    producer_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_now)

    ticket_types = relationship('TicketType', back_populates='event', cascade='all, delete-orphan')


class Seller(Base):
    __tablename__ = 'sellers'

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String)
    seller_key = Column(String, nullable=False, unique=True)
    producer_id = Column(Integer, nullable=False)
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_now)

    __table_args__ = (
        Index('idx_sellers_producer', 'producer_id', 'is_default'),
    )


class TicketType(Base):
    __tablename__ = 'ticket_types'

    id = Column(Integer, primary_key=True)
    event_id = Column(Integer, ForeignKey('events.id', ondelete='CASCADE'), nullable=False)
    name = Column(String, nullable=False)
    unit_price = Column(Integer, nullable=False)
    # Advisory ceiling; availability is always counted from ticket rows.
    total_count = Column(Integer, nullable=False)
    max_per_buyer = Column(Integer)

    event = relationship('Event', back_populates='ticket_types')
    tickets = relationship('Ticket', back_populates='ticket_type', cascade='all, delete-orphan')


class Ticket(Base):
    __tablename__ = 'tickets'

    id = Column(Integer, primary_key=True)
    ticket_type_id = Column(Integer, ForeignKey('ticket_types.id', ondelete='CASCADE'), nullable=False)
    event_id = Column(Integer, ForeignKey('events.id', ondelete='CASCADE'), nullable=False)

    state = Column(Enum(TicketState, name='ticket_state_enum'),
                   default=TicketState.AVAILABLE, nullable=False)
    buyer_id = Column(Integer)
    seller_id = Column(Integer, ForeignKey('sellers.id'))
    payment_id = Column(String, ForeignKey('payments.id'))
    qr_code = Column(String, unique=True)
    reserved_until = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)

    ticket_type = relationship('TicketType', back_populates='tickets')

    __table_args__ = (
        Index('idx_tickets_pick', 'ticket_type_id', 'state', 'created_at', 'id'),
        Index('idx_tickets_reserved_until', 'reserved_until',
              postgresql_where=state == TicketState.RESERVED),
        Index('idx_tickets_buyer', 'buyer_id', 'ticket_type_id'),
    )


class Payment(Base):
    __tablename__ = 'payments'

    id = Column(String, primary_key=True)
    buyer_id = Column(Integer)
    buyer_email = Column(String)
    buyer_name = Column(String)
    ticket_type_id = Column(Integer, ForeignKey('ticket_types.id'), nullable=False)
    seller_id = Column(Integer, ForeignKey('sellers.id'))

    quantity = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default='ARS')
    status = Column(Enum(PaymentStatus, name='payment_status_enum'),
                    default=PaymentStatus.PENDING, nullable=False)

    external_reference = Column(String, nullable=False, unique=True)
    external_preference_id = Column(String)
    external_payment_id = Column(String)
    checkout_url = Column(Text)

    # Fixed at creation; reconciliation only ever reads it.
    ticket_ids = Column(JSON, nullable=False)
    failure_reason = Column(Text)
    hold_expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now, nullable=False)

    __table_args__ = (
        Index('idx_payments_preference', 'external_preference_id'),
        Index('idx_payments_status_hold', 'status', 'hold_expires_at'),
    )
