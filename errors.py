"""Closed set of failures raised by the reservation and reconciliation engine."""

from typing import Any, Dict, Optional


class TicketingError(Exception):
    """Base class; every engine failure carries a stable code and a message."""

    code = "ticketing_error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


class InvalidQuantity(TicketingError):
    code = "invalid_quantity"


class InvalidBuyer(TicketingError):
    code = "invalid_buyer"


class TicketTypeNotFound(TicketingError):
    code = "ticket_type_not_found"

    def __init__(self, ticket_type_id):
        super().__init__(f"ticket type {ticket_type_id} not found")
        self.ticket_type_id = ticket_type_id


class InvalidSellerKey(TicketingError):
    code = "invalid_seller_key"


class NoSellerAvailable(TicketingError):
    code = "no_seller_available"


class PurchaseLimitExceeded(TicketingError):
    code = "purchase_limit_exceeded"

    def __init__(self, limit: int, held: int):
        super().__init__(f"buyer already holds {held} of max {limit} tickets for this type")
        self.limit = limit
        self.held = held

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload.update({"limit": self.limit, "held": self.held})
        return payload


class InsufficientInventory(TicketingError):
    code = "insufficient_inventory"

    def __init__(self, available: int):
        super().__init__(f"only {available} tickets available")
        self.available = available

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["available"] = self.available
        return payload


class ExternalGatewayError(TicketingError):
    code = "external_gateway_error"


class PaymentNotFound(TicketingError):
    code = "payment_not_found"


class StaleReservation(TicketingError):
    code = "stale_reservation"

    def __init__(self, payment_id: str, expected: int, matched: int):
        super().__init__(
            f"payment {payment_id}: only {matched} of {expected} tickets still reserved"
        )
        self.payment_id = payment_id
        self.expected = expected
        self.matched = matched


# Caller-facing failures and the HTTP status the ingress answers with.
# Reconciliation outcomes are acknowledged with 200 and never reach this map.
HTTP_STATUS = {
    InvalidQuantity: 400,
    InvalidBuyer: 400,
    InvalidSellerKey: 400,
    TicketTypeNotFound: 404,
    NoSellerAvailable: 409,
    PurchaseLimitExceeded: 409,
    InsufficientInventory: 409,
    ExternalGatewayError: 502,
}


def http_status_for(error: TicketingError) -> int:
    return HTTP_STATUS.get(type(error), 500)
