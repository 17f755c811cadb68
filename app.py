"""HTTP entrypoint for the ticket reservation and payment reconciliation service."""

from flask import Flask, request, jsonify
from flask_cors import CORS
from sqlalchemy.exc import SQLAlchemyError
from datetime import timedelta
import logging
import atexit
from typing import Any, Callable, Dict, Optional, Tuple

from config import Settings, load_settings
from database_manager import DatabaseManager
from errors import ExternalGatewayError, TicketingError, http_status_for
from gateway import MercadoPagoGateway, MockGateway, PaymentGateway
from helpers import to_iso, utc_now
from models import TicketType
from notifications import HttpNotifier, LogNotifier, Notifier
from reconciler import PaymentReconciler
from reservations import Buyer, ReservationEngine
from sellers import SellerDirectory
from sweeper import ExpirySweeper

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def bad_request(message: str, *, details: Optional[Dict[str, Any]] = None):
    """Return a uniform 400 payload, optionally including field-level details."""
    payload: Dict[str, Any] = {"error": message}
    if details:
        payload["details"] = details
    return jsonify(payload), 400


def require_json_object() -> Tuple[Optional[Dict[str, Any]], Optional[Tuple[Any, int]]]:
    """Ensure the request body is a JSON object before proceeding."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None, bad_request("request body must be a JSON object")

    return data, None


def parse_buyer(data: Dict[str, Any]) -> Tuple[Optional[Buyer], Optional[Tuple[Any, int]]]:
    """Accept either a buyer_id or a buyer contact object."""
    buyer_id = data.get("buyer_id")
    if buyer_id is not None and (isinstance(buyer_id, bool) or not isinstance(buyer_id, int)):
        return None, bad_request("buyer_id must be an integer")

    contact = data.get("buyer") or {}
    if not isinstance(contact, dict):
        return None, bad_request("buyer must be a JSON object")

    return Buyer(
        buyer_id=buyer_id,
        email=(contact.get("email") or "").strip() or None,
        name=contact.get("name"),
        phone=contact.get("phone"),
    ), None


def build_gateway(settings: Settings) -> PaymentGateway:
    if settings.payment_gateway == "mercadopago":
        return MercadoPagoGateway(settings.mp_access_token, api_url=settings.mp_api_url)
    return MockGateway(base_url=settings.backend_url)


def build_notifier(settings: Settings) -> Notifier:
    if settings.notifications_url:
        return HttpNotifier(settings.notifications_url)
    return LogNotifier()


def initialize_demo_catalog(db: DatabaseManager):
    """Create an example event so local demos have usable data."""
    with db.get_session() as session:
        if session.query(TicketType).count() > 0:
            logger.info("Catalog already present, skipping demo seed")
            return

    event_id = db.create_event("Demo Night", producer_id=1)
    db.add_seller("Box Office", seller_key="box-office", producer_id=1, is_default=True)
    ticket_type_id = db.create_ticket_type(event_id, "General", unit_price=15000,
                                           total_count=50, max_per_buyer=10)
    logger.info(f"Pre-initialized demo catalog: ticket type {ticket_type_id} (50 tickets)")


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[DatabaseManager] = None,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[Notifier] = None,
    clock: Callable = utc_now,
    start_sweeper: bool = True,
) -> Flask:
    settings = settings or load_settings()
    # One store handle per process, shared by every component.
    db = db or DatabaseManager(settings.database_url)
    gateway = gateway or build_gateway(settings)
    notifier = notifier or build_notifier(settings)

    engine = ReservationEngine(
        db, gateway, SellerDirectory(db),
        clock=clock,
        hold_ttl=timedelta(minutes=settings.reservation_ttl_minutes),
        currency=settings.currency,
        frontend_url=settings.frontend_url,
        backend_url=settings.backend_url,
    )
    reconciler = PaymentReconciler(db, notifier, clock=clock)
    sweeper = ExpirySweeper(db, clock=clock, interval_seconds=settings.sweep_interval_seconds)

    if settings.seed_demo:
        initialize_demo_catalog(db)

    app = Flask(__name__)
    CORS(app)

    if start_sweeper:
        sweeper.start()

        def shutdown():
            sweeper.stop()
            db.close()

        atexit.register(shutdown)

    @app.errorhandler(TicketingError)
    def handle_ticketing_error(error: TicketingError):
        return jsonify(error.to_dict()), http_status_for(error)

    @app.errorhandler(SQLAlchemyError)
    def handle_store_error(error: SQLAlchemyError):
        logger.error(f"Store error: {error}")
        return jsonify({"error": "store_unavailable"}), 500

    def process_payment_event(event_id: str):
        """Fetch the authoritative status from the gateway and reconcile it."""
        try:
            gateway_payment = gateway.fetch_payment_status(event_id)
        except ExternalGatewayError as e:
            logger.error(f"Could not fetch payment {event_id}: {e.message}")
            return jsonify({"ok": False, "error": e.code}), 502

        logger.info(f"Payment event {event_id}: status {gateway_payment.status}")
        result = reconciler.reconcile(
            gateway_payment.status,
            external_reference=gateway_payment.external_reference,
            preference_id=gateway_payment.preference_id,
            external_payment_id=gateway_payment.payment_id,
        )
        return jsonify(result.to_dict()), 200

    # API Endpoints

    @app.route('/ticket-types/<int:ticket_type_id>/checkout', methods=['POST'])
    def checkout(ticket_type_id):
        """Reserve tickets and return the gateway checkout URL."""
        data, error_response = require_json_object()
        if error_response:
            return error_response

        quantity = data.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            return bad_request("quantity must be a positive integer")

        buyer, buyer_error = parse_buyer(data)
        if buyer_error:
            return buyer_error

        seller_key = data.get("seller_key")
        if seller_key is not None and not isinstance(seller_key, str):
            return bad_request("seller_key must be a string")

        reservation = engine.reserve(ticket_type_id, quantity, buyer, seller_key=seller_key)
        logger.info(f"Checkout started: ticket_type={ticket_type_id}, payment_id={reservation.payment_id}")
        return jsonify(reservation.to_dict()), 201

    @app.route('/ticket-types/<int:ticket_type_id>/inventory', methods=['GET'])
    def get_inventory(ticket_type_id):
        """Return live per-state ticket counts."""
        inventory = db.get_inventory(ticket_type_id)
        if inventory is None:
            return jsonify({"error": "ticket type not found"}), 404
        return jsonify(inventory)

    @app.route('/payments/<payment_id>', methods=['GET'])
    def get_payment(payment_id):
        payment = db.get_payment(payment_id)
        if payment is None:
            return jsonify({"error": "payment not found"}), 404
        return jsonify({
            "payment_id": payment.id,
            "status": payment.status.value,
            "amount": payment.amount,
            "currency": payment.currency,
            "quantity": payment.quantity,
            "checkout_url": payment.checkout_url,
            "hold_expires_at": to_iso(payment.hold_expires_at),
            "failure_reason": payment.failure_reason,
        })

    @app.route('/webhooks/payments', methods=['POST'])
    @app.route('/webhooks/mercadopago', methods=['POST'])
    def payment_webhook():
        """Gateway notification: {type, eventId} or MercadoPago's {type, data: {id}}."""
        data = request.get_json(silent=True) or {}
        if not isinstance(data, dict):
            return bad_request("request body must be a JSON object")

        kind = data.get("type") or request.args.get("type")
        if kind != "payment":
            return jsonify({"ok": True, "ignored": True}), 200

        nested = data.get("data") if isinstance(data.get("data"), dict) else {}
        event_id = data.get("eventId") or nested.get("id") or request.args.get("data.id")
        if not event_id:
            return bad_request("missing payment event id")

        return process_payment_event(str(event_id))

    if isinstance(gateway, MockGateway):
        @app.route('/mockpay/<external_reference>', methods=['GET'])
        def mockpay_screen(external_reference):
            found = gateway.find_preference(external_reference)
            if found is None:
                return jsonify({"error": "preference not found"}), 404
            _, preference = found
            return jsonify({
                "external_reference": external_reference,
                "items": preference["items"],
                "expires_at": to_iso(preference["expires_at"]),
            })

        @app.route('/mockpay/<external_reference>', methods=['POST'])
        def mockpay_emit(external_reference):
            """Simulate the gateway settling a payment and notifying us."""
            data, error_response = require_json_object()
            if error_response:
                return error_response
            status = data.get("status")
            if not isinstance(status, str) or not status:
                return bad_request("status must be a non-empty string")

            event_id = gateway.simulate_payment(external_reference, status)
            return process_payment_event(event_id)

    @app.route('/reservations/sweep', methods=['POST'])
    def sweep_expired():
        """Release lapsed holds now instead of waiting for the next sweeper tick."""
        released = sweeper.sweep()
        return jsonify({"released": released})

    @app.route('/health', methods=['GET'])
    def health_check():
        """Expose database connectivity."""
        return jsonify(db.health_check())

    return app


if __name__ == '__main__':
    settings = load_settings()
    app = create_app(settings)

    logger.info(f"""
    ================================
    TICKET RESERVATION SERVICE
    ================================
    Gateway: {settings.payment_gateway}
    Hold TTL: {settings.reservation_ttl_minutes} min
    Sweep interval: {settings.sweep_interval_seconds}s
    ================================
    """)

    app.run(host="0.0.0.0", port=settings.port, debug=False, threaded=True)
