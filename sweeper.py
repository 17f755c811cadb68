"""Background release of reservations whose hold has lapsed."""

from datetime import datetime
from typing import Callable, Optional
import logging
import threading

from sqlalchemy.exc import SQLAlchemyError

from database_manager import DatabaseManager
from helpers import utc_now
from models import Ticket, TicketState

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = 5 * 60


class ExpirySweeper:
    """Returns lapsed reservations to the pool, once per tick on a daemon thread."""

    def __init__(self, db: DatabaseManager,
                 clock: Callable[[], datetime] = utc_now,
                 interval_seconds: float = SWEEP_INTERVAL_SECONDS):
        self.db = db
        self.clock = clock
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep(self) -> int:
        """Release every RESERVED ticket whose hold has lapsed; returns how many."""
        now = self.clock()
        with self.db.get_session() as session:
            # The UPDATE re-checks state itself, so a ticket sold a moment
            # earlier no longer matches and is left alone.
            released = session.query(Ticket).filter(
                Ticket.state == TicketState.RESERVED,
                Ticket.reserved_until < now,
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

        if released > 0:
            logger.info(f"Released {released} tickets with expired reservations")
        return released

    def tick(self) -> int:
        """One scheduled run; store errors are logged and left for the next tick."""
        try:
            released = self.sweep()
        except SQLAlchemyError as e:
            logger.error(f"Expiry sweep failed, retrying next tick: {e}")
            return 0

        try:
            lapsed = self.db.count_lapsed_pending_payments(self.clock())
        except SQLAlchemyError as e:
            logger.warning(f"Could not count lapsed pending payments: {e}")
            return released

        if lapsed:
            logger.warning(f"{lapsed} pending payment(s) have outlived their hold")
        return released

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="expiry-sweeper", daemon=True)
        self._thread.start()
        logger.info(f"Expiry sweeper started (every {self.interval_seconds}s)")

    def stop(self, timeout: Optional[float] = 5.0):
        """Signal the loop to terminate and wait for it."""
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info("Expiry sweeper stopped")

    def _run(self):
        while not self._stop.is_set():
            self.tick()
            self._stop.wait(self.interval_seconds)
