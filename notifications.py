"""Purchase confirmation sinks. Delivery is best effort; callers never depend on the result."""

from abc import ABC, abstractmethod
from typing import Dict, List
import logging

import requests

logger = logging.getLogger(__name__)


class Notifier(ABC):
    @abstractmethod
    def send(self, buyer_contact: Dict, purchase_summary: Dict, redemption_codes: List[str]) -> None: ...


class LogNotifier(Notifier):
    """Logs confirmations instead of mailing them."""

    def send(self, buyer_contact, purchase_summary, redemption_codes):
        logger.info(
            f"Purchase confirmation for {buyer_contact.get('email') or buyer_contact.get('buyer_id')}: "
            f"{len(redemption_codes)} ticket(s) of {purchase_summary.get('ticket_type')}"
        )


class HttpNotifier(Notifier):
    """Hands the confirmation to a notification service over HTTP."""

    def __init__(self, url: str, timeout: float = 2.0):
        self.url = url.rstrip("/")
        self.timeout = timeout

    def send(self, buyer_contact, purchase_summary, redemption_codes):
        response = requests.post(
            f"{self.url}/send",
            json={
                "to": buyer_contact,
                "summary": purchase_summary,
                "codes": list(redemption_codes),
            },
            timeout=self.timeout,
        )
        response.raise_for_status()
