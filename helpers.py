"""Small shared utilities: clock, identifiers, validation and formatting."""

import re
import secrets
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_redemption_code() -> str:
    """32 uppercase hex characters, printed as the ticket's QR payload."""
    return secrets.token_hex(16).upper()


def generate_reference() -> str:
    return secrets.token_hex(12)


def is_valid_email(email: Optional[str]) -> bool:
    """Loose shape check; deliverability is the notifier's problem."""
    if not email:
        return False
    email = email.strip()
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()
