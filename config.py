"""Process settings read from the environment (and a local .env file)."""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    database_url: str = "sqlite:///tickets.db"
    reservation_ttl_minutes: int = 15
    sweep_interval_seconds: int = 300
    payment_gateway: str = "mock"
    mp_access_token: Optional[str] = None
    mp_api_url: str = "https://api.mercadopago.com"
    frontend_url: str = "http://localhost:3000"
    backend_url: str = "http://localhost:5000"
    currency: str = "ARS"
    notifications_url: Optional[str] = None
    seed_demo: bool = False
    port: int = 5000


def load_settings() -> Settings:
    load_dotenv()
    return Settings(
        database_url=os.getenv("DATABASE_URL", Settings.database_url),
        reservation_ttl_minutes=int(os.getenv("RESERVATION_TTL_MINUTES", "15")),
        sweep_interval_seconds=int(os.getenv("SWEEP_INTERVAL_SECONDS", "300")),
        payment_gateway=os.getenv("PAYMENT_GATEWAY", "mock").strip().lower(),
        mp_access_token=os.getenv("MP_ACCESS_TOKEN"),
        mp_api_url=os.getenv("MP_API_URL", Settings.mp_api_url),
        frontend_url=os.getenv("FRONTEND_URL", Settings.frontend_url).rstrip("/"),
        backend_url=os.getenv("BACKEND_URL", Settings.backend_url).rstrip("/"),
        currency=os.getenv("CURRENCY", "ARS"),
        notifications_url=os.getenv("NOTIFICATIONS_URL"),
        seed_demo=_env_bool("SEED_DEMO"),
        port=int(os.environ.get("PORT", 5000)),
    )
