"""Seller identities a reservation can be attributed to."""

from dataclasses import dataclass
from typing import Optional

from database_manager import DatabaseManager
from models import Seller


@dataclass(frozen=True)
class SellerIdentity:
    id: int
    name: str
    producer_id: int


class SellerDirectory:
    """Looks sellers up by their public QR key or as a producer's default."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    def resolve_by_seller_key(self, key: str) -> Optional[SellerIdentity]:
        with self.db.get_session() as session:
            seller = session.query(Seller).filter(Seller.seller_key == key).first()
            return _identity(seller)

    def default_seller_for(self, producer_id: int) -> Optional[SellerIdentity]:
        with self.db.get_session() as session:
            seller = session.query(Seller).filter(
                Seller.producer_id == producer_id,
                Seller.is_default.is_(True),
            ).order_by(Seller.id).first()
            return _identity(seller)


def _identity(seller: Optional[Seller]) -> Optional[SellerIdentity]:
    if seller is None:
        return None
    return SellerIdentity(id=seller.id, name=seller.name, producer_id=seller.producer_id)
