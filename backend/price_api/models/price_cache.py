"""Durable price cache model."""

from datetime import datetime
from sqlalchemy import Column, String, Float, DateTime

from .database import Base


class PriceCacheEntry(Base):
    """Last known price of a token, one row per canonical token id."""
    __tablename__ = "price_cache"

    token_id = Column(String(100), primary_key=True)
    usd_price = Column(Float, nullable=True)
    ngn_price = Column(Float, nullable=True)  # margin-inclusive
    original_ngn = Column(Float, nullable=True)  # ngn_price before margin
    last_updated = Column(DateTime, default=datetime.utcnow, nullable=False)
    source = Column(String(50), nullable=False, default="coingecko")

    def __repr__(self):
        return f"<PriceCacheEntry(token_id={self.token_id}, source={self.source})>"
