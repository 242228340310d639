"""Fetch log model (append-only audit trail of upstream fetch campaigns)."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text

from .database import Base


class FetchLog(Base):
    """One row per fetch campaign outcome."""
    __tablename__ = "fetch_log"

    id = Column(Integer, primary_key=True, index=True)
    status = Column(String(30), nullable=False, index=True)  # success, rate_limited, error
    source = Column(String(50), nullable=True)  # provider that answered, if any
    reason = Column(String(30), nullable=False, default="timer")  # timer, kick, manual, retry
    tokens = Column(Text, nullable=True)
    token_count = Column(Integer, default=0)
    duration_ms = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f"<FetchLog(id={self.id}, status={self.status})>"
