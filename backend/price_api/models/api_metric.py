"""API call metric model."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text

from .database import Base


class ApiCallMetric(Base):
    """Outcome of a served price request."""
    __tablename__ = "api_metrics"

    id = Column(Integer, primary_key=True, index=True)
    endpoint = Column(String(100), nullable=False)
    status = Column(String(50), nullable=False, index=True)  # memory_cache_hit, database_hit, ...
    response_time_ms = Column(Integer, nullable=True)
    tokens_requested = Column(Text, nullable=True)

    timestamp = Column(DateTime, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f"<ApiCallMetric(endpoint={self.endpoint}, status={self.status})>"
