# Database Models

from .database import Base, engine, async_session_maker, init_db
from .price_cache import PriceCacheEntry
from .fetch_log import FetchLog
from .api_metric import ApiCallMetric

__all__ = [
    "Base",
    "engine",
    "async_session_maker",
    "init_db",
    "PriceCacheEntry",
    "FetchLog",
    "ApiCallMetric",
]
