# Business Logic Services

from .config import (
    ConfigService,
    config_service,
    ConfigValidationException,
    ConfigValidationError,
    PriceSettings,
    ProviderSettings,
)
from .providers import (
    PriceProvider,
    Quote,
    PriceFetchError,
    ProviderUnavailable,
    MalformedResponse,
    RateLimited,
    NoValidTokens,
    CoinGeckoProvider,
    CoinCapProvider,
    BinanceProvider,
)
from .exchange_rate import ExchangeRateResolver
from .fetcher import (
    MultiSourceFetcher,
    FetchResult,
    FetchFailed,
    AllProvidersExhausted,
)
from .margin import (
    apply_margin,
    MarginedQuote,
    MarginAlreadyApplied,
)
from .cache_store import (
    CacheStore,
    CacheState,
    CacheRead,
    CacheTier,
    Freshness,
    PriceRecord,
)
from .audit_log import (
    AuditLogService,
    FetchLogEntry,
    ApiCallEntry,
)
from .scheduler import (
    RefreshScheduler,
    SchedulerState,
    KickResult,
)
from .price_server import (
    PriceReadService,
    PriceResult,
    ServiceUnavailable,
)
from .engine import (
    PriceEngine,
    get_price_engine,
)

__all__ = [
    # Config
    "ConfigService",
    "config_service",
    "ConfigValidationException",
    "ConfigValidationError",
    "PriceSettings",
    "ProviderSettings",
    # Providers
    "PriceProvider",
    "Quote",
    "PriceFetchError",
    "ProviderUnavailable",
    "MalformedResponse",
    "RateLimited",
    "NoValidTokens",
    "CoinGeckoProvider",
    "CoinCapProvider",
    "BinanceProvider",
    # Fetching
    "ExchangeRateResolver",
    "MultiSourceFetcher",
    "FetchResult",
    "FetchFailed",
    "AllProvidersExhausted",
    # Margin
    "apply_margin",
    "MarginedQuote",
    "MarginAlreadyApplied",
    # Cache
    "CacheStore",
    "CacheState",
    "CacheRead",
    "CacheTier",
    "Freshness",
    "PriceRecord",
    # Audit log
    "AuditLogService",
    "FetchLogEntry",
    "ApiCallEntry",
    # Scheduler
    "RefreshScheduler",
    "SchedulerState",
    "KickResult",
    # Read path
    "PriceReadService",
    "PriceResult",
    "ServiceUnavailable",
    # Engine
    "PriceEngine",
    "get_price_engine",
]
