"""PayCrypt Price API FastAPI Application.

Serves cached, margin-inclusive USD/NGN crypto prices. Upstream providers are
only ever called by the background refresh scheduler.
"""

import logging
import sys
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .models import init_db, engine as default_engine, async_session_maker
from .models.database import create_engine_and_session_maker
from .routers import prices, database, health
from .services.config import config_service, ConfigValidationException, PriceSettings
from .services.engine import PriceEngine

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def load_settings() -> PriceSettings:
    """Load and validate the config file; exit on an invalid one."""
    try:
        config = config_service.load_and_validate()
        print("Configuration validated successfully")
    except ConfigValidationException as e:
        print(f"FATAL: {e}")
        print("Server cannot start with invalid configuration.")
        sys.exit(1)
    except OSError as e:
        print(f"WARNING: Could not load config file: {e}")
        print("Using default configuration")
        config = {}
    return PriceSettings.from_config(config)


def configure_logging() -> None:
    logging.basicConfig(
        level=config_service.get("logging.level", "INFO"),
        format=config_service.get("logging.format", DEFAULT_LOG_FORMAT),
    )


settings = load_settings()
configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Initialize database
    database_url = config_service.get("database.url")
    if database_url:
        db_engine, session_maker = create_engine_and_session_maker(database_url)
    else:
        db_engine, session_maker = default_engine, async_session_maker
    await init_db(db_engine)
    print("Database initialized")

    engine = PriceEngine(settings, session_maker=session_maker)
    app.state.price_engine = engine

    # Load durable cache and start the refresh scheduler
    loaded = await engine.start()
    if loaded:
        print(f"Loaded {loaded} token(s) from price cache database")
    else:
        print("Price cache database is empty - first refresh will fill it")
    print(f"Adding {settings.margin_ngn:g} NGN margin to all NGN prices")
    print(f"Providers: {', '.join(engine.fetcher.provider_names)}")

    yield

    print("Initiating graceful shutdown...")
    await engine.stop()
    print("Graceful shutdown complete")


app = FastAPI(
    title="PayCrypt Price API",
    description="Cached crypto prices in USD and NGN",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
    expose_headers=[
        "X-Price-Source",
        "X-Cache-Freshness",
        "X-Cache-Age-Seconds",
        "X-Emergency-Defaults",
        "X-Missing-Tokens",
        "X-Refresh",
        "Retry-After",
    ],
)

# Include routers
app.include_router(health.router, prefix="/api", tags=["Health"])
app.include_router(prices.router, prefix="/api", tags=["Prices"])
app.include_router(database.router, prefix="/database", tags=["Database"])


@app.get("/")
async def root():
    """Service description."""
    return {
        "name": "PayCrypt Price API",
        "description": "Persistent database storage with memory cache for reliability",
        "margin": f"+{settings.margin_ngn:g} NGN",
        "features": {
            "database_persistence": True,
            "memory_cache": True,
            "fresh_cache_seconds": settings.fresh_threshold_seconds,
            "stale_cache_seconds": settings.stale_threshold_seconds,
            "min_interval_between_calls_seconds": settings.min_request_interval_seconds,
            "providers": settings.provider_priority,
        },
        "usage": "/api/v3/simple/price?ids=tether,ethereum&vs_currencies=ngn,usd",
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "price_api.main:app",
        host=config_service.get("server.host", "0.0.0.0"),
        port=config_service.get("server.port", 3000),
        reload=config_service.get("server.debug", False),
    )
