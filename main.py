"""
AstroInsight — FastAPI Application

Architecture:
  - Natal charts: computed locally via pyswisseph, stored verbatim in MongoDB
  - Transits: computed locally per date and frame, cached in Redis
  - Insights: OpenAI chat models, premium → fallback to economical model
  - Usage: every model, geolocation and ephemeris call recorded in api_logs
  - Batch cron: monthly forecasts for premium users (optional)
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import get_settings
from app.services.transit_service import get_redis
from app.services.scheduler import start_scheduler, stop_scheduler
from app.services.usage_ledger import MongoUsageLedger, set_ledger
from app.api.routes import router

settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info("=" * 60)
    logger.info("AstroInsight starting...")
    logger.info("=" * 60)

    # 1. Ephemeris files
    if settings.SWEPH_PATH:
        logger.info(f"Swiss Ephemeris path: {settings.SWEPH_PATH}")
    else:
        logger.info("Swiss Ephemeris: no SWEPH_PATH, using built-in Moshier fallback")

    # 2. Verify Redis
    r = get_redis()
    if r:
        logger.info("Redis: connected")
    else:
        logger.warning("Redis: NOT available — transit will use in-memory fallback")

    # 3. MongoDB
    if settings.MONGODB_ENABLED:
        from app.db.mongodb import connect_to_mongo, is_connected
        await connect_to_mongo(settings.MONGODB_URI, settings.MONGODB_DB_NAME)
        if is_connected():
            set_ledger(MongoUsageLedger())
            logger.info("Usage ledger: MongoDB api_logs")
    else:
        logger.info("MongoDB: DISABLED (set MONGODB_ENABLED=True to enable)")

    if not settings.OPENAI_API_KEY:
        logger.error("OPENAI_API_KEY is not set. Insight generation will fail.")

    # 4. Monthly forecast scheduler
    if settings.MONTHLY_FORECAST_ENABLED:
        start_scheduler()
    else:
        logger.info("Monthly forecasts: DISABLED (set MONTHLY_FORECAST_ENABLED=True to enable)")

    logger.info("AstroInsight ready.")
    yield

    # ── Shutdown ──────────────────────────────────────────────────
    stop_scheduler()

    if settings.MONGODB_ENABLED:
        from app.db.mongodb import disconnect_from_mongo
        await disconnect_from_mongo()

    logger.info("AstroInsight shut down cleanly.")


app = FastAPI(
    title="AstroInsight",
    description=(
        "Natal chart calculation and AI astrological insights.\n\n"
        "**Charts**: pyswisseph (local, tropical or sidereal, P/K/R/C/E/W houses)\n"
        "**Insights**: OpenAI, tiered models with retry and fallback\n"
        "**Usage**: per-call token and cost ledger"
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(router, prefix="/api/v1")


@app.get("/")
async def root():
    return {
        "service": "AstroInsight",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/v1/health",
        "charts": "/api/v1/charts",
        "transit": "/api/v1/transit",
    }
