"""
Transit service — body positions for a calendar date, no houses.

Transits are evaluated at 12:00 UTC of the date with the same ephemeris
gateway used for natal charts, so a sidereal transit uses the same
ayanamsa framing as a sidereal natal chart.

The snapshot is cached in Redis (key: transit:{frame}:{YYYY-MM-DD}) with
REDIS_TRANSIT_TTL, and also kept in an in-memory dict as fallback. All
users share the same transit for a given date and frame.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Optional

import redis
from pydantic import ValidationError

from app.models.chart import TransitSnapshot
from app.services.ephemeris_service import ALL_BODIES, positions
from app.services.errors import InvalidTimeError
from app.services.time_service import utc_to_julian_day
from config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

TRANSIT_HOUR_UTC = 12


# ─────────────────────────────────────────────
# Redis client (lazy-init)
# ─────────────────────────────────────────────

_redis_client: Optional[redis.Redis] = None


def get_redis() -> Optional[redis.Redis]:
    global _redis_client
    if _redis_client is None:
        try:
            _redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
            _redis_client.ping()
            logger.info("Redis connected successfully")
        except Exception as e:
            logger.warning(f"Redis not available: {e}. Transit will use in-memory cache only.")
            _redis_client = None
    return _redis_client


# ─────────────────────────────────────────────
# In-memory fallback
# ─────────────────────────────────────────────

_memory_transit_cache: Dict[str, TransitSnapshot] = {}


# ─────────────────────────────────────────────
# Computation
# ─────────────────────────────────────────────

def _utc_today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def compute_transit(date: str, ayanamsa: Optional[str] = None) -> TransitSnapshot:
    """
    Positions of every body (Ketu derived) at 12:00 UTC on `date`.

    Raises:
        InvalidTimeError: `date` is not YYYY-MM-DD.
        EphemerisError: oracle failure or out-of-range date.
    """
    try:
        day = datetime.strptime(date, "%Y-%m-%d")
    except (TypeError, ValueError) as e:
        raise InvalidTimeError(f"Invalid transit date {date!r}: {e}") from e

    instant = utc_to_julian_day(day.replace(hour=TRANSIT_HOUR_UTC, tzinfo=timezone.utc))
    result = positions(instant, ALL_BODIES, ayanamsa_name=ayanamsa or None)

    return TransitSnapshot(
        date=date,
        instant=instant,
        ayanamsa=result.ayanamsa,
        bodies=result.positions,
    )


# ─────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────

def get_transit(date: Optional[str] = None, ayanamsa: Optional[str] = None) -> TransitSnapshot:
    """
    Transit snapshot for `date` (default: today, UTC).

    Cache: Redis with REDIS_TRANSIT_TTL, in-memory fallback.
    """
    date_str = date or _utc_today()
    frame = (ayanamsa or "TROPICAL").strip().upper()
    cache_key = f"transit:{frame}:{date_str}"

    r = get_redis()
    if r:
        try:
            cached = r.get(cache_key)
            if cached:
                logger.debug(f"Transit cache HIT (Redis) for {cache_key}")
                return TransitSnapshot.model_validate_json(cached)
        except (redis.RedisError, ValidationError) as e:
            logger.warning(f"Redis read error: {e}")

    if cache_key in _memory_transit_cache:
        logger.debug(f"Transit cache HIT (memory) for {cache_key}")
        return _memory_transit_cache[cache_key]

    logger.info(f"Computing transit via Swiss Ephemeris for {date_str} ({frame})")
    snapshot = compute_transit(date_str, ayanamsa)

    if r:
        try:
            r.setex(cache_key, settings.REDIS_TRANSIT_TTL, snapshot.model_dump_json())
            logger.info(f"Transit cached in Redis: {cache_key}")
        except redis.RedisError as e:
            logger.warning(f"Redis write error: {e}")

    _memory_transit_cache[cache_key] = snapshot
    return snapshot
