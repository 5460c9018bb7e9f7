"""
Geo service: resolve a free-text birth location to coordinates + IANA timezone.

Uses the Google Geocoding and Time Zone web services. Lookups are cached
in-process (TTLCache), and every call that reaches Google is recorded in
the usage ledger. The HTTP client is synchronous; async callers go through
`resolve_location()`, which runs it in a worker thread.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

import requests
from cachetools import TTLCache

from app.models.chart import GeoTimeContext
from app.models.insight import UsageRecord
from app.services.errors import GeoLookupError
from app.services.usage_ledger import UsageLedger, get_ledger
from config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

GEO_SERVICE = "GoogleMaps"

# location / coordinates → result, shared by all users
GEOCODE_CACHE: TTLCache = TTLCache(maxsize=5000, ttl=settings.GEO_CACHE_TTL)
TIMEZONE_CACHE: TTLCache = TTLCache(maxsize=5000, ttl=settings.GEO_CACHE_TTL)


class GoogleMapsClient:
    """Google Maps web-service client (sync only)"""

    BASE_URL = "https://maps.googleapis.com/maps/api"

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[int] = None):
        self.api_key = api_key if api_key is not None else settings.GOOGLE_MAPS_API_KEY
        self.timeout = timeout or settings.GEO_REQUEST_TIMEOUT

    def _fetch(self, endpoint: str, params: Dict) -> Dict:
        if not self.api_key:
            raise GeoLookupError("Geolocation service is unavailable: GOOGLE_MAPS_API_KEY is not set")
        url = f"{self.BASE_URL}/{endpoint}/json"
        try:
            response = requests.get(url, params={**params, "key": self.api_key}, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as e:
            raise GeoLookupError(f"{endpoint} request failed: {e}") from e

    def geocode(self, address: str) -> Dict:
        """address → {latitude, longitude, formatted_address, place_id}"""
        data = self._fetch("geocode", {"address": address})
        if data.get("status") != "OK" or not data.get("results"):
            raise GeoLookupError(
                f"Could not find location {address!r}: {data.get('error_message') or data.get('status')}"
            )
        first = data["results"][0]
        location = first["geometry"]["location"]
        return {
            "latitude": float(location["lat"]),
            "longitude": float(location["lng"]),
            "formatted_address": first.get("formatted_address"),
            "place_id": first.get("place_id"),
        }

    def timezone(self, latitude: float, longitude: float, timestamp: int) -> Dict:
        """coordinates → {time_zone_id, time_zone_name}"""
        data = self._fetch("timezone", {"location": f"{latitude},{longitude}", "timestamp": timestamp})
        if data.get("status") != "OK" or not data.get("timeZoneId"):
            raise GeoLookupError(
                f"Could not determine timezone for {latitude},{longitude}: "
                f"{data.get('errorMessage') or data.get('status')}"
            )
        return {"time_zone_id": data["timeZoneId"], "time_zone_name": data.get("timeZoneName")}


# Singleton
google_maps = GoogleMapsClient()


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────

def _lookup_timestamp(birth_date: Optional[str]) -> int:
    """Noon UTC on the birth date; dates before 1970 use the epoch."""
    if not birth_date:
        return int(datetime.now(timezone.utc).timestamp())
    try:
        day = datetime.strptime(birth_date, "%Y-%m-%d").replace(hour=12, tzinfo=timezone.utc)
    except ValueError:
        return 0
    return max(int(day.timestamp()), 0)


async def _call(
    ledger: UsageLedger, user_id: Optional[str], endpoint: str, request: Dict, func, *args,
) -> Dict:
    """Run a blocking client call in a thread and record the outcome."""
    try:
        result = await asyncio.to_thread(func, *args)
    except GeoLookupError as e:
        logger.warning(f"Geo {endpoint} failed for {request}: {e}")
        await ledger.record(UsageRecord(
            user_id=user_id, service=GEO_SERVICE, endpoint=endpoint,
            success=False, error_message=str(e), request_payload=request,
        ))
        raise
    await ledger.record(UsageRecord(
        user_id=user_id, service=GEO_SERVICE, endpoint=endpoint,
        success=True, request_payload=request, response_payload=result,
    ))
    return result


# ─────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────

async def resolve_location(
    location: str,
    birth_date: Optional[str] = None,
    user_id: Optional[str] = None,
    client: Optional[GoogleMapsClient] = None,
    ledger: Optional[UsageLedger] = None,
) -> GeoTimeContext:
    """
    Convert a free-text location to a GeoTimeContext.

    Raises:
        GeoLookupError: no geocoding result, no timezone, or the service failed.
    """
    client = client or google_maps
    ledger = ledger or get_ledger()

    if not location or not location.strip():
        raise GeoLookupError("Location cannot be empty")
    location_key = location.strip().lower()

    geo = GEOCODE_CACHE.get(location_key)
    if geo is None:
        geo = await _call(ledger, user_id, "geocode", {"address": location}, client.geocode, location)
        GEOCODE_CACHE[location_key] = geo
    else:
        logger.debug(f"Geocode cache HIT for '{location_key}'")

    tz_key: Tuple[float, float] = (round(geo["latitude"], 4), round(geo["longitude"], 4))
    tz = TIMEZONE_CACHE.get(tz_key)
    if tz is None:
        timestamp = _lookup_timestamp(birth_date)
        tz = await _call(
            ledger, user_id, "timezone",
            {"location": f"{geo['latitude']},{geo['longitude']}", "timestamp": timestamp},
            client.timezone, geo["latitude"], geo["longitude"], timestamp,
        )
        TIMEZONE_CACHE[tz_key] = tz

    context = GeoTimeContext(
        latitude=geo["latitude"],
        longitude=geo["longitude"],
        timezone=tz["time_zone_id"],
        formatted_address=geo.get("formatted_address"),
    )
    logger.info(
        f"Resolved '{location}' → lat={context.latitude}, lon={context.longitude}, tz={context.timezone}"
    )
    return context
