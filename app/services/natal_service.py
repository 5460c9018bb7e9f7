"""
Natal chart assembly.

Responsibilities:
- Resolve the birth moment to one instant (TimeResolver)
- Fetch body positions for that instant, Ketu derived from Rahu
- Compute the house frame for the same instant and ayanamsa
- Freeze everything into one ChartSnapshot, or fail as a whole
- Cache chart records in-memory (MongoDB is the durable copy)
"""
import logging
from typing import Dict, List, Optional

from app.models.chart import BirthInput, ChartRecord, ChartSnapshot, GeoTimeContext
from app.services import time_service
from app.services.ephemeris_service import ALL_BODIES, compute_positions, oracle_session
from app.services.errors import (
    ChartAssemblyError,
    EphemerisError,
    InvalidTimeError,
    UnsupportedHouseSystemError,
)
from app.services.house_service import compute_houses, house_for_longitude, sign_name, validate_system
from config import get_settings

logger = logging.getLogger(__name__)

# In-memory chart cache: chart_id → ChartRecord
_chart_cache: Dict[str, ChartRecord] = {}


# ─────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────

def assemble_chart(
    birth: BirthInput,
    geo: GeoTimeContext,
    house_system: Optional[str] = None,
    ayanamsa: Optional[str] = None,
) -> ChartSnapshot:
    """
    Build an immutable natal chart.

    Every position is computed from the one instant resolved in step 1, and
    bodies and houses share a single oracle session, so a sidereal chart
    uses one ayanamsa value throughout.

    Raises:
        ChartAssemblyError: any stage failed; `.stage` is "time", "ephemeris"
            or "houses" and the original error is `__cause__`.
    """
    settings = get_settings()

    # 1. Validate house system before doing any work
    try:
        system = validate_system(house_system or settings.DEFAULT_HOUSE_SYSTEM)
    except UnsupportedHouseSystemError as e:
        raise ChartAssemblyError("houses", e) from e

    # 2. Resolve instant
    try:
        instant = time_service.resolve(birth.birth_date, birth.birth_time, geo.timezone)
    except InvalidTimeError as e:
        raise ChartAssemblyError("time", e) from e

    # 3. Positions + houses in one session
    stage = "ephemeris"
    try:
        with oracle_session(ayanamsa or None) as session:
            result = compute_positions(session, instant, ALL_BODIES)
            stage = "houses"
            frame = compute_houses(
                session, instant, geo.latitude, geo.longitude, system,
                ayanamsa_value=result.ayanamsa.value if result.ayanamsa else 0.0,
            )
    except (EphemerisError, UnsupportedHouseSystemError) as e:
        raise ChartAssemblyError(stage, e) from e

    snapshot = ChartSnapshot(
        instant=instant,
        birth_date=birth.birth_date,
        birth_time=birth.birth_time,
        geo=geo,
        house_system=system,
        ayanamsa=result.ayanamsa,
        bodies=result.positions,
        houses=frame,
    )

    logger.info(
        f"Chart assembled: JD={instant:.6f}, system={system}, "
        f"frame={result.ayanamsa.name if result.ayanamsa else 'TROPICAL'}, "
        f"asc={frame.ascendant:.4f} ({sign_name(frame.ascendant)} rising), "
        f"retrograde={[b for b, p in result.positions.items() if p.is_retrograde]}"
    )
    return snapshot


def house_placements(snapshot: ChartSnapshot) -> Dict[str, int]:
    """body name → house number 1–12"""
    return {
        name: house_for_longitude(pos.longitude, snapshot.houses, snapshot.house_system)
        for name, pos in snapshot.bodies.items()
    }


def cache_chart_record(record: ChartRecord) -> None:
    _chart_cache[record.chart_id] = record


def get_cached_chart_record(chart_id: str) -> Optional[ChartRecord]:
    """Retrieve a chart record from the in-memory cache."""
    return _chart_cache.get(chart_id)


def cached_chart_records(user_id: str) -> List[ChartRecord]:
    return [r for r in _chart_cache.values() if r.user_id == user_id]


def evict_chart_record(chart_id: str) -> None:
    _chart_cache.pop(chart_id, None)
