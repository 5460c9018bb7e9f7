"""
House calculator — 12 cusps plus angles, and house placement of a longitude.

Quadrant systems take their cusps from the oracle. Whole-sign cusps are
rebuilt from the Ascendant's sign after any sidereal adjustment, so the
first house always starts at 0° of the rising sign in the chart's own frame.
"""
import logging
from typing import Dict, Optional

from app.models.chart import HouseFrame, normalize_degrees
from app.services.ephemeris_service import OracleSession, oracle_session
from app.services.errors import UnsupportedHouseSystemError

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────
# Constants
# ─────────────────────────────────────────────

HOUSE_SYSTEMS: Dict[str, str] = {
    "P": "Placidus",
    "K": "Koch",
    "R": "Regiomontanus",
    "C": "Campanus",
    "E": "Equal",
    "W": "Whole Sign",
}

WHOLE_SIGN = "W"

SIGNS_ORDER = [
    "Aries", "Taurus", "Gemini", "Cancer", "Leo", "Virgo",
    "Libra", "Scorpio", "Sagittarius", "Capricorn", "Aquarius", "Pisces",
]


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────

def sign_index(longitude: float) -> int:
    """0 = Aries … 11 = Pisces"""
    return int(normalize_degrees(longitude) // 30) % 12


def sign_name(longitude: float) -> str:
    return SIGNS_ORDER[sign_index(longitude)]


def validate_system(system: str) -> str:
    """Return the canonical one-letter code or raise UnsupportedHouseSystemError."""
    code = (system or "").strip().upper()
    if code not in HOUSE_SYSTEMS:
        raise UnsupportedHouseSystemError(
            f"Unsupported house system {system!r}; expected one of {sorted(HOUSE_SYSTEMS)}"
        )
    return code


def house_system_name(system: str) -> str:
    return HOUSE_SYSTEMS[validate_system(system)]


# ─────────────────────────────────────────────
# Cusps
# ─────────────────────────────────────────────

def compute_houses(
    session: OracleSession,
    instant: float,
    latitude: float,
    longitude: float,
    system: str,
    ayanamsa_value: float = 0.0,
) -> HouseFrame:
    """House frame within an open session. `ayanamsa_value` is subtracted from every angle except ARMC."""
    code = validate_system(system)
    cusps, ascmc = session.houses(instant, latitude, longitude, code)

    ascendant = normalize_degrees(ascmc[0] - ayanamsa_value)
    midheaven = normalize_degrees(ascmc[1] - ayanamsa_value)
    armc = ascmc[2]                 # sidereal time as an angle, frame independent
    vertex = normalize_degrees(ascmc[3] - ayanamsa_value)

    if code == WHOLE_SIGN:
        first = sign_index(ascendant) * 30.0
        frame_cusps = tuple(normalize_degrees(first + 30.0 * i) for i in range(12))
    else:
        frame_cusps = tuple(normalize_degrees(c - ayanamsa_value) for c in cusps)

    return HouseFrame(
        cusps=frame_cusps,
        ascendant=ascendant,
        midheaven=midheaven,
        armc=armc,
        vertex=vertex,
    )


def houses(
    instant: float,
    latitude: float,
    longitude: float,
    system: str,
    ayanamsa_name: Optional[str] = None,
) -> HouseFrame:
    """
    House frame for an observer at (latitude, longitude) at `instant`.

    Raises:
        UnsupportedHouseSystemError: `system` is not one of P, K, R, C, E, W.
        EphemerisError: oracle failure or out-of-range instant.
    """
    code = validate_system(system)
    with oracle_session(ayanamsa_name) as session:
        ayanamsa = session.ayanamsa(instant)
        return compute_houses(
            session, instant, latitude, longitude, code,
            ayanamsa_value=ayanamsa.value if ayanamsa else 0.0,
        )


# ─────────────────────────────────────────────
# Placement
# ─────────────────────────────────────────────

def _in_arc(value: float, start: float, end: float) -> bool:
    """value ∈ [start, end) walking forward on the circle."""
    if start <= end:
        return start <= value < end
    return value >= start or value < end


def house_for_longitude(longitude: float, frame: HouseFrame, system: str) -> int:
    """
    House number 1–12 holding `longitude`.

    Whole sign counts signs from the Ascendant's sign. Other systems walk
    the cusps pairwise with an inclusive lower bound. When the cusps are not
    monotonic (high latitudes) and no arc matches, the house of the nearest
    preceding cusp is used.
    """
    code = validate_system(system)
    lon = normalize_degrees(longitude)

    if code == WHOLE_SIGN:
        return ((sign_index(lon) - sign_index(frame.ascendant)) % 12) + 1

    cusps = frame.cusps
    for i in range(12):
        if _in_arc(lon, cusps[i], cusps[(i + 1) % 12]):
            return i + 1

    nearest = min(range(12), key=lambda i: (lon - cusps[i]) % 360.0)
    logger.warning(
        f"No cusp arc holds {lon:.6f} in system {code}; "
        f"using nearest preceding cusp → house {nearest + 1}"
    )
    return nearest + 1
