"""
Ephemeris gateway — planetary positions from Swiss Ephemeris (pyswisseph).

pyswisseph is a single process-wide handle: the ephemeris path and the
sidereal mode are global. Every query therefore runs inside
`oracle_session()`, which serialises access with a lock, sets the mode for
the duration of the block and resets it on every exit path, so two requests
with different ayanamsas can never see each other's configuration.

Sidereal longitudes are tropical longitudes minus the ayanamsa value
resolved once per session, so all bodies and house angles of one chart
share the same offset.
"""
import logging
import math
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, NamedTuple, Optional, Sequence, Tuple

import swisseph as swe

from app.models.chart import Ayanamsa, BodyPosition
from app.services.errors import EphemerisError
from config import get_settings

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────
# Bodies
# ─────────────────────────────────────────────

BODIES: Dict[str, int] = {
    "Sun":     swe.SUN,
    "Moon":    swe.MOON,
    "Mercury": swe.MERCURY,
    "Venus":   swe.VENUS,
    "Mars":    swe.MARS,
    "Jupiter": swe.JUPITER,
    "Saturn":  swe.SATURN,
    "Uranus":  swe.URANUS,
    "Neptune": swe.NEPTUNE,
    "Pluto":   swe.PLUTO,
    "Rahu":    swe.MEAN_NODE,   # north lunar node
}

# derived body → body it is the antipode of
ANTIPODES: Dict[str, str] = {
    "Ketu": "Rahu",             # south lunar node
}

ALL_BODIES: Tuple[str, ...] = tuple(BODIES) + tuple(ANTIPODES)

# ─────────────────────────────────────────────
# Ayanamsas
# ─────────────────────────────────────────────

AYANAMSA_MODES: Dict[str, int] = {
    "LAHIRI":         swe.SIDM_LAHIRI,
    "RAMAN":          swe.SIDM_RAMAN,
    "KRISHNAMURTI":   swe.SIDM_KRISHNAMURTI,
    "FAGAN_BRADLEY":  swe.SIDM_FAGAN_BRADLEY,
    "YUKTESHWAR":     swe.SIDM_YUKTESHWAR,
}

DEFAULT_AYANAMSA = "LAHIRI"

_CALC_FLAGS = swe.FLG_SWIEPH | swe.FLG_SPEED

_oracle_lock = threading.Lock()


class UnsupportedAyanamsaError(EphemerisError, ValueError):
    """Ayanamsa name is not in AYANAMSA_MODES."""


class EphemerisResult(NamedTuple):
    positions: Dict[str, BodyPosition]
    ayanamsa: Optional[Ayanamsa]     # None → tropical


def ayanamsa_mode(name: str) -> int:
    try:
        return AYANAMSA_MODES[name.strip().upper()]
    except KeyError:
        raise UnsupportedAyanamsaError(
            f"Unsupported ayanamsa {name!r}; expected one of {sorted(AYANAMSA_MODES)}"
        ) from None


# ─────────────────────────────────────────────
# Oracle session
# ─────────────────────────────────────────────

class OracleSession:
    """
    Handle to the ephemeris while the session lock is held.

    Only valid inside the `oracle_session()` block that created it.
    """

    def __init__(self, ayanamsa_name: Optional[str] = None):
        self.ayanamsa_name = ayanamsa_name.strip().upper() if ayanamsa_name else None
        self._ayanamsa_cache: Dict[float, float] = {}

    @property
    def is_sidereal(self) -> bool:
        return self.ayanamsa_name is not None

    def check_instant(self, instant: float) -> None:
        settings = get_settings()
        if instant is None or not math.isfinite(instant):
            raise EphemerisError(f"Invalid instant: {instant!r}")
        if not settings.EPHEMERIS_MIN_JD <= instant <= settings.EPHEMERIS_MAX_JD:
            raise EphemerisError(
                f"Instant JD {instant} outside supported range "
                f"[{settings.EPHEMERIS_MIN_JD}, {settings.EPHEMERIS_MAX_JD}]"
            )

    def ayanamsa(self, instant: float) -> Optional[Ayanamsa]:
        """Resolved ayanamsa at `instant`, or None for a tropical session."""
        if not self.is_sidereal:
            return None
        self.check_instant(instant)
        if instant not in self._ayanamsa_cache:
            try:
                self._ayanamsa_cache[instant] = swe.get_ayanamsa_ut(instant)
            except swe.Error as e:
                raise EphemerisError(f"Ayanamsa {self.ayanamsa_name} failed at JD {instant}: {e}") from e
        return Ayanamsa(name=self.ayanamsa_name, value=self._ayanamsa_cache[instant])

    def calc(self, instant: float, body_id: int) -> Sequence[float]:
        """Raw tropical (lon, lat, dist, speed_lon, speed_lat, speed_dist)."""
        self.check_instant(instant)
        try:
            xx, _retflag = swe.calc_ut(instant, body_id, _CALC_FLAGS)
        except swe.Error as e:
            raise EphemerisError(f"Position for body {body_id} failed at JD {instant}: {e}") from e
        if len(xx) < 6 or not all(math.isfinite(v) for v in xx[:6]):
            raise EphemerisError(f"Oracle returned incomplete data for body {body_id}: {xx}")
        return xx

    def houses(
        self, instant: float, latitude: float, longitude: float, system_code: str,
    ) -> Tuple[Tuple[float, ...], Sequence[float]]:
        """Raw tropical (12 cusps, ascmc) for a house-system code."""
        self.check_instant(instant)
        try:
            cusps, ascmc = swe.houses_ex(instant, latitude, longitude, system_code.encode("ascii"))
        except swe.Error as e:
            raise EphemerisError(f"House calculation ({system_code}) failed at JD {instant}: {e}") from e
        # some builds return a leading unused element
        cusps = tuple(cusps[1:13]) if len(cusps) == 13 else tuple(cusps[:12])
        if len(cusps) != 12:
            raise EphemerisError(f"Oracle returned {len(cusps)} cusps for system {system_code}")
        return cusps, ascmc


@contextmanager
def oracle_session(ayanamsa_name: Optional[str] = None) -> Iterator[OracleSession]:
    """
    Scoped access to the ephemeris.

    Sets the ephemeris path and, for a sidereal session, the sidereal mode.
    The mode is reset to the library default and files are closed on exit,
    including when the block raises.
    """
    mode = ayanamsa_mode(ayanamsa_name) if ayanamsa_name else None
    settings = get_settings()
    with _oracle_lock:
        try:
            if settings.SWEPH_PATH:
                swe.set_ephe_path(settings.SWEPH_PATH)
            if mode is not None:
                swe.set_sid_mode(mode, 0, 0)
            yield OracleSession(ayanamsa_name)
        finally:
            swe.set_sid_mode(swe.SIDM_FAGAN_BRADLEY, 0, 0)
            swe.close()


# ─────────────────────────────────────────────
# Positions
# ─────────────────────────────────────────────

def antipode(position: BodyPosition) -> BodyPosition:
    """Point opposite `position`: longitude + 180°, negated latitude, same motion."""
    return BodyPosition(
        longitude=position.longitude + 180.0,
        latitude=-position.latitude,
        distance=position.distance,
        speed_longitude=position.speed_longitude,
        speed_latitude=-position.speed_latitude,
        speed_distance=position.speed_distance,
    )


def _to_position(xx: Sequence[float], offset: float) -> BodyPosition:
    return BodyPosition(
        longitude=xx[0] - offset,
        latitude=xx[1],
        distance=xx[2],
        speed_longitude=xx[3],
        speed_latitude=xx[4],
        speed_distance=xx[5],
    )


def compute_positions(
    session: OracleSession,
    instant: float,
    bodies: Optional[Iterable[str]] = None,
) -> EphemerisResult:
    """Positions for `bodies` (default: all) within an open session."""
    requested = list(bodies) if bodies is not None else list(ALL_BODIES)
    unknown = [b for b in requested if b not in BODIES and b not in ANTIPODES]
    if unknown:
        raise EphemerisError(f"Unknown bodies: {unknown}")

    ayanamsa = session.ayanamsa(instant)
    offset = ayanamsa.value if ayanamsa else 0.0

    # queried bodies, including the source of any requested antipode
    to_query = [b for b in BODIES if b in requested or any(
        ANTIPODES.get(r) == b for r in requested
    )]

    computed: Dict[str, BodyPosition] = {}
    for name in to_query:
        computed[name] = _to_position(session.calc(instant, BODIES[name]), offset)

    for name, source in ANTIPODES.items():
        if name in requested:
            computed[name] = antipode(computed[source])

    return EphemerisResult(
        positions={name: computed[name] for name in requested},
        ayanamsa=ayanamsa,
    )


def positions(
    instant: float,
    bodies: Optional[Iterable[str]] = None,
    sidereal: bool = False,
    ayanamsa_name: Optional[str] = None,
) -> EphemerisResult:
    """
    Body positions at `instant` (Julian Day, UT).

    sidereal=True without a name uses Lahiri. An ayanamsa name alone also
    selects sidereal framing.

    Raises:
        EphemerisError: unknown body, out-of-range instant or oracle failure.
    """
    name = ayanamsa_name or (DEFAULT_AYANAMSA if sidereal else None)
    with oracle_session(name) as session:
        result = compute_positions(session, instant, bodies)
    if result.ayanamsa:
        logger.debug(f"Positions at JD {instant:.6f} ({result.ayanamsa.name} {result.ayanamsa.value:.6f})")
    return result
