"""
Chart serializer — renders chart and transit snapshots as tagged text for
the language model, and formats longitudes as sign/degree/minute/second.

The serializer never raises on bad input: it returns an <error> marker and
logs a warning, since its output feeds a tolerant text consumer. Callers
that need strict validation check `is_error_marker()`.
"""
import logging
import math
from typing import Any, List, Optional, Union
from xml.sax.saxutils import escape, quoteattr

from pydantic import ValidationError

from app.models.chart import ChartSnapshot, TransitSnapshot
from app.services.house_service import HOUSE_SYSTEMS, SIGNS_ORDER, house_for_longitude, house_system_name

logger = logging.getLogger(__name__)

CHART_ERROR_MARKER = "<error>Insufficient chart data provided</error>"
TRANSIT_ERROR_MARKER = "<error>Insufficient transit data provided</error>"

_ARCSEC_PER_SIGN = 30 * 3600
_ARCSEC_PER_CIRCLE = 360 * 3600


def format_longitude(degrees: Any) -> str:
    """
    15.5069 → '15° Aries 30\\' 24"'

    Degrees, minutes and seconds are truncated within the sign. Input is
    rounded to 1e-6 arc-second first, so L and L + 360k format identically.
    Non-numeric, NaN or infinite input gives "N/A".
    """
    if isinstance(degrees, bool) or not isinstance(degrees, (int, float)):
        return "N/A"
    if not math.isfinite(degrees):
        return "N/A"

    arcsec = round((float(degrees) % 360.0) * 3600.0, 6)
    total = int(math.floor(arcsec)) % _ARCSEC_PER_CIRCLE

    sign = total // _ARCSEC_PER_SIGN
    within = total % _ARCSEC_PER_SIGN
    deg, rest = divmod(within, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{deg}° {SIGNS_ORDER[sign]} {minutes:02d}' {seconds:02d}\""


def is_error_marker(text: str) -> bool:
    return text.startswith("<error>")


def _tag(indent: int, name: str, value: Any) -> str:
    return f"{'  ' * indent}<{name}>{escape(str(value))}</{name}>"


# ─────────────────────────────────────────────
# Birth chart
# ─────────────────────────────────────────────

def chart_to_xml(
    chart: Union[ChartSnapshot, dict, None],
    name: Optional[str] = None,
    gender: Optional[str] = None,
) -> str:
    """
    Render a natal chart as <birth_chart_details>.

    Accepts a snapshot or its dict form (e.g. a stored document). Missing
    bodies or houses give CHART_ERROR_MARKER.
    """
    snapshot = _coerce(chart, ChartSnapshot)
    if snapshot is None or not snapshot.bodies or snapshot.house_system not in HOUSE_SYSTEMS:
        logger.warning("Insufficient chart data for XML formatting.")
        return CHART_ERROR_MARKER

    geo = snapshot.geo
    houses = snapshot.houses
    lines: List[str] = ["<birth_chart_details>"]

    # Personal information
    lines.append("  <personal_information>")
    if name:
        lines.append(_tag(2, "name", name))
    lines.append(_tag(2, "birth_date", snapshot.birth_date))
    lines.append(_tag(2, "birth_time", snapshot.birth_time))
    lines.append("    <birth_location_details>")
    lines.append(_tag(3, "latitude", f"{geo.latitude:.4f}"))
    lines.append(_tag(3, "longitude", f"{geo.longitude:.4f}"))
    lines.append(_tag(3, "timezone", geo.timezone))
    lines.append("    </birth_location_details>")
    if gender:
        lines.append(_tag(2, "gender", gender))
    lines.append("  </personal_information>")

    # Astrological system
    lines.append("  <astrological_system>")
    lines.append(_tag(2, "house_system", house_system_name(snapshot.house_system)))
    if snapshot.ayanamsa:
        lines.append(_tag(2, "calculation_type", "Sidereal"))
        lines.append(_tag(2, "ayanamsa_name", snapshot.ayanamsa.name))
        lines.append(_tag(2, "ayanamsa_value", f"{snapshot.ayanamsa.value:.6f}"))
    else:
        lines.append(_tag(2, "calculation_type", "Tropical"))
    lines.append("  </astrological_system>")

    # Planetary positions
    lines.append("  <planetary_positions>")
    for body, pos in snapshot.bodies.items():
        house = house_for_longitude(pos.longitude, houses, snapshot.house_system)
        lines.append(f"    <planet name={quoteattr(body)}>")
        lines.append(_tag(3, "longitude_decimal", f"{pos.longitude:.6f}"))
        lines.append(_tag(3, "longitude_formatted", format_longitude(pos.longitude)))
        lines.append(_tag(3, "latitude_decimal", f"{pos.latitude:.6f}"))
        lines.append(_tag(3, "speed_longitude_per_day", f"{pos.speed_longitude:.6f}"))
        lines.append(_tag(3, "is_retrograde", str(pos.is_retrograde).lower()))
        lines.append(_tag(3, "house_placement", house))
        lines.append("    </planet>")
    lines.append("  </planetary_positions>")

    # House cusps
    lines.append("  <house_cusps>")
    lines.append(_tag(2, "ascendant_longitude_decimal", f"{houses.ascendant:.6f}"))
    lines.append(_tag(2, "ascendant_longitude_formatted", format_longitude(houses.ascendant)))
    lines.append(_tag(2, "midheaven_longitude_decimal", f"{houses.midheaven:.6f}"))
    lines.append(_tag(2, "midheaven_longitude_formatted", format_longitude(houses.midheaven)))
    for i, cusp in enumerate(houses.cusps, start=1):
        lines.append(f'    <house_cusp number="{i}">')
        lines.append(_tag(3, "longitude_decimal", f"{cusp:.6f}"))
        lines.append(_tag(3, "longitude_formatted", format_longitude(cusp)))
        lines.append("    </house_cusp>")
    lines.append("  </house_cusps>")

    lines.append("</birth_chart_details>")
    return "\n".join(lines)


# ─────────────────────────────────────────────
# Transits
# ─────────────────────────────────────────────

def transit_to_xml(transit: Union[TransitSnapshot, dict, None]) -> str:
    """Render a transit snapshot as <transit_details>. No houses, no personal data."""
    snapshot = _coerce(transit, TransitSnapshot)
    if snapshot is None or not snapshot.bodies or not snapshot.date:
        logger.warning("Insufficient transit data for XML formatting.")
        return TRANSIT_ERROR_MARKER

    lines: List[str] = ["<transit_details>"]
    lines.append(_tag(1, "transit_date", snapshot.date))
    if snapshot.ayanamsa:
        lines.append(_tag(1, "calculation_type", "Sidereal"))
        lines.append(_tag(1, "ayanamsa_name", snapshot.ayanamsa.name))
        lines.append(_tag(1, "ayanamsa_value", f"{snapshot.ayanamsa.value:.6f}"))
    lines.append("  <transiting_planets>")
    for body, pos in snapshot.bodies.items():
        lines.append(f"    <planet name={quoteattr(body)}>")
        lines.append(_tag(3, "longitude_decimal", f"{pos.longitude:.6f}"))
        lines.append(_tag(3, "longitude_formatted", format_longitude(pos.longitude)))
        lines.append(_tag(3, "speed_longitude_per_day", f"{pos.speed_longitude:.6f}"))
        lines.append(_tag(3, "is_retrograde", str(pos.is_retrograde).lower()))
        lines.append("    </planet>")
    lines.append("  </transiting_planets>")
    lines.append("</transit_details>")
    return "\n".join(lines)


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────

def _coerce(data, model):
    """Snapshot instance, dict → snapshot, anything else or invalid → None."""
    if isinstance(data, model):
        return data
    if not isinstance(data, dict):
        return None
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.debug(f"{model.__name__} validation failed: {e.error_count()} errors")
        return None
