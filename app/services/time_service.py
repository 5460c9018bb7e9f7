"""
Time resolution: civil date + time + IANA zone → Julian Day (UT).

The civil time is read as wall-clock time in the given zone on that date,
so DST rules in force on the birth date apply. Ambiguous wall times (the
repeated hour when clocks fall back) resolve to the first occurrence;
non-existent wall times (the skipped hour when clocks spring forward) use
the offset in force before the transition.
"""
import logging
import re
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import swisseph as swe

from app.models.chart import DATE_PATTERN, TIME_PATTERN
from app.services.errors import InvalidTimeError

logger = logging.getLogger(__name__)


def to_utc(date: str, time: str, timezone_id: str) -> datetime:
    """Interpret "YYYY-MM-DD" + "HH:MM" as local time in `timezone_id`; return aware UTC datetime."""
    if not (isinstance(date, str) and re.fullmatch(DATE_PATTERN, date)):
        raise InvalidTimeError(f"Invalid birth date {date!r}; expected YYYY-MM-DD")
    if not (isinstance(time, str) and re.fullmatch(TIME_PATTERN, time)):
        raise InvalidTimeError(f"Invalid birth time {time!r}; expected HH:MM")
    try:
        local = datetime.strptime(f"{date} {time}", "%Y-%m-%d %H:%M")
    except (TypeError, ValueError) as e:
        raise InvalidTimeError(f"Invalid birth date/time {date!r} {time!r}: {e}") from e

    if not timezone_id:
        raise InvalidTimeError("Timezone id is required")
    try:
        zone = ZoneInfo(timezone_id)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidTimeError(f"Unknown timezone id: {timezone_id!r}") from e

    return local.replace(tzinfo=zone, fold=0).astimezone(timezone.utc)


def utc_to_julian_day(utc: datetime) -> float:
    """Aware UTC datetime → Julian Day on the UT scale."""
    try:
        _jd_et, jd_ut = swe.utc_to_jd(
            utc.year, utc.month, utc.day,
            utc.hour, utc.minute, utc.second + utc.microsecond / 1e6,
            swe.GREG_CAL,
        )
    except swe.Error as e:
        raise InvalidTimeError(f"Cannot convert {utc.isoformat()} to Julian Day: {e}") from e
    return jd_ut


def resolve(date: str, time: str, timezone_id: str) -> float:
    """
    Resolve a birth moment to an astronomical instant.

    Pure and deterministic: identical inputs always give the identical float.

    Raises:
        InvalidTimeError: malformed date/time or unrecognised timezone id.
    """
    utc = to_utc(date, time, timezone_id)
    jd_ut = utc_to_julian_day(utc)
    logger.debug(f"Resolved {date} {time} {timezone_id} → {utc.isoformat()} → JD {jd_ut:.6f}")
    return jd_ut
