"""
Pydantic models for birth data and computed chart snapshots.

Snapshots are frozen: a chart is computed once and stored verbatim. A
different house system or ayanamsa means a new snapshot, never a patch.
"""
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"   # "YYYY-MM-DD"
TIME_PATTERN = r"^\d{2}:\d{2}$"         # "HH:MM", 24h


def normalize_degrees(value: float) -> float:
    """Map any angle onto [0, 360)."""
    result = float(value) % 360.0
    # -1e-17 % 360 rounds to 360.0 in IEEE arithmetic
    if result >= 360.0:
        result = 0.0
    return result


class BirthInput(BaseModel):
    """Birth details as entered by the user. Location is free text."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, max_length=100)
    birth_date: str = Field(pattern=DATE_PATTERN)
    birth_time: str = Field(pattern=TIME_PATTERN)
    location: str = Field(min_length=1, max_length=255)
    gender: Optional[str] = Field(default=None, max_length=20)

    @field_validator("location")
    @classmethod
    def _location_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("location cannot be empty")
        return v


class GeoTimeContext(BaseModel):
    """Coordinates plus IANA timezone, as returned by the geolocation collaborator."""
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    timezone: str = Field(min_length=1)          # e.g. "America/New_York"
    formatted_address: Optional[str] = None


class BodyPosition(BaseModel):
    model_config = ConfigDict(frozen=True)

    longitude: float                 # ecliptic, [0, 360)
    latitude: float
    distance: float                  # AU
    speed_longitude: float           # degrees/day, negative → retrograde
    speed_latitude: float = 0.0
    speed_distance: float = 0.0

    @field_validator("longitude")
    @classmethod
    def _normalise_longitude(cls, v: float) -> float:
        return normalize_degrees(v)

    @computed_field
    @property
    def is_retrograde(self) -> bool:
        return self.speed_longitude < 0


class HouseFrame(BaseModel):
    model_config = ConfigDict(frozen=True)

    cusps: Tuple[float, ...] = Field(min_length=12, max_length=12)  # cusp i starts house i+1
    ascendant: float
    midheaven: float
    armc: float
    vertex: float

    @field_validator("cusps")
    @classmethod
    def _normalise_cusps(cls, v: Tuple[float, ...]) -> Tuple[float, ...]:
        return tuple(normalize_degrees(c) for c in v)

    @field_validator("ascendant", "midheaven", "armc", "vertex")
    @classmethod
    def _normalise_angle(cls, v: float) -> float:
        return normalize_degrees(v)


class Ayanamsa(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str       # "LAHIRI", "RAMAN", "KRISHNAMURTI"
    value: float    # degrees subtracted from tropical longitudes


class ChartSnapshot(BaseModel):
    """
    Immutable natal chart.

    Every position in one snapshot was computed from the same `instant`
    (Julian Day, UT) and, when sidereal, the same ayanamsa value.
    """
    model_config = ConfigDict(frozen=True)

    instant: float
    birth_date: str
    birth_time: str
    geo: GeoTimeContext
    house_system: str
    ayanamsa: Optional[Ayanamsa] = None
    bodies: Dict[str, BodyPosition]
    houses: HouseFrame
    computed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_sidereal(self) -> bool:
        return self.ayanamsa is not None


class TransitSnapshot(BaseModel):
    """Body positions for a date, no houses. Regenerated per report."""
    model_config = ConfigDict(frozen=True)

    date: str                   # "YYYY-MM-DD"
    instant: float
    ayanamsa: Optional[Ayanamsa] = None
    bodies: Dict[str, BodyPosition]


class ChartCreateRequest(BaseModel):
    """Request body for POST /charts"""
    user_id: str
    birth: BirthInput
    house_system: Optional[str] = None   # defaults to settings.DEFAULT_HOUSE_SYSTEM
    ayanamsa: Optional[str] = None       # None → settings.DEFAULT_AYANAMSA, "" → tropical


class ChartRecord(BaseModel):
    """Stored birth chart: who it belongs to plus the snapshot, persisted verbatim."""
    chart_id: str
    user_id: str
    name: str
    gender: Optional[str] = None
    location: str
    formatted_address: Optional[str] = None
    snapshot: ChartSnapshot
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
