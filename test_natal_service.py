import logging

import pytest
from pydantic import ValidationError

from app.models.chart import BirthInput, GeoTimeContext
from app.services import time_service
from app.services.ephemeris_service import ALL_BODIES, positions
from app.services.errors import (
    ChartAssemblyError,
    EphemerisError,
    InvalidTimeError,
    UnsupportedHouseSystemError,
)
from app.services.house_service import sign_name
from app.services.natal_service import assemble_chart, house_placements

BIRTH = BirthInput(
    name="Ada",
    birth_date="1990-07-21",
    birth_time="09:15",
    location="New York, NY",
)
NEW_YORK = GeoTimeContext(latitude=40.7128, longitude=-74.0060, timezone="America/New_York")


def test_assemble_tropical_chart():
    chart = assemble_chart(BIRTH, NEW_YORK, "P")

    assert chart.instant == time_service.resolve("1990-07-21", "09:15", "America/New_York")
    assert chart.house_system == "P"
    assert chart.ayanamsa is None
    assert not chart.is_sidereal
    assert set(chart.bodies) == set(ALL_BODIES)
    assert len(chart.houses.cusps) == 12
    for pos in chart.bodies.values():
        assert 0.0 <= pos.longitude < 360.0
        assert pos.is_retrograde == (pos.speed_longitude < 0)


def test_chart_positions_come_from_the_resolved_instant():
    chart = assemble_chart(BIRTH, NEW_YORK, "P")
    direct = positions(chart.instant, ["Sun", "Moon"]).positions
    assert chart.bodies["Sun"].longitude == direct["Sun"].longitude
    assert chart.bodies["Moon"].longitude == direct["Moon"].longitude


def test_ketu_opposes_rahu_in_chart():
    chart = assemble_chart(BIRTH, NEW_YORK, "W")
    rahu, ketu = chart.bodies["Rahu"], chart.bodies["Ketu"]
    assert ketu.longitude == pytest.approx((rahu.longitude + 180.0) % 360.0, abs=1e-9)
    assert ketu.latitude == -rahu.latitude


def test_sidereal_chart_shares_one_offset():
    tropical = assemble_chart(BIRTH, NEW_YORK, "P")
    sidereal = assemble_chart(BIRTH, NEW_YORK, "P", ayanamsa="LAHIRI")
    value = sidereal.ayanamsa.value

    assert sidereal.ayanamsa.name == "LAHIRI"
    assert sidereal.instant == tropical.instant
    for name in ("Sun", "Moon", "Jupiter"):
        shift = (tropical.bodies[name].longitude - sidereal.bodies[name].longitude) % 360.0
        assert shift == pytest.approx(value, abs=1e-9)
    assert (tropical.houses.ascendant - sidereal.houses.ascendant) % 360.0 == pytest.approx(value, abs=1e-6)


def test_snapshot_is_frozen():
    chart = assemble_chart(BIRTH, NEW_YORK, "P")
    with pytest.raises(ValidationError):
        chart.instant = 0.0


def test_house_placements_cover_every_body():
    chart = assemble_chart(BIRTH, NEW_YORK, "W")
    placements = house_placements(chart)
    assert set(placements) == set(ALL_BODIES)
    assert all(1 <= h <= 12 for h in placements.values())
    # Rahu and Ketu are six whole-sign houses apart
    assert (placements["Ketu"] - placements["Rahu"]) % 12 == 6


def test_unknown_timezone_fails_at_time_stage():
    geo = GeoTimeContext(latitude=40.7128, longitude=-74.0060, timezone="Atlantis/Capital")
    with pytest.raises(ChartAssemblyError) as exc_info:
        assemble_chart(BIRTH, geo, "P")
    assert exc_info.value.stage == "time"
    assert isinstance(exc_info.value.__cause__, InvalidTimeError)


def test_unsupported_house_system_fails_before_any_work():
    with pytest.raises(ChartAssemblyError) as exc_info:
        assemble_chart(BIRTH, NEW_YORK, "Z")
    assert exc_info.value.stage == "houses"
    assert isinstance(exc_info.value.__cause__, UnsupportedHouseSystemError)


def test_out_of_range_date_fails_at_ephemeris_stage():
    far_future = BirthInput(name="Zed", birth_date="9000-01-01", birth_time="12:00", location="Nowhere")
    with pytest.raises(ChartAssemblyError) as exc_info:
        assemble_chart(far_future, NEW_YORK, "P")
    assert exc_info.value.stage == "ephemeris"
    assert isinstance(exc_info.value.__cause__, EphemerisError)


def test_unsupported_ayanamsa_fails_at_ephemeris_stage():
    with pytest.raises(ChartAssemblyError) as exc_info:
        assemble_chart(BIRTH, NEW_YORK, "P", ayanamsa="BOGUS")
    assert exc_info.value.stage == "ephemeris"
    assert isinstance(exc_info.value.__cause__, ValueError)


def test_assembly_log_names_rising_sign(caplog):
    with caplog.at_level(logging.INFO, logger="app.services.natal_service"):
        chart = assemble_chart(BIRTH, NEW_YORK, "W")
    summary = [r.getMessage() for r in caplog.records if r.getMessage().startswith("Chart assembled")]
    assert len(summary) == 1
    assert f"({sign_name(chart.houses.ascendant)} rising)" in summary[0]
