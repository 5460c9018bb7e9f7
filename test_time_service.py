import pytest

from app.services import time_service
from app.services.errors import InvalidTimeError


def test_resolve_is_deterministic():
    first = time_service.resolve("1990-07-21", "09:15", "America/New_York")
    for _ in range(5):
        assert time_service.resolve("1990-07-21", "09:15", "America/New_York") == first


def test_resolve_new_york_summer_birth():
    # 09:15 EDT = 13:15 UTC; JD 2448093.5 is 1990-07-21 00:00 UT
    jd = time_service.resolve("1990-07-21", "09:15", "America/New_York")
    assert jd == pytest.approx(2448093.5 + 13.25 / 24, abs=1e-4)


def test_to_utc_uses_offset_in_force_on_birth_date():
    summer = time_service.to_utc("1990-07-21", "09:15", "America/New_York")
    winter = time_service.to_utc("1990-01-21", "09:15", "America/New_York")
    assert (summer.hour, summer.minute) == (13, 15)
    assert (winter.hour, winter.minute) == (14, 15)


def test_repeated_hour_resolves_to_first_occurrence():
    # 01:30 happens twice on 2021-11-07 in New York; first one is EDT
    utc = time_service.to_utc("2021-11-07", "01:30", "America/New_York")
    assert (utc.hour, utc.minute) == (5, 30)


def test_skipped_hour_uses_offset_before_transition():
    # 02:30 never happens on 2021-03-14 in New York; read with EST
    utc = time_service.to_utc("2021-03-14", "02:30", "America/New_York")
    assert (utc.hour, utc.minute) == (7, 30)


def test_half_hour_zone():
    utc = time_service.to_utc("1985-08-15", "06:30", "Asia/Kolkata")
    assert (utc.day, utc.hour, utc.minute) == (15, 1, 0)


@pytest.mark.parametrize("timezone_id", ["Mars/Olympus_Mons", "", "Not A Zone"])
def test_unknown_timezone_raises(timezone_id):
    with pytest.raises(InvalidTimeError):
        time_service.resolve("1990-07-21", "09:15", timezone_id)


@pytest.mark.parametrize("date,time", [
    ("1990-13-01", "09:15"),
    ("1990-02-30", "09:15"),
    ("21/07/1990", "09:15"),
    ("1990-07-21", "25:00"),
    ("1990-07-21", "9am"),
])
def test_malformed_date_or_time_raises(date, time):
    with pytest.raises(InvalidTimeError):
        time_service.resolve(date, time, "UTC")


def test_invalid_time_error_is_a_value_error():
    with pytest.raises(ValueError):
        time_service.resolve("1990-07-21", "09:15", "Nowhere/Special")


@pytest.mark.parametrize("date,time", [
    ("1990-07-21", "9:15"),
    ("1990-7-21", "09:15"),
    ("1990-07-21", "09:15:00"),
    ("1990-07-21\n", "09:15"),
    (None, "09:15"),
])
def test_non_canonical_formats_are_rejected(date, time):
    with pytest.raises(InvalidTimeError):
        time_service.resolve(date, time, "UTC")
