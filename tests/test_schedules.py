"""Tests for shift resolution and early / on-time / late classification."""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from app.models.attendance_event import AttendanceStatus
from app.models.organization import OrganizationSettings
from app.models.shift import Shift
from app.services.schedules import (NO_SHIFT_NOTE, active_shift,
                                    active_shifts_for_organization,
                                    calculate_attendance_status,
                                    classify_status, get_or_create_settings,
                                    local_work_date, parse_time_of_day,
                                    resolve_timezone, shift_start_instant,
                                    weekday_name)
from tests.factories import add_shift, add_user

MX = ZoneInfo("America/Mexico_City")  # UTC-6 all year


def _local(y, m, d, hh, mm):
    return datetime(y, m, d, hh, mm, tzinfo=MX).astimezone(timezone.utc)


def _shift(start, end):
    return Shift(organization_id="org", name="s", start_time=start, end_time=end, days_of_week=[])


# ── Pure helpers ────────────────────────────────────────────────────
def test_parse_time_of_day():
    assert parse_time_of_day("09:00") == 540
    assert parse_time_of_day("22:30:30") == 22 * 60 + 30.5


@pytest.mark.parametrize("value", ["9", "25:00", "12:60", "aa:bb", "1:2:3:4"])
def test_parse_time_of_day_rejects_bad_values(value):
    with pytest.raises(ValueError):
        parse_time_of_day(value)


def test_invalid_timezone_falls_back_to_default():
    assert resolve_timezone("Mars/Olympus_Mons") == ZoneInfo("America/Mexico_City")
    assert resolve_timezone(None) == ZoneInfo("America/Mexico_City")
    assert resolve_timezone("Europe/Madrid") == ZoneInfo("Europe/Madrid")


def test_weekday_and_work_date_follow_local_calendar():
    # Tuesday 03:00 UTC is still Monday evening in Mexico City
    instant = datetime(2026, 3, 3, 3, 0, tzinfo=timezone.utc)
    assert weekday_name(instant, MX) == "monday"
    assert local_work_date(instant, MX) == "2026-03-02"
    assert weekday_name(instant, ZoneInfo("UTC")) == "tuesday"


def test_shift_start_instant_is_utc():
    start = shift_start_instant(_shift("09:00:00", "17:00:00"), date(2026, 3, 2), MX)
    assert start == datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


# ── Classification ──────────────────────────────────────────────────
@pytest.mark.parametrize(
    "hh, mm, expected",
    [
        (8, 54, AttendanceStatus.EARLY),
        (8, 55, AttendanceStatus.ON_TIME),
        (9, 0, AttendanceStatus.ON_TIME),
        (9, 4, AttendanceStatus.ON_TIME),
        (9, 5, AttendanceStatus.ON_TIME),
        (9, 7, AttendanceStatus.LATE),
        (11, 0, AttendanceStatus.LATE),
    ],
)
def test_day_shift_grace_boundaries(hh, mm, expected):
    shift = _shift("09:00:00", "17:00:00")
    assert classify_status(_local(2026, 3, 2, hh, mm), shift, 5, MX) == expected


def test_overnight_shift_early_arrival_before_start():
    shift = _shift("22:00", "06:00")
    assert classify_status(_local(2026, 3, 2, 21, 40), shift, 5, MX) == AttendanceStatus.EARLY


def test_overnight_shift_on_time_around_start():
    shift = _shift("22:00", "06:00")
    assert classify_status(_local(2026, 3, 2, 22, 3), shift, 5, MX) == AttendanceStatus.ON_TIME
    assert classify_status(_local(2026, 3, 2, 21, 56), shift, 5, MX) == AttendanceStatus.ON_TIME


def test_overnight_shift_after_midnight_is_measured_from_previous_start():
    # 01:00 belongs to the shift that began at 22:00: three hours in, not 21 hours early
    shift = _shift("22:00", "06:00")
    assert classify_status(_local(2026, 3, 3, 1, 0), shift, 5, MX) == AttendanceStatus.LATE
    assert classify_status(_local(2026, 3, 3, 1, 0), shift, 240, MX) == AttendanceStatus.ON_TIME


@pytest.mark.parametrize(
    "day, hh, mm, expected",
    [
        (2, 15, 0, AttendanceStatus.EARLY),  # afternoon before the night shift
        (2, 21, 54, AttendanceStatus.EARLY),
        (2, 21, 55, AttendanceStatus.ON_TIME),
        (2, 22, 5, AttendanceStatus.ON_TIME),
        (2, 22, 6, AttendanceStatus.LATE),
        (3, 5, 59, AttendanceStatus.LATE),  # still inside last night's shift
    ],
)
def test_overnight_shift_only_wraps_after_midnight_part(day, hh, mm, expected):
    shift = _shift("22:00", "06:00")
    assert classify_status(_local(2026, 3, day, hh, mm), shift, 5, MX) == expected


def test_zero_grace_is_strict():
    shift = _shift("09:00", "17:00")
    assert classify_status(_local(2026, 3, 2, 9, 0), shift, 0, MX) == AttendanceStatus.ON_TIME
    assert classify_status(_local(2026, 3, 2, 9, 1), shift, 0, MX) == AttendanceStatus.LATE


# ── Resolution against the database ─────────────────────────────────
async def test_active_shift_filters_by_local_weekday(db_session, world):
    await add_shift(db_session, world.org_id, world.worker.id, days=["monday"])
    monday_evening_local = datetime(2026, 3, 3, 3, 0, tzinfo=timezone.utc)
    assert await active_shift(db_session, world.worker.id, world.org_id, monday_evening_local, MX)
    tuesday_local = datetime(2026, 3, 3, 15, 0, tzinfo=timezone.utc)
    assert await active_shift(db_session, world.worker.id, world.org_id, tuesday_local, MX) is None


async def test_active_shift_respects_effective_window(db_session, world):
    await add_shift(
        db_session,
        world.org_id,
        world.worker.id,
        effective_from=datetime(2026, 3, 5, tzinfo=timezone.utc),
    )
    assert await active_shift(db_session, world.worker.id, world.org_id, _local(2026, 3, 2, 9, 0), MX) is None
    assert await active_shift(db_session, world.worker.id, world.org_id, _local(2026, 3, 6, 9, 0), MX)


async def test_expired_assignment_is_ignored(db_session, world):
    await add_shift(
        db_session,
        world.org_id,
        world.worker.id,
        effective_until=datetime(2026, 2, 1, tzinfo=timezone.utc),
    )
    assert await active_shift(db_session, world.worker.id, world.org_id, _local(2026, 3, 2, 9, 0), MX) is None


async def test_inactive_shift_is_ignored(db_session, world):
    shift = await add_shift(db_session, world.org_id, world.worker.id)
    shift.active = False
    await db_session.commit()
    assert await active_shift(db_session, world.worker.id, world.org_id, _local(2026, 3, 2, 9, 0), MX) is None


async def test_overlapping_assignments_first_created_wins(db_session, world):
    first = await add_shift(db_session, world.org_id, world.worker.id, start="08:00:00")
    await add_shift(db_session, world.org_id, world.worker.id, start="10:00:00")
    found = await active_shift(db_session, world.worker.id, world.org_id, _local(2026, 3, 2, 9, 0), MX)
    assert found.id == first.id


async def test_shift_in_other_organization_is_ignored(db_session, world):
    await add_shift(db_session, "other-org", world.worker.id)
    assert await active_shift(db_session, world.worker.id, world.org_id, _local(2026, 3, 2, 9, 0), MX) is None


async def test_organization_wide_resolution(db_session, world):
    other = await add_user(db_session, "second@acme.test")
    await add_shift(db_session, world.org_id, world.worker.id)
    await add_shift(db_session, world.org_id, other.id, days=["tuesday"])
    rows = await active_shifts_for_organization(db_session, world.org_id, _local(2026, 3, 2, 9, 0), MX)
    assert [assignment.user_id for assignment, _shift in rows] == [world.worker.id]


async def test_no_shift_defaults_to_on_time_with_note(db_session, world):
    org_settings = await get_or_create_settings(db_session, world.org_id)
    decision = await calculate_attendance_status(
        db_session, world.worker.id, world.org_id, _local(2026, 3, 2, 23, 0), org_settings
    )
    assert decision.status == AttendanceStatus.ON_TIME
    assert decision.shift_id is None
    assert decision.notes == NO_SHIFT_NOTE


async def test_settings_are_created_lazily_with_defaults(db_session):
    from app.models.organization import Organization

    org = Organization(name="Fresh")
    db_session.add(org)
    await db_session.commit()

    created = await get_or_create_settings(db_session, org.id)
    again = await get_or_create_settings(db_session, org.id)
    assert isinstance(created, OrganizationSettings)
    assert created.id == again.id
    assert created.grace_period_minutes == 5
    assert created.timezone == "America/Mexico_City"
    assert created.extra_hour_cost == 0.0
