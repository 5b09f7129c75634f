"""
Shift schedule resolution and check-in status classification.

All weekday and time-of-day arithmetic happens in the organization's own
timezone; instants are stored and compared in UTC.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings as app_settings
from app.models.attendance_event import AttendanceStatus
from app.models.organization import OrganizationSettings
from app.models.shift import WEEKDAYS, ScheduleAssignment, Shift

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60
NO_SHIFT_NOTE = "No shift assigned for this day"


# ── Time helpers ────────────────────────────────────────────────────
def ensure_utc(dt: datetime) -> datetime:
    """Normalise a potentially-naive timestamp (SQLite drops tzinfo) to UTC-aware."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def resolve_timezone(name: str | None) -> ZoneInfo:
    candidate = (name or "").strip()
    if candidate:
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r, falling back to %s", candidate, app_settings.DEFAULT_TIMEZONE)
    return ZoneInfo(app_settings.DEFAULT_TIMEZONE)


def weekday_name(instant: datetime, tz: ZoneInfo) -> str:
    return WEEKDAYS[ensure_utc(instant).astimezone(tz).weekday()]


def local_work_date(instant: datetime, tz: ZoneInfo) -> str:
    """Organization-local calendar day of *instant* as ``YYYY-MM-DD``."""
    return ensure_utc(instant).astimezone(tz).date().isoformat()


def _split_time(value: str) -> tuple[int, int, int]:
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid time of day: {value!r}")
    try:
        hours, minutes = int(parts[0]), int(parts[1])
        seconds = int(parts[2]) if len(parts) == 3 else 0
    except ValueError:
        raise ValueError(f"Invalid time of day: {value!r}") from None
    if not (0 <= hours < 24 and 0 <= minutes < 60 and 0 <= seconds < 60):
        raise ValueError(f"Invalid time of day: {value!r}")
    return hours, minutes, seconds


def parse_time_of_day(value: str) -> float:
    """``"HH:MM[:SS]"`` → minutes since midnight."""
    hours, minutes, seconds = _split_time(value)
    return hours * 60 + minutes + seconds / 60


def _local_minutes(instant: datetime, tz: ZoneInfo) -> float:
    local = ensure_utc(instant).astimezone(tz)
    return local.hour * 60 + local.minute + local.second / 60


def local_time_instant(time_of_day: str, local_day: date, tz: ZoneInfo) -> datetime:
    """UTC instant of a ``"HH:MM[:SS]"`` wall-clock time on a local calendar day."""
    hours, minutes, seconds = _split_time(time_of_day)
    local = datetime.combine(local_day, time(hours, minutes, seconds), tzinfo=tz)
    return local.astimezone(timezone.utc)


def shift_start_instant(shift: Shift, local_day: date, tz: ZoneInfo) -> datetime:
    """UTC instant at which *shift* starts on the given local calendar day."""
    return local_time_instant(shift.start_time, local_day, tz)


# ── Resolution ──────────────────────────────────────────────────────
def _effective_assignments(instant: datetime):
    instant = ensure_utc(instant)
    return (
        select(ScheduleAssignment, Shift)
        .join(Shift, ScheduleAssignment.shift_id == Shift.id)
        .where(
            ScheduleAssignment.effective_from <= instant,
            or_(
                ScheduleAssignment.effective_until.is_(None),
                ScheduleAssignment.effective_until >= instant,
            ),
            Shift.active.is_(True),
        )
        .order_by(ScheduleAssignment.created_at, ScheduleAssignment.id)
    )


def _covers(shift: Shift, weekday: str) -> bool:
    return weekday in {d.lower() for d in (shift.days_of_week or [])}


async def active_shift(
    db: AsyncSession,
    user_id: int,
    organization_id: str,
    instant: datetime,
    tz: ZoneInfo,
) -> Shift | None:
    """The worker's shift covering the local weekday of *instant*.

    Overlapping assignments are tolerated: the oldest matching one wins.
    """
    stmt = _effective_assignments(instant).where(
        ScheduleAssignment.user_id == user_id,
        ScheduleAssignment.organization_id == organization_id,
    )
    rows = (await db.execute(stmt)).all()
    weekday = weekday_name(instant, tz)
    matching = [shift for _assignment, shift in rows if _covers(shift, weekday)]
    if len(matching) > 1:
        logger.warning(
            "User %s has %d overlapping shifts on %s; using %s",
            user_id,
            len(matching),
            weekday,
            matching[0].id,
        )
    return matching[0] if matching else None


async def active_shifts_for_organization(
    db: AsyncSession,
    organization_id: str,
    instant: datetime,
    tz: ZoneInfo,
) -> list[tuple[ScheduleAssignment, Shift]]:
    stmt = _effective_assignments(instant).where(
        ScheduleAssignment.organization_id == organization_id,
    )
    rows = (await db.execute(stmt)).all()
    weekday = weekday_name(instant, tz)
    return [(assignment, shift) for assignment, shift in rows if _covers(shift, weekday)]


# ── Classification ──────────────────────────────────────────────────
def classify_status(
    check_in: datetime,
    shift: Shift,
    grace_period_minutes: int,
    tz: ZoneInfo,
) -> AttendanceStatus:
    """early / on_time / late relative to the shift start, in local minutes.

    For an overnight shift (end ≤ start) an arrival before the end time
    belongs to the shift that began the previous evening.
    """
    start = parse_time_of_day(shift.start_time)
    end = parse_time_of_day(shift.end_time)
    arrived = _local_minutes(check_in, tz)

    if end <= start and arrived < end:
        arrived += MINUTES_PER_DAY

    delta = arrived - start
    if delta < -grace_period_minutes:
        return AttendanceStatus.EARLY
    if delta <= grace_period_minutes:
        return AttendanceStatus.ON_TIME
    return AttendanceStatus.LATE


@dataclass(frozen=True)
class StatusDecision:
    status: AttendanceStatus
    shift_id: str | None
    notes: str | None


async def calculate_attendance_status(
    db: AsyncSession,
    user_id: int,
    organization_id: str,
    check_in: datetime,
    org_settings: OrganizationSettings,
) -> StatusDecision:
    tz = resolve_timezone(org_settings.timezone)
    shift = await active_shift(db, user_id, organization_id, check_in, tz)
    if shift is None:
        return StatusDecision(AttendanceStatus.ON_TIME, None, NO_SHIFT_NOTE)
    status = classify_status(check_in, shift, org_settings.grace_period_minutes, tz)
    return StatusDecision(status, shift.id, None)


# ── Organization settings ───────────────────────────────────────────
async def get_organization_settings(
    db: AsyncSession, organization_id: str
) -> OrganizationSettings | None:
    result = await db.execute(
        select(OrganizationSettings).where(OrganizationSettings.organization_id == organization_id)
    )
    return result.scalar_one_or_none()


async def get_or_create_settings(db: AsyncSession, organization_id: str) -> OrganizationSettings:
    """Fetch the organization's settings row, creating it with defaults if absent."""
    existing = await get_organization_settings(db, organization_id)
    if existing is not None:
        return existing

    row = OrganizationSettings(
        organization_id=organization_id,
        grace_period_minutes=app_settings.DEFAULT_GRACE_PERIOD_MINUTES,
        extra_hour_cost=0.0,
        timezone=app_settings.DEFAULT_TIMEZONE,
    )
    db.add(row)
    try:
        await db.commit()
    except IntegrityError:
        # Another request created it first.
        await db.rollback()
        existing = await get_organization_settings(db, organization_id)
        if existing is None:
            raise
        return existing
    await db.refresh(row)
    logger.info("Created default settings for organization %s", organization_id)
    return row
