"""
Absence sweep: synthesise ``absent`` events for scheduled workers who never
checked in.

Safe to run repeatedly: a worker with any event for the local day is skipped.
Concurrent sweeps are not coordinated; the open-event unique index rejects a
second absence row and that worker is skipped.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.attendance_event import (AttendanceEvent, AttendanceSource,
                                         AttendanceStatus)
from app.services.schedules import (active_shifts_for_organization,
                                    ensure_utc, get_or_create_settings,
                                    local_time_instant, resolve_timezone)

logger = logging.getLogger(__name__)


async def _has_event(db: AsyncSession, user_id: int, organization_id: str, work_date: str) -> bool:
    result = await db.execute(
        select(AttendanceEvent.id)
        .where(
            AttendanceEvent.user_id == user_id,
            AttendanceEvent.organization_id == organization_id,
            AttendanceEvent.work_date == work_date,
        )
        .limit(1)
    )
    return result.first() is not None


async def sweep_absences(
    db: AsyncSession, organization_id: str, now: datetime
) -> list[AttendanceEvent]:
    """Mark every scheduled worker past start + grace with no event as absent.

    Returns the events created by this call.
    """
    now = ensure_utc(now)
    org_settings = await get_or_create_settings(db, organization_id)
    grace = timedelta(minutes=org_settings.grace_period_minutes)
    tz = resolve_timezone(org_settings.timezone)
    local_today = now.astimezone(tz).date()
    work_date = local_today.isoformat()

    # Plain values only: a rollback below expires every loaded instance.
    pending: list[tuple[int, str, str]] = []
    seen: set[int] = set()
    for assignment, shift in await active_shifts_for_organization(db, organization_id, now, tz):
        # Overlapping assignments: one absence per worker.
        if assignment.user_id in seen:
            continue
        seen.add(assignment.user_id)
        pending.append((assignment.user_id, shift.id, shift.start_time))

    created: list[AttendanceEvent] = []
    rolled_back = False
    for user_id, shift_id, start_time in pending:
        try:
            boundary = local_time_instant(start_time, local_today, tz) + grace
        except ValueError:
            logger.warning(
                "Absence sweep skipped user %s in %s: shift %s has invalid start time %r",
                user_id,
                organization_id,
                shift_id,
                start_time,
            )
            continue
        if now <= boundary:
            continue
        if await _has_event(db, user_id, organization_id, work_date):
            continue

        event = AttendanceEvent(
            user_id=user_id,
            organization_id=organization_id,
            shift_id=shift_id,
            work_date=work_date,
            check_in=now,
            check_out=None,
            status=AttendanceStatus.ABSENT,
            is_within_geofence=False,
            is_verified=False,
            spoof_flag=False,
            source=AttendanceSource.SYSTEM,
            notes=f"Auto-marked absent. Expected shift start: {start_time}",
        )
        db.add(event)
        try:
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            rolled_back = True
            logger.error(
                "Absence sweep skipped user %s in %s: %s",
                user_id,
                organization_id,
                exc,
            )
            continue
        await db.refresh(event)
        created.append(event)

    if rolled_back:
        for event in created:
            await db.refresh(event)

    logger.info(
        "Absence sweep for %s on %s: %d marked absent",
        organization_id,
        work_date,
        len(created),
    )
    return created
