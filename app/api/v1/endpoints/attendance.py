"""
Attendance endpoints: QR validation, check-in (self-service & watch mode),
check-out, admin operations and event queries.

All routes take the organization from the ``X-Organization-Id`` header.
Rejections are raised as ``VerificationError`` subclasses and rendered by the
global handler.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.deps import (get_attendance_service, get_clock,
                             get_current_active_user, get_db, get_membership,
                             get_organization_id, require_org_admin)
from app.core.exceptions import InsufficientRole
from app.models.attendance_event import AttendanceStatus
from app.models.organization import Membership
from app.models.user import User
from app.schemas.attendance import (AbsenceRead, AttendanceEventRead,
                                    AttendanceReportResponse, CheckInRequest,
                                    CheckInResponse, CheckOutData,
                                    CheckOutRequest, CheckOutResponse,
                                    EventListResponse, LivenessRead,
                                    MarkAbsencesResponse, MatchedWorker,
                                    PaginationMeta, QrValidateRequest,
                                    QrValidateResponse, StatusUpdateRequest,
                                    StatusUpdateResponse, TodayEventResponse,
                                    WatchModeData, WatchModeResponse)
from app.services import attendance as attendance_service
from app.services.absences import sweep_absences
from app.services.attendance import AttendanceService
from app.services.schedules import (get_or_create_settings, local_work_date,
                                    resolve_timezone)

router = APIRouter(prefix="/attendance", tags=["attendance"])
logger = logging.getLogger(__name__)


# ── QR ──────────────────────────────────────────────────────────────
@router.post("/qr/validate", response_model=QrValidateResponse)
async def validate_qr(
    body: QrValidateRequest,
    membership: Membership = Depends(get_membership),
    service: AttendanceService = Depends(get_attendance_service),
    db: AsyncSession = Depends(get_db),
) -> QrValidateResponse:
    """Check a scanned location QR before the camera step."""
    geofence = await service.validate_location_token(db, membership.organization_id, body.qr_data)
    return QrValidateResponse(location_id=geofence.id, organization_id=geofence.organization_id)


# ── Check-in ────────────────────────────────────────────────────────
@router.post("/check-in", response_model=CheckInResponse, status_code=201)
async def check_in(
    body: CheckInRequest,
    organization_id: str = Depends(get_organization_id),
    current_user: User = Depends(get_current_active_user),
    service: AttendanceService = Depends(get_attendance_service),
    db: AsyncSession = Depends(get_db),
) -> CheckInResponse:
    """Self-service check-in: location QR + GPS + the caller's own face."""
    event = await service.check_in(
        db,
        current_user,
        organization_id,
        token=body.qr_data,
        image=body.image,
        latitude=body.latitude,
        longitude=body.longitude,
    )
    message = (
        "Attendance recorded successfully"
        if event.is_within_geofence
        else "Attendance recorded but flagged as out of bounds"
    )
    return CheckInResponse(message=message, data=AttendanceEventRead.model_validate(event))


@router.post("/watch-mode/check-in", response_model=WatchModeResponse, status_code=201)
async def watch_mode_check_in(
    body: CheckInRequest,
    organization_id: str = Depends(get_organization_id),
    current_user: User = Depends(get_current_active_user),
    service: AttendanceService = Depends(get_attendance_service),
    db: AsyncSession = Depends(get_db),
) -> WatchModeResponse:
    """Supervised check-in: the face identifies which worker is present."""
    result = await service.watch_mode_check_in(
        db,
        current_user,
        organization_id,
        token=body.qr_data,
        image=body.image,
        latitude=body.latitude,
        longitude=body.longitude,
    )
    message = (
        "Attendance recorded successfully in watch mode"
        if result.event.is_within_geofence
        else "Attendance recorded in watch mode but flagged as out of bounds"
    )
    return WatchModeResponse(
        message=message,
        data=WatchModeData(
            event=AttendanceEventRead.model_validate(result.event),
            user=MatchedWorker.model_validate(result.worker),
            similarity=result.similarity,
            liveness=LivenessRead.model_validate(result.liveness),
        ),
    )


# ── Check-out ───────────────────────────────────────────────────────
@router.post("/check-out", response_model=CheckOutResponse)
async def check_out(
    body: CheckOutRequest,
    organization_id: str = Depends(get_organization_id),
    current_user: User = Depends(get_current_active_user),
    service: AttendanceService = Depends(get_attendance_service),
    db: AsyncSession = Depends(get_db),
) -> CheckOutResponse:
    result = await service.check_out(
        db, current_user, organization_id, latitude=body.latitude, longitude=body.longitude
    )
    event = result.event
    return CheckOutResponse(
        data=CheckOutData(
            id=event.id,
            check_in=event.check_in,
            check_out=event.check_out,
            work_duration_minutes=result.work_duration_minutes,
            status=event.status,
            is_verified=event.is_verified,
            is_within_geofence=event.is_within_geofence,
            distance_to_geofence_m=event.distance_to_geofence_m,
        )
    )


# ── Admin ───────────────────────────────────────────────────────────
@router.post("/admin/mark-absences", response_model=MarkAbsencesResponse)
async def mark_absences(
    admin: Membership = Depends(require_org_admin),
    clock: Callable[[], datetime] = Depends(get_clock),
    db: AsyncSession = Depends(get_db),
) -> MarkAbsencesResponse:
    """Run the absence sweep for the organization now."""
    created = await sweep_absences(db, admin.organization_id, clock())
    return MarkAbsencesResponse(
        message=f"Marked {len(created)} user(s) as absent",
        count=len(created),
        absences=[AbsenceRead.model_validate(e) for e in created],
    )


@router.put("/admin/update-status/{event_id}", response_model=StatusUpdateResponse)
async def update_status(
    event_id: str,
    body: StatusUpdateRequest,
    admin: Membership = Depends(require_org_admin),
    service: AttendanceService = Depends(get_attendance_service),
    db: AsyncSession = Depends(get_db),
) -> StatusUpdateResponse:
    event = await service.override_status(
        db, admin, admin.organization_id, event_id, body.status, body.notes
    )
    return StatusUpdateResponse(data=AttendanceEventRead.model_validate(event))


# ── Queries ─────────────────────────────────────────────────────────
@router.get("/events", response_model=EventListResponse)
async def list_events(
    user_id: int | None = Query(default=None),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    status: AttendanceStatus | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    membership: Membership = Depends(get_membership),
    db: AsyncSession = Depends(get_db),
) -> EventListResponse:
    """Organization events, newest first.  Members only see their own."""
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")
    if not membership.is_elevated:
        if user_id is not None and user_id != membership.user_id:
            raise InsufficientRole("Members may only list their own attendance")
        user_id = membership.user_id

    events, total = await attendance_service.list_events(
        db,
        membership.organization_id,
        user_id=user_id,
        start_date=start_date,
        end_date=end_date,
        status=status,
        offset=(page - 1) * page_size,
        limit=page_size,
    )
    return EventListResponse(
        data=[AttendanceEventRead.model_validate(e) for e in events],
        pagination=PaginationMeta(
            page=page,
            page_size=page_size,
            total=total,
            total_pages=math.ceil(total / page_size) if total else 0,
        ),
    )


@router.get("/today/{user_id}", response_model=TodayEventResponse)
async def today_event(
    user_id: int,
    membership: Membership = Depends(get_membership),
    clock: Callable[[], datetime] = Depends(get_clock),
    db: AsyncSession = Depends(get_db),
) -> TodayEventResponse:
    """Latest event for the worker's current organization-local day."""
    if user_id != membership.user_id and not membership.is_elevated:
        raise InsufficientRole()

    org_settings = await get_or_create_settings(db, membership.organization_id)
    work_date = local_work_date(clock(), resolve_timezone(org_settings.timezone))
    event = await attendance_service.find_today_event(
        db, user_id, membership.organization_id, work_date
    )
    if event is None:
        raise HTTPException(status_code=404, detail="Today's attendance event not found")
    return TodayEventResponse(data=AttendanceEventRead.model_validate(event))


@router.get("/report", response_model=AttendanceReportResponse)
async def report(
    admin: Membership = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
) -> AttendanceReportResponse:
    """Events needing review: late, absent and out of bounds."""
    events = await attendance_service.flagged_events(db, admin.organization_id)
    return AttendanceReportResponse(
        flagged_count=len(events),
        flagged_events=[AttendanceEventRead.model_validate(e) for e in events],
    )
