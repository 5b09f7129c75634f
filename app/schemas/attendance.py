"""Pydantic schemas for check-in / check-out / attendance events."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator

from app.models.attendance_event import AttendanceSource, AttendanceStatus

# Coordinates arrive as numbers or numeric strings; parsing happens in the service.
Coordinate = float | str


def _as_utc(v: datetime | None) -> datetime | None:
    # SQLite hands back naive UTC values
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


# ── Requests ────────────────────────────────────────────────────────
class QrValidateRequest(BaseModel):
    qr_data: str = Field(min_length=1)


class CheckInRequest(BaseModel):
    qr_data: str = Field(min_length=1)
    image: str = Field(min_length=1, description="Base64 image, optionally a data: URL")
    latitude: Coordinate
    longitude: Coordinate


class CheckOutRequest(BaseModel):
    latitude: Coordinate
    longitude: Coordinate


class StatusUpdateRequest(BaseModel):
    status: AttendanceStatus
    notes: str | None = None

    @field_validator("notes")
    @classmethod
    def _notes(cls, v: str | None) -> str | None:
        if v is not None and len(v) > 1000:
            raise ValueError("Notes must not exceed 1000 characters")
        return v


# ── Events ──────────────────────────────────────────────────────────
class AttendanceEventRead(BaseModel):
    id: str
    user_id: int
    organization_id: str
    location_id: str | None
    shift_id: str | None
    work_date: str
    check_in: datetime
    check_out: datetime | None
    status: AttendanceStatus
    is_within_geofence: bool
    is_verified: bool
    distance_to_geofence_m: int | None
    latitude: float | None
    longitude: float | None
    face_confidence: float | None
    liveness_score: float | None
    spoof_flag: bool
    source: AttendanceSource
    notes: str | None
    created_at: datetime | None
    updated_at: datetime | None

    model_config = {"from_attributes": True}

    @field_validator("check_in", "check_out", "created_at", "updated_at")
    @classmethod
    def _utc(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)


class QrValidateResponse(BaseModel):
    success: bool = True
    message: str = "QR valid"
    location_id: str
    organization_id: str


class CheckInResponse(BaseModel):
    success: bool = True
    message: str
    data: AttendanceEventRead


# ── Watch mode ──────────────────────────────────────────────────────
class MatchedWorker(BaseModel):
    id: int
    email: str
    full_name: str | None

    model_config = {"from_attributes": True}


class LivenessRead(BaseModel):
    is_live: bool
    liveness_score: float
    spoof_flag: bool
    reasons: list[str]

    model_config = {"from_attributes": True}


class WatchModeData(BaseModel):
    event: AttendanceEventRead
    user: MatchedWorker
    similarity: float
    liveness: LivenessRead


class WatchModeResponse(BaseModel):
    success: bool = True
    message: str
    data: WatchModeData


# ── Check-out ───────────────────────────────────────────────────────
class CheckOutData(BaseModel):
    id: str
    check_in: datetime
    check_out: datetime
    work_duration_minutes: int
    status: AttendanceStatus
    is_verified: bool
    is_within_geofence: bool
    distance_to_geofence_m: int | None

    @field_validator("check_in", "check_out")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return _as_utc(v)


class CheckOutResponse(BaseModel):
    success: bool = True
    message: str = "Check-out recorded successfully"
    data: CheckOutData


# ── Admin ───────────────────────────────────────────────────────────
class AbsenceRead(BaseModel):
    id: str
    user_id: int
    shift_id: str | None
    notes: str | None

    model_config = {"from_attributes": True}


class MarkAbsencesResponse(BaseModel):
    success: bool = True
    message: str
    count: int
    absences: list[AbsenceRead]


class StatusUpdateResponse(BaseModel):
    success: bool = True
    message: str = "Attendance status updated successfully"
    data: AttendanceEventRead


# ── Listing / report ────────────────────────────────────────────────
class PaginationMeta(BaseModel):
    page: int
    page_size: int
    total: int
    total_pages: int


class EventListResponse(BaseModel):
    success: bool = True
    data: list[AttendanceEventRead]
    pagination: PaginationMeta


class TodayEventResponse(BaseModel):
    success: bool = True
    data: AttendanceEventRead


class AttendanceReportResponse(BaseModel):
    success: bool = True
    flagged_count: int
    flagged_events: list[AttendanceEventRead]


# ── Generic ────────────────────────────────────────────────────────
class HealthResponse(BaseModel):
    db: bool


class LogoutResponse(BaseModel):
    message: str
