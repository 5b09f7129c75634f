"""
AttendanceEvent model: the single authoritative record of a worker-day.

Created on check-in (or by the absence sweep), closed by check-out, and only
otherwise mutated by an admin status override.  Never deleted.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (Boolean, Column, DateTime, Enum, Float, ForeignKey,
                        Index, Integer, String, text)

from app.db.base import Base


class AttendanceStatus(str, enum.Enum):
    ON_TIME = "on_time"
    EARLY = "early"
    LATE = "late"
    ABSENT = "absent"
    OUT_OF_BOUNDS = "out_of_bounds"


class AttendanceSource(str, enum.Enum):
    QR_FACE = "qr_face"
    WATCH_MODE = "watch_mode"
    MANUAL = "manual"
    SYSTEM = "system"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class AttendanceEvent(Base):
    __tablename__ = "attendance_events"
    __table_args__ = (
        # At most one open (un-checked-out) event per worker, organization and local day.
        Index(
            "uq_attendance_open_per_day",
            "user_id",
            "organization_id",
            "work_date",
            unique=True,
            sqlite_where=text("check_out IS NULL"),
            postgresql_where=text("check_out IS NULL"),
        ),
        Index("ix_attendance_org_checkin", "organization_id", "check_in"),
    )

    id: str = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))  # type: ignore[assignment]
    user_id: int = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)  # type: ignore[assignment]
    organization_id: str = Column(  # type: ignore[assignment]
        String(36), ForeignKey("organizations.id"), nullable=False
    )
    location_id: str | None = Column(String(36), ForeignKey("geofences.id"), nullable=True)  # type: ignore[assignment]
    shift_id: str | None = Column(String(36), ForeignKey("shifts.id"), nullable=True)  # type: ignore[assignment]
    work_date: str = Column(String(10), nullable=False, index=True)  # type: ignore[assignment]  # YYYY-MM-DD, org-local
    check_in: datetime = Column(DateTime(timezone=True), nullable=False)  # type: ignore[assignment]
    check_out: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    status: AttendanceStatus = Column(  # type: ignore[assignment]
        Enum(
            AttendanceStatus,
            native_enum=False,
            length=20,
            values_callable=_enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    is_within_geofence: bool = Column(Boolean, nullable=False, default=True)  # type: ignore[assignment]
    is_verified: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    distance_to_geofence_m: int | None = Column(Integer, nullable=True)  # type: ignore[assignment]
    latitude: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    longitude: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    face_confidence: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    liveness_score: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    spoof_flag: bool = Column(Boolean, nullable=False, default=False)  # type: ignore[assignment]
    source: AttendanceSource = Column(  # type: ignore[assignment]
        Enum(
            AttendanceSource,
            native_enum=False,
            length=20,
            values_callable=_enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    notes: str | None = Column(String(1000), nullable=True)  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def is_open(self) -> bool:
        return self.check_out is None
