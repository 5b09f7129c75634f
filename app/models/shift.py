"""
Shift & schedule assignment models.

``start_time`` / ``end_time`` are organization-local "HH:MM[:SS]" strings;
a shift whose end is not after its start wraps past midnight.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (JSON, Boolean, Column, DateTime, ForeignKey, Index,
                        Integer, String)
from sqlalchemy.orm import relationship

from app.db.base import Base

WEEKDAYS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


class Shift(Base):
    __tablename__ = "shifts"

    id: str = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))  # type: ignore[assignment]
    organization_id: str = Column(  # type: ignore[assignment]
        String(36), ForeignKey("organizations.id"), nullable=False, index=True
    )
    name: str = Column(String(100), nullable=False)  # type: ignore[assignment]
    start_time: str = Column(String(8), nullable=False)  # type: ignore[assignment]
    end_time: str = Column(String(8), nullable=False)  # type: ignore[assignment]
    days_of_week: list[str] = Column(JSON, nullable=False, default=list)  # type: ignore[assignment]
    break_minutes: int = Column(Integer, nullable=False, default=0)  # type: ignore[assignment]
    active: bool = Column(Boolean, nullable=False, default=True, server_default="true")  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )


class ScheduleAssignment(Base):
    __tablename__ = "schedule_assignments"
    __table_args__ = (
        Index("ix_schedule_org_effective", "organization_id", "effective_from"),
    )

    id: str = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))  # type: ignore[assignment]
    user_id: int = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)  # type: ignore[assignment]
    shift_id: str = Column(String(36), ForeignKey("shifts.id"), nullable=False)  # type: ignore[assignment]
    organization_id: str = Column(String(36), ForeignKey("organizations.id"), nullable=False)  # type: ignore[assignment]
    effective_from: datetime = Column(DateTime(timezone=True), nullable=False)  # type: ignore[assignment]
    effective_until: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    shift = relationship("Shift")
