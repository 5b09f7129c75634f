"""
Geofence model: circular boundary a worker must be inside to check in.

Created by organization admins elsewhere; read-only to the attendance engine.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (Boolean, Column, DateTime, Float, ForeignKey, Integer,
                        String)

from app.db.base import Base


class Geofence(Base):
    __tablename__ = "geofences"

    id: str = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))  # type: ignore[assignment]
    organization_id: str = Column(  # type: ignore[assignment]
        String(36), ForeignKey("organizations.id"), nullable=False, index=True
    )
    name: str = Column(String(200), nullable=False)  # type: ignore[assignment]
    center_latitude: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    center_longitude: float | None = Column(Float, nullable=True)  # type: ignore[assignment]
    radius_meters: int | None = Column(Integer, nullable=True)  # type: ignore[assignment]
    active: bool = Column(Boolean, nullable=False, default=True, server_default="true")  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
