"""Pydantic schemas for per-organization settings and location QR codes."""

from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator


class OrganizationSettingsRead(BaseModel):
    organization_id: str
    grace_period_minutes: int
    timezone: str
    extra_hour_cost: float
    updated_at: datetime | None

    model_config = {"from_attributes": True}


class OrganizationSettingsUpdate(BaseModel):
    grace_period_minutes: int | None = Field(default=None, ge=0, le=60)
    timezone: str | None = None
    extra_hour_cost: float | None = Field(default=None, ge=0)

    @field_validator("timezone")
    @classmethod
    def _timezone(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip()
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}") from None
        return v


class LocationQrResponse(BaseModel):
    location_id: str
    organization_id: str
    name: str
    qr_data: str
