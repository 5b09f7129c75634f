"""Pydantic schemas for the authenticated user."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class UserRead(BaseModel):
    id: int
    email: str
    full_name: str | None
    is_active: bool
    created_at: datetime | None

    model_config = {"from_attributes": True}


class MembershipRead(BaseModel):
    organization_id: str
    role: str

    model_config = {"from_attributes": True}


class CurrentUserRead(UserRead):
    memberships: list[MembershipRead] = []
