"""
Organization settings endpoints: grace period, timezone and extra-hour cost.

One row per organization.  If no row exists, one is created with defaults on
first access.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.deps import get_db, get_membership, require_org_admin
from app.models.organization import Membership, OrganizationSettings
from app.schemas.settings import (OrganizationSettingsRead,
                                  OrganizationSettingsUpdate)
from app.services.schedules import get_or_create_settings

router = APIRouter(tags=["settings"])
logger = logging.getLogger(__name__)


@router.get("/settings", response_model=OrganizationSettingsRead)
async def get_settings(
    membership: Membership = Depends(get_membership),
    db: AsyncSession = Depends(get_db),
) -> OrganizationSettings:
    """Get the organization's attendance rules."""
    return await get_or_create_settings(db, membership.organization_id)


@router.put("/settings", response_model=OrganizationSettingsRead)
async def update_settings(
    body: OrganizationSettingsUpdate,
    admin: Membership = Depends(require_org_admin),
    db: AsyncSession = Depends(get_db),
) -> OrganizationSettings:
    """Update grace period, timezone or extra-hour cost."""
    org_settings = await get_or_create_settings(db, admin.organization_id)

    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    for field, value in changes.items():
        setattr(org_settings, field, value)

    await db.commit()
    await db.refresh(org_settings)
    logger.info("Settings for organization %s updated: %s", admin.organization_id, changes)
    return org_settings
