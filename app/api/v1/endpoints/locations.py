"""
Location QR endpoints: issue the signed token printed at a geofence.

Admin-only.  The token is deterministic for a given secret, organization and
location, so re-printing a QR never invalidates an existing one.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.deps import get_codec, get_db, require_org_admin
from app.models.geofence import Geofence
from app.models.organization import Membership
from app.schemas.settings import LocationQrResponse
from app.services.qr import render_svg
from app.services.signed_token import SignedTokenCodec

router = APIRouter(prefix="/locations", tags=["locations"])
logger = logging.getLogger(__name__)


async def _organization_geofence(db: AsyncSession, organization_id: str, location_id: str) -> Geofence:
    result = await db.execute(
        select(Geofence).where(
            Geofence.id == location_id,
            Geofence.organization_id == organization_id,
        )
    )
    geofence = result.scalar_one_or_none()
    if geofence is None:
        raise HTTPException(status_code=404, detail="Location not found")
    return geofence


@router.get("/{location_id}/qr", response_model=LocationQrResponse)
async def location_qr(
    location_id: str,
    admin: Membership = Depends(require_org_admin),
    codec: SignedTokenCodec = Depends(get_codec),
    db: AsyncSession = Depends(get_db),
) -> LocationQrResponse:
    geofence = await _organization_geofence(db, admin.organization_id, location_id)
    return LocationQrResponse(
        location_id=geofence.id,
        organization_id=geofence.organization_id,
        name=geofence.name,
        qr_data=codec.sign_location(geofence.organization_id, geofence.id),
    )


@router.get("/{location_id}/qr.svg")
async def location_qr_svg(
    location_id: str,
    admin: Membership = Depends(require_org_admin),
    codec: SignedTokenCodec = Depends(get_codec),
    db: AsyncSession = Depends(get_db),
) -> Response:
    """The same token rendered as a printable SVG QR code."""
    geofence = await _organization_geofence(db, admin.organization_id, location_id)
    token = codec.sign_location(geofence.organization_id, geofence.id)
    logger.info("QR rendered for location %s by user %s", geofence.id, admin.user_id)
    return Response(
        content=render_svg(token),
        media_type="image/svg+xml",
        headers={"Content-Disposition": f'inline; filename="location-{geofence.id}.svg"'},
    )
