"""
Attendance state machine.

Per worker and organization-local day an event goes ``NoEvent → Open →
Closed``.  The absence sweep may create an ``absent`` event directly, and an
organization admin may override the status of any event.

Every check in this module runs *before* the single insert/update at the end
of an operation, so a rejection never leaves a partial row behind.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.exceptions import (DuplicateCheckIn, EventNotFound,
                                 GeofenceMisconfigured,
                                 InsufficientRole, LocationNotAllowed,
                                 NoMatchingIdentity, NoOpenCheckIn, NotAMember)
from app.models.attendance_event import (AttendanceEvent, AttendanceSource,
                                         AttendanceStatus)
from app.models.geofence import Geofence
from app.models.organization import (Membership, Organization,
                                     OrganizationSettings)
from app.models.user import User
from app.services import geofence as geo
from app.services.biometrics import (BiometricVerifier, LivenessResult,
                                     decode_image)
from app.services.schedules import (calculate_attendance_status, ensure_utc,
                                    get_or_create_settings, local_work_date,
                                    resolve_timezone)
from app.services.signed_token import SignedTokenCodec

logger = logging.getLogger(__name__)

FLAGGED_STATUSES = (
    AttendanceStatus.LATE,
    AttendanceStatus.ABSENT,
    AttendanceStatus.OUT_OF_BOUNDS,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Lookups ─────────────────────────────────────────────────────────
async def find_membership(
    db: AsyncSession, user_id: int, organization_id: str
) -> Membership | None:
    result = await db.execute(
        select(Membership).where(
            Membership.user_id == user_id,
            Membership.organization_id == organization_id,
        )
    )
    return result.scalar_one_or_none()


async def require_membership(
    db: AsyncSession, user_id: int, organization_id: str
) -> Membership:
    membership = await find_membership(db, user_id, organization_id)
    if membership is None:
        logger.info("User %s is not a member of organization %s", user_id, organization_id)
        raise NotAMember()
    return membership


async def find_open_event(
    db: AsyncSession, user_id: int, organization_id: str, work_date: str
) -> AttendanceEvent | None:
    """The worker's un-checked-out event for a local day, absences included."""
    result = await db.execute(
        select(AttendanceEvent)
        .where(
            AttendanceEvent.user_id == user_id,
            AttendanceEvent.organization_id == organization_id,
            AttendanceEvent.work_date == work_date,
            AttendanceEvent.check_out.is_(None),
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_today_event(
    db: AsyncSession, user_id: int, organization_id: str, work_date: str
) -> AttendanceEvent | None:
    """Latest event of any status for the worker's local day."""
    result = await db.execute(
        select(AttendanceEvent)
        .where(
            AttendanceEvent.user_id == user_id,
            AttendanceEvent.organization_id == organization_id,
            AttendanceEvent.work_date == work_date,
        )
        .order_by(AttendanceEvent.check_in.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_events(
    db: AsyncSession,
    organization_id: str,
    *,
    user_id: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    status: AttendanceStatus | None = None,
    offset: int = 0,
    limit: int = 50,
) -> tuple[list[AttendanceEvent], int]:
    """Organization events, newest first.  Date bounds are inclusive local work days."""
    conditions: list[Any] = [AttendanceEvent.organization_id == organization_id]
    if user_id is not None:
        conditions.append(AttendanceEvent.user_id == user_id)
    if start_date is not None:
        conditions.append(AttendanceEvent.work_date >= start_date.isoformat())
    if end_date is not None:
        conditions.append(AttendanceEvent.work_date <= end_date.isoformat())
    if status is not None:
        conditions.append(AttendanceEvent.status == status)

    total = (
        await db.execute(select(func.count(AttendanceEvent.id)).where(*conditions))
    ).scalar() or 0
    rows = await db.execute(
        select(AttendanceEvent)
        .where(*conditions)
        .order_by(AttendanceEvent.check_in.desc(), AttendanceEvent.id)
        .offset(offset)
        .limit(limit)
    )
    return list(rows.scalars().all()), total


async def flagged_events(db: AsyncSession, organization_id: str) -> list[AttendanceEvent]:
    result = await db.execute(
        select(AttendanceEvent)
        .where(
            AttendanceEvent.organization_id == organization_id,
            AttendanceEvent.status.in_(FLAGGED_STATUSES),
        )
        .order_by(AttendanceEvent.check_in.desc())
    )
    return list(result.scalars().all())


# ── Results ─────────────────────────────────────────────────────────
@dataclass
class WatchModeResult:
    event: AttendanceEvent
    worker: User
    similarity: float
    liveness: LivenessResult


@dataclass
class CheckOutResult:
    event: AttendanceEvent
    work_duration_minutes: int


@dataclass
class _Verified:
    """Location-side outcome shared by both check-in modes."""

    geofence: Geofence
    latitude: float
    longitude: float
    check: geo.GeofenceCheck


# ── Service ─────────────────────────────────────────────────────────
class AttendanceService:
    def __init__(
        self,
        codec: SignedTokenCodec,
        verifier: BiometricVerifier,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.codec = codec
        self.verifier = verifier
        self.settings = settings
        self.clock = clock

    def _now(self) -> datetime:
        return ensure_utc(self.clock())

    # ── Location ────────────────────────────────────────────────────
    async def validate_location_token(
        self, db: AsyncSession, organization_id: str, token: str
    ) -> Geofence:
        """Resolve a scanned location token to an active geofence of the organization."""
        payload = self.codec.verify_location(token)
        if payload.organization_id != organization_id:
            logger.warning(
                "Location token for organization %s presented to %s",
                payload.organization_id,
                organization_id,
            )
            raise LocationNotAllowed("QR does not belong to this organization")

        result = await db.execute(
            select(Geofence).where(
                Geofence.id == payload.location_id,
                Geofence.organization_id == organization_id,
                Geofence.active.is_(True),
            )
        )
        geofence = result.scalar_one_or_none()
        if geofence is None:
            raise LocationNotAllowed()
        return geofence

    async def _verify_location(
        self,
        db: AsyncSession,
        organization_id: str,
        token: str,
        latitude: Any,
        longitude: Any,
    ) -> _Verified:
        geofence = await self.validate_location_token(db, organization_id, token)
        geo.ensure_configured(geofence)
        lat, lon = geo.parse_coordinates(latitude, longitude)
        check = geo.is_within(
            lat, lon, geofence, tolerance_meters=self.settings.GEOFENCE_TOLERANCE_METERS
        )
        if not check.within:
            logger.info(
                "Position %.6f,%.6f is %dm from geofence %s (radius %sm)",
                lat,
                lon,
                check.distance_meters,
                geofence.id,
                geofence.radius_meters,
            )
        return _Verified(geofence, lat, lon, check)

    async def _collection(self, db: AsyncSession, organization_id: str) -> str:
        organization = await db.get(Organization, organization_id)
        configured = organization.face_collection_id if organization else None
        return self.verifier.collection_for(organization_id, configured)

    # ── Check-in ────────────────────────────────────────────────────
    async def check_in(
        self,
        db: AsyncSession,
        user: User,
        organization_id: str,
        token: str,
        image: str,
        latitude: Any,
        longitude: Any,
    ) -> AttendanceEvent:
        """Self-service check-in: the caller's face must match the caller."""
        await require_membership(db, user.id, organization_id)
        verified = await self._verify_location(db, organization_id, token, latitude, longitude)

        org_settings = await get_or_create_settings(db, organization_id)
        tz = resolve_timezone(org_settings.timezone)
        now = self._now()
        work_date = local_work_date(now, tz)
        if await find_open_event(db, user.id, organization_id, work_date) is not None:
            raise DuplicateCheckIn()

        image_bytes = decode_image(image)
        collection = await self._collection(db, organization_id)
        match = await self.verifier.verify_identity(image_bytes, str(user.id), collection)
        liveness = await self.verifier.assess_liveness(image_bytes)

        event = await self._record_check_in(
            db,
            user_id=user.id,
            organization_id=organization_id,
            verified=verified,
            similarity=match.similarity,
            liveness=liveness,
            source=AttendanceSource.QR_FACE,
            now=now,
            work_date=work_date,
            org_settings=org_settings,
        )
        logger.info(
            "Check-in %s for user %s in %s: %s (similarity %.1f)",
            event.id,
            user.id,
            organization_id,
            event.status.value,
            match.similarity,
        )
        return event

    async def watch_mode_check_in(
        self,
        db: AsyncSession,
        supervisor: User,
        organization_id: str,
        token: str,
        image: str,
        latitude: Any,
        longitude: Any,
    ) -> WatchModeResult:
        """Supervised check-in: the face image decides *who* is checking in."""
        await require_membership(db, supervisor.id, organization_id)
        verified = await self._verify_location(db, organization_id, token, latitude, longitude)

        image_bytes = decode_image(image)
        collection = await self._collection(db, organization_id)
        match = await self.verifier.discover_identity(image_bytes, collection)

        worker = await self._user_for_external_id(db, match.external_id)
        if await find_membership(db, worker.id, organization_id) is None:
            raise NotAMember("Matched user is not part of this organization")

        org_settings = await get_or_create_settings(db, organization_id)
        tz = resolve_timezone(org_settings.timezone)
        now = self._now()
        work_date = local_work_date(now, tz)
        if await find_open_event(db, worker.id, organization_id, work_date) is not None:
            raise DuplicateCheckIn(
                f"{worker.full_name or worker.email} already has an active check-in today."
            )

        liveness = await self.verifier.assess_liveness(image_bytes)
        event = await self._record_check_in(
            db,
            user_id=worker.id,
            organization_id=organization_id,
            verified=verified,
            similarity=match.similarity,
            liveness=liveness,
            source=AttendanceSource.WATCH_MODE,
            now=now,
            work_date=work_date,
            org_settings=org_settings,
        )
        logger.info(
            "Watch-mode check-in %s for user %s by supervisor %s: %s",
            event.id,
            worker.id,
            supervisor.id,
            event.status.value,
        )
        return WatchModeResult(event, worker, match.similarity, liveness)

    async def _user_for_external_id(self, db: AsyncSession, external_id: str | None) -> User:
        try:
            user_id = int(external_id or "")
        except ValueError:
            raise NoMatchingIdentity("Matched user not found") from None
        worker = await db.get(User, user_id)
        if worker is None:
            raise NoMatchingIdentity("Matched user not found")
        return worker

    async def _record_check_in(
        self,
        db: AsyncSession,
        *,
        user_id: int,
        organization_id: str,
        verified: _Verified,
        similarity: float,
        liveness: LivenessResult,
        source: AttendanceSource,
        now: datetime,
        work_date: str,
        org_settings: OrganizationSettings,
    ) -> AttendanceEvent:
        decision = await calculate_attendance_status(
            db, user_id, organization_id, now, org_settings
        )
        status = decision.status
        notes = decision.notes
        if not verified.check.within:
            status = AttendanceStatus.OUT_OF_BOUNDS
            notes = (
                f"Check-in {verified.check.distance_meters}m from geofence "
                f"(radius: {verified.geofence.radius_meters}m). {decision.notes or ''}"
            ).strip()

        event = AttendanceEvent(
            user_id=user_id,
            organization_id=organization_id,
            location_id=verified.geofence.id,
            shift_id=decision.shift_id,
            work_date=work_date,
            check_in=now,
            check_out=None,
            status=status,
            is_within_geofence=verified.check.within,
            is_verified=True,
            distance_to_geofence_m=verified.check.distance_meters,
            latitude=verified.latitude,
            longitude=verified.longitude,
            face_confidence=similarity,
            liveness_score=liveness.liveness_score,
            spoof_flag=liveness.spoof_flag,
            source=source,
            notes=notes,
        )
        db.add(event)
        try:
            await db.commit()
        except IntegrityError:
            # A concurrent check-in won the open-event slot for this day.
            await db.rollback()
            logger.info("Concurrent duplicate check-in for user %s on %s", user_id, work_date)
            raise DuplicateCheckIn() from None
        await db.refresh(event)
        return event

    # ── Check-out ───────────────────────────────────────────────────
    async def check_out(
        self,
        db: AsyncSession,
        user: User,
        organization_id: str,
        latitude: Any,
        longitude: Any,
    ) -> CheckOutResult:
        await require_membership(db, user.id, organization_id)
        org_settings = await get_or_create_settings(db, organization_id)
        tz = resolve_timezone(org_settings.timezone)
        now = self._now()

        event = await find_open_event(db, user.id, organization_id, local_work_date(now, tz))
        if event is None or event.status == AttendanceStatus.ABSENT:
            raise NoOpenCheckIn()

        lat, lon = geo.parse_coordinates(latitude, longitude)

        within, distance = True, event.distance_to_geofence_m
        geofence = await db.get(Geofence, event.location_id) if event.location_id else None
        if geofence is not None:
            try:
                check = geo.is_within(
                    lat, lon, geofence, tolerance_meters=self.settings.GEOFENCE_TOLERANCE_METERS
                )
            except GeofenceMisconfigured:
                logger.warning("Geofence %s is no longer configured; check-out kept in bounds", geofence.id)
            else:
                within, distance = check.within, check.distance_meters

        check_in = ensure_utc(event.check_in)
        check_out = max(now, check_in)
        event.check_out = check_out
        event.is_within_geofence = within
        event.distance_to_geofence_m = distance
        event.updated_at = now
        await db.commit()
        await db.refresh(event)

        minutes = math.floor((check_out - check_in).total_seconds() / 60)
        logger.info("Check-out %s for user %s after %d min", event.id, user.id, minutes)
        return CheckOutResult(event, minutes)

    # ── Admin override ──────────────────────────────────────────────
    async def override_status(
        self,
        db: AsyncSession,
        actor: Membership,
        organization_id: str,
        event_id: str,
        status: AttendanceStatus,
        notes: str | None = None,
    ) -> AttendanceEvent:
        if actor.organization_id != organization_id or not actor.is_elevated:
            raise InsufficientRole()

        result = await db.execute(
            select(AttendanceEvent).where(
                AttendanceEvent.id == event_id,
                AttendanceEvent.organization_id == organization_id,
            )
        )
        event = result.scalar_one_or_none()
        if event is None:
            raise EventNotFound()

        previous = event.status
        event.status = AttendanceStatus(status)
        event.notes = notes
        event.updated_at = self._now()
        await db.commit()
        await db.refresh(event)
        logger.info(
            "Event %s status %s -> %s by user %s",
            event.id,
            previous.value,
            event.status.value,
            actor.user_id,
        )
        return event
