"""Tests for the absence sweep and its interaction with check-in / check-out."""

from datetime import datetime, timezone

from httpx import AsyncClient
from sqlalchemy import select

from app.models.attendance_event import (AttendanceEvent, AttendanceSource,
                                         AttendanceStatus)
from app.services import absences as absences_module
from app.services.absences import sweep_absences
from app.services.biometrics import FaceMatch
from tests.factories import (IMAGE_B64, OFFICE_LAT, OFFICE_LON, add_shift,
                             add_user, auth_headers)

# Monday 2026-03-02 in Mexico City (UTC-6)
AT_DEADLINE = datetime(2026, 3, 2, 15, 5, tzinfo=timezone.utc)  # 09:05 local
PAST_DEADLINE = datetime(2026, 3, 2, 15, 6, tzinfo=timezone.utc)  # 09:06 local


async def _events(db_session) -> list[AttendanceEvent]:
    result = await db_session.execute(select(AttendanceEvent))
    return list(result.scalars().all())


async def test_worker_past_grace_is_marked_absent(db_session, world):
    shift = await add_shift(db_session, world.org_id, world.worker.id)

    created = await sweep_absences(db_session, world.org_id, PAST_DEADLINE)

    assert len(created) == 1
    event = created[0]
    assert event.user_id == world.worker.id
    assert event.status == AttendanceStatus.ABSENT
    assert event.source == AttendanceSource.SYSTEM
    assert event.shift_id == shift.id
    assert event.work_date == "2026-03-02"
    assert event.check_out is None
    assert event.is_verified is False
    assert event.notes == "Auto-marked absent. Expected shift start: 09:00:00"


async def test_grace_deadline_itself_is_not_absent(db_session, world):
    await add_shift(db_session, world.org_id, world.worker.id)
    assert await sweep_absences(db_session, world.org_id, AT_DEADLINE) == []


async def test_sweep_is_idempotent(db_session, world):
    await add_shift(db_session, world.org_id, world.worker.id)

    first = await sweep_absences(db_session, world.org_id, PAST_DEADLINE)
    second = await sweep_absences(db_session, world.org_id, PAST_DEADLINE.replace(hour=20))

    assert len(first) == 1
    assert second == []
    assert len(await _events(db_session)) == 1


async def test_worker_who_checked_in_is_skipped(db_session, world):
    await add_shift(db_session, world.org_id, world.worker.id)
    db_session.add(
        AttendanceEvent(
            user_id=world.worker.id,
            organization_id=world.org_id,
            location_id=world.office.id,
            work_date="2026-03-02",
            check_in=datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc),
            check_out=datetime(2026, 3, 2, 15, 3, tzinfo=timezone.utc),
            status=AttendanceStatus.ON_TIME,
            is_within_geofence=True,
            is_verified=True,
            source=AttendanceSource.QR_FACE,
        )
    )
    await db_session.commit()

    # Even a closed event for the day counts
    assert await sweep_absences(db_session, world.org_id, PAST_DEADLINE) == []


async def test_overlapping_assignments_give_one_absence(db_session, world):
    await add_shift(db_session, world.org_id, world.worker.id, start="08:00:00")
    await add_shift(db_session, world.org_id, world.worker.id, start="08:30:00")

    created = await sweep_absences(db_session, world.org_id, PAST_DEADLINE)
    assert [e.user_id for e in created] == [world.worker.id]
    assert created[0].notes.endswith("08:00:00")


async def test_only_workers_scheduled_today_are_swept(db_session, world):
    tuesday_only = await add_user(db_session, "tuesday@acme.test")
    await add_shift(db_session, world.org_id, world.worker.id)
    await add_shift(db_session, world.org_id, tuesday_only.id, days=["tuesday"])
    await add_shift(db_session, world.org_id, world.owner.id, start="13:00:00")

    created = await sweep_absences(db_session, world.org_id, PAST_DEADLINE)
    assert {e.user_id for e in created} == {world.worker.id}


async def test_absence_blocks_check_in_and_check_out(async_client: AsyncClient, db_session, world, fake_client, frozen_clock):
    await add_shift(db_session, world.org_id, world.worker.id)
    await sweep_absences(db_session, world.org_id, PAST_DEADLINE)
    frozen_clock.now = datetime(2026, 3, 2, 16, 0, tzinfo=timezone.utc)
    fake_client.matches = [FaceMatch(str(world.worker.id), 99.0)]
    headers = auth_headers(world.worker, world.org_id)

    check_in = await async_client.post(
        "/api/v1/attendance/check-in",
        json={"qr_data": world.qr(), "image": IMAGE_B64, "latitude": OFFICE_LAT, "longitude": OFFICE_LON},
        headers=headers,
    )
    assert check_in.status_code == 409

    check_out = await async_client.post(
        "/api/v1/attendance/check-out",
        json={"latitude": OFFICE_LAT, "longitude": OFFICE_LON},
        headers=headers,
    )
    assert check_out.status_code == 400
    assert check_out.json()["code"] == "no_open_check_in"


# ── Endpoint ────────────────────────────────────────────────────────
async def test_mark_absences_endpoint(async_client: AsyncClient, db_session, world, frozen_clock):
    await add_shift(db_session, world.org_id, world.worker.id)
    frozen_clock.now = PAST_DEADLINE

    resp = await async_client.post(
        "/api/v1/attendance/admin/mark-absences", headers=auth_headers(world.owner, world.org_id)
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Marked 1 user(s) as absent"
    assert body["count"] == 1
    assert body["absences"][0]["user_id"] == world.worker.id

    again = await async_client.post(
        "/api/v1/attendance/admin/mark-absences", headers=auth_headers(world.owner, world.org_id)
    )
    assert again.json()["count"] == 0


async def test_mark_absences_requires_admin(async_client: AsyncClient, world):
    resp = await async_client.post(
        "/api/v1/attendance/admin/mark-absences", headers=auth_headers(world.worker, world.org_id)
    )
    assert resp.status_code == 403


async def test_admin_can_excuse_an_absence(async_client: AsyncClient, db_session, world):
    await add_shift(db_session, world.org_id, world.worker.id)
    [absence] = await sweep_absences(db_session, world.org_id, PAST_DEADLINE)

    resp = await async_client.put(
        f"/api/v1/attendance/admin/update-status/{absence.id}",
        json={"status": "on_time", "notes": "Medical appointment"},
        headers=auth_headers(world.owner, world.org_id),
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "on_time"


# ── Per-worker isolation ────────────────────────────────────────────
async def test_failed_insert_skips_only_that_worker(db_session, world, monkeypatch):
    """A concurrent sweep already inserted the worker's absence; the owner is still marked."""
    await add_shift(db_session, world.org_id, world.owner.id)
    await add_shift(db_session, world.org_id, world.worker.id)
    db_session.add(
        AttendanceEvent(
            user_id=world.worker.id,
            organization_id=world.org_id,
            work_date="2026-03-02",
            check_in=PAST_DEADLINE,
            check_out=None,
            status=AttendanceStatus.ABSENT,
            is_within_geofence=False,
            is_verified=False,
            source=AttendanceSource.SYSTEM,
        )
    )
    await db_session.commit()

    async def _lost_race(*args, **kwargs):
        return False

    monkeypatch.setattr(absences_module, "_has_event", _lost_race)
    # The rollback expires the seeded instances
    org_id, owner_id, worker_id = world.org_id, world.owner.id, world.worker.id

    created = await sweep_absences(db_session, org_id, PAST_DEADLINE)

    assert [e.user_id for e in created] == [owner_id]
    assert created[0].notes == "Auto-marked absent. Expected shift start: 09:00:00"
    rows = (
        await db_session.execute(
            select(AttendanceEvent.user_id).where(AttendanceEvent.status == AttendanceStatus.ABSENT)
        )
    ).scalars().all()
    assert sorted(rows) == sorted([worker_id, owner_id])


async def test_malformed_shift_start_skips_only_that_worker(db_session, world):
    await add_shift(db_session, world.org_id, world.worker.id, start="9am")
    await add_shift(db_session, world.org_id, world.owner.id)

    created = await sweep_absences(db_session, world.org_id, PAST_DEADLINE)

    assert [e.user_id for e in created] == [world.owner.id]
