"""
Shared test fixtures for the attendance engine test suite.

In-memory aiosqlite database, real JWTs for callers, and an in-memory fake
in place of the face-recognition service.
"""

import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncGenerator

import pytest

# Ensure project root is importable
ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

# Override environment BEFORE importing application modules
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CORS_ORIGINS"] = '["*"]'
os.environ["QR_SECRET"] = "test-qr-secret"
os.environ["SECRET_KEY"] = "test-jwt-secret-key-with-enough-length-for-hs256"

from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.api.v1.deps import get_clock, get_codec, get_db, get_recognition_client
from app.api.v1.endpoints.auth import limiter
from app.core.config import settings
from app.db.base import Base
from app.main import app
from app.models.geofence import Geofence
from app.models.organization import Membership, Organization, OrganizationSettings
from app.services.biometrics import BiometricVerifier, FaceMatch, FaceQuality
from tests.factories import OFFICE_LAT, OFFICE_LON, TZ_NAME, World, add_user, make_codec

test_engine = create_async_engine(
    "sqlite+aiosqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ── Fakes ───────────────────────────────────────────────────────────
@dataclass
class FakeRecognitionClient:
    """Deterministic stand-in for the face-recognition service."""

    matches: list[FaceMatch] = field(default_factory=list)
    faces: list[FaceQuality] = field(
        default_factory=lambda: [FaceQuality(confidence=99.0, sharpness=90.0, brightness=50.0)]
    )
    search_error: Exception | None = None
    detect_error: Exception | None = None
    searched_collections: list[str] = field(default_factory=list)

    async def search_faces(self, image: bytes, collection_id: str) -> list[FaceMatch]:
        self.searched_collections.append(collection_id)
        if self.search_error is not None:
            raise self.search_error
        return list(self.matches)

    async def detect_faces(self, image: bytes) -> list[FaceQuality]:
        if self.detect_error is not None:
            raise self.detect_error
        return list(self.faces)


class FrozenClock:
    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 3, 2, 15, 4, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


codec = make_codec()
fake_recognition = FakeRecognitionClient()
clock = FrozenClock()


async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with TestingSessionLocal() as session:
        yield session


app.dependency_overrides[get_db] = _override_get_db
app.dependency_overrides[get_codec] = lambda: codec
app.dependency_overrides[get_recognition_client] = lambda: fake_recognition
app.dependency_overrides[get_clock] = lambda: clock

# Login throttling is exercised explicitly where needed
limiter.enabled = False


# ── Fixtures ────────────────────────────────────────────────────────
@pytest.fixture(autouse=True)
async def setup_db():
    """Create all tables before usage and drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def reset_fakes():
    fake_recognition.matches = []
    fake_recognition.faces = [FaceQuality(confidence=99.0, sharpness=90.0, brightness=50.0)]
    fake_recognition.search_error = None
    fake_recognition.detect_error = None
    fake_recognition.searched_collections = []
    clock.now = datetime(2026, 3, 2, 15, 4, tzinfo=timezone.utc)  # Monday 09:04 local
    yield


@pytest.fixture
async def async_client() -> AsyncGenerator[AsyncClient, None]:
    """Return a httpx AsyncClient wired to the app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Return a raw database session for direct queries in tests."""
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture
def fake_client() -> FakeRecognitionClient:
    return fake_recognition


@pytest.fixture
def frozen_clock() -> FrozenClock:
    return clock


@pytest.fixture
def verifier() -> BiometricVerifier:
    return BiometricVerifier(fake_recognition, settings)


@pytest.fixture
async def world(db_session: AsyncSession) -> World:
    """One organization with an owner, an enrolled worker, an outsider and an office."""
    organization = Organization(name="Acme")
    db_session.add(organization)
    await db_session.commit()

    owner = await add_user(db_session, "owner@acme.test", "Olivia Owner")
    worker = await add_user(db_session, "worker@acme.test", "Walter Worker")
    outsider = await add_user(db_session, "outsider@else.test", "Oscar Outsider")

    db_session.add_all(
        [
            Membership(user_id=owner.id, organization_id=organization.id, role="owner"),
            Membership(user_id=worker.id, organization_id=organization.id, role="member"),
            OrganizationSettings(
                organization_id=organization.id,
                grace_period_minutes=5,
                timezone=TZ_NAME,
            ),
        ]
    )
    office = Geofence(
        organization_id=organization.id,
        name="HQ",
        center_latitude=OFFICE_LAT,
        center_longitude=OFFICE_LON,
        radius_meters=100,
    )
    db_session.add(office)
    await db_session.commit()
    await db_session.refresh(office)

    return World(organization, owner, worker, outsider, office)
