"""
Checkpoint: Application entry point.

This is the **only** file that assembles the app.  All business logic
lives in the `services/`, `api/`, `models/`, and `core/` packages.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import select

from app.api.v1.api import api_router
from app.api.v1.endpoints.auth import limiter
from app.core.config import settings
from app.core.exceptions import register_exception_handlers
from app.core.security import get_password_hash
from app.db.base import Base
from app.db.session import async_session_factory, engine

# Ensure all models are imported so metadata.create_all can see them
from app.models.attendance_event import AttendanceEvent  # noqa: F401
from app.models.geofence import Geofence  # noqa: F401
from app.models.organization import Membership, Organization
from app.models.shift import ScheduleAssignment, Shift  # noqa: F401
from app.models.user import User
from app.services.biometrics import RekognitionClient
from app.services.signed_token import SignedTokenCodec

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


async def _bootstrap_owner() -> None:
    """Seed an owner account and its organization on first run, when configured."""
    if not settings.FIRST_ADMIN_EMAIL or not settings.FIRST_ADMIN_PASSWORD:
        return
    email = settings.FIRST_ADMIN_EMAIL.lower().strip()
    async with async_session_factory() as session:
        result = await session.execute(select(User).where(User.email == email))
        if result.scalar_one_or_none() is not None:
            return
        owner = User(
            email=email,
            hashed_password=get_password_hash(settings.FIRST_ADMIN_PASSWORD),
            full_name="System Administrator",
        )
        organization = Organization(name=settings.FIRST_ORGANIZATION_NAME)
        session.add_all([owner, organization])
        await session.flush()
        session.add(Membership(user_id=owner.id, organization_id=organization.id, role="owner"))
        await session.commit()
        logger.info(
            "Bootstrap owner created: %s (password: <redacted>) for organization %s",
            email,
            organization.id,
        )


# ── Lifespan ────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")

    await _bootstrap_owner()

    # Long-lived collaborators, shared by every request
    app.state.codec = SignedTokenCodec(settings.QR_SECRET)
    app.state.recognition_client = RekognitionClient(settings)
    logger.info("Recognition client ready (region %s)", settings.AWS_REGION)

    logger.info("🚀 %s v%s started", settings.PROJECT_NAME, settings.VERSION)
    yield
    await engine.dispose()
    logger.info("Shutdown complete")


# ── App factory ─────────────────────────────────────────────────────
def create_app() -> FastAPI:
    application = FastAPI(
        title="Checkpoint",
        description="Attendance verification & shift-status engine",
        version=settings.VERSION,
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # CORS
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Login rate limiting
    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)  # type: ignore[arg-type]

    # Global exception handlers (prevent stack-trace leakage)
    register_exception_handlers(application)

    # Mount API v1
    application.include_router(api_router, prefix=settings.API_V1_PREFIX)

    return application


app = create_app()
