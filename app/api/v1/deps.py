"""
FastAPI dependencies: auth guards, organization context and collaborators.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Optional

from fastapi import Cookie, Depends, Header, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import InsufficientRole
from app.core.security import decode_access_token
from app.db.session import get_db
from app.models.organization import Membership
from app.models.user import User
from app.services.attendance import (AttendanceService, require_membership,
                                     utcnow)
from app.services.biometrics import BiometricVerifier, RecognitionClient
from app.services.signed_token import SignedTokenCodec

# auto_error=False so the cookie can be checked when the header is missing
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)


# ── Auth dependencies ───────────────────────────────────────────────
async def get_current_user(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    access_token: Optional[str] = Cookie(default=None),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Decode JWT from Header OR Cookie, look up user."""

    # Priority: Header > Cookie
    final_token = token
    if not final_token and access_token:
        # Cookie is stored as "Bearer <token>"
        if access_token.startswith("Bearer "):
            final_token = access_token.split(" ", 1)[1]
        else:
            final_token = access_token

    credentials_exc = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if not final_token:
        raise credentials_exc

    payload = decode_access_token(final_token)
    if payload is None:
        raise credentials_exc

    user_id: str | None = payload.get("sub")
    if user_id is None or not user_id.isdigit():
        raise credentials_exc

    result = await db.execute(select(User).where(User.id == int(user_id)))
    user = result.scalar_one_or_none()
    if user is None:
        raise credentials_exc
    return user


async def get_current_active_user(
    current_user: User = Depends(get_current_user),
) -> User:
    """Reject inactive accounts."""
    if not current_user.is_active:
        raise HTTPException(status_code=400, detail="Inactive user account")
    return current_user


# ── Organization context ────────────────────────────────────────────
async def get_organization_id(
    x_organization_id: Optional[str] = Header(default=None),
) -> str:
    if not x_organization_id or not x_organization_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Organization-Id header is required",
        )
    return x_organization_id.strip()


async def get_membership(
    organization_id: str = Depends(get_organization_id),
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
) -> Membership:
    """Caller's membership in the organization named by the request header."""
    return await require_membership(db, current_user.id, organization_id)


async def require_org_admin(
    membership: Membership = Depends(get_membership),
) -> Membership:
    """Only owners and admins of the organization may proceed."""
    if not membership.is_elevated:
        raise InsufficientRole()
    return membership


# ── Collaborators (built once in lifespan) ──────────────────────────
def get_codec(request: Request) -> SignedTokenCodec:
    return request.app.state.codec


def get_recognition_client(request: Request) -> RecognitionClient:
    return request.app.state.recognition_client


def get_clock() -> Callable[[], datetime]:
    return utcnow


def get_attendance_service(
    codec: SignedTokenCodec = Depends(get_codec),
    client: RecognitionClient = Depends(get_recognition_client),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> AttendanceService:
    return AttendanceService(
        codec=codec,
        verifier=BiometricVerifier(client, settings),
        settings=settings,
        clock=clock,
    )
