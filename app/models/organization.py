"""
Organization, membership and per-organization attendance settings.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (Column, DateTime, Float, ForeignKey, Integer, String,
                        UniqueConstraint)
from sqlalchemy.orm import relationship

from app.db.base import Base

ELEVATED_ROLES = frozenset({"owner", "admin"})


def _uuid() -> str:
    return str(uuid.uuid4())


class Organization(Base):
    __tablename__ = "organizations"

    id: str = Column(String(36), primary_key=True, default=_uuid)  # type: ignore[assignment]
    name: str = Column(String(200), nullable=False)  # type: ignore[assignment]
    # Recognition gallery; None means "<prefix>-<id>"
    face_collection_id: str | None = Column(String(255), nullable=True)  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    members = relationship(
        "Membership",
        back_populates="organization",
        cascade="all, delete-orphan",
    )


class Membership(Base):
    __tablename__ = "members"
    __table_args__ = (
        UniqueConstraint("user_id", "organization_id", name="uq_member_user_org"),
    )

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    user_id: int = Column(  # type: ignore[assignment]
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    organization_id: str = Column(  # type: ignore[assignment]
        String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role: str = Column(  # type: ignore[assignment]
        String(20),
        nullable=False,
        default="member",
        server_default="member",
    )  # owner | admin | member
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    user = relationship("User", back_populates="memberships")
    organization = relationship("Organization", back_populates="members")

    @property
    def is_elevated(self) -> bool:
        return self.role in ELEVATED_ROLES


class OrganizationSettings(Base):
    """One row per organization, created lazily with defaults on first read."""

    __tablename__ = "organization_settings"

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    organization_id: str = Column(  # type: ignore[assignment]
        String(36), ForeignKey("organizations.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    grace_period_minutes: int = Column(Integer, nullable=False, default=5)  # type: ignore[assignment]
    extra_hour_cost: float = Column(Float, nullable=False, default=0.0)  # type: ignore[assignment]
    timezone: str = Column(String(64), nullable=False, default="America/Mexico_City")  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
