"""
User model: authenticated callers (workers, supervisors, admins).

Organization roles live on ``Membership``; a user may belong to several
organizations.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship

from app.db.base import Base


class User(Base):
    __tablename__ = "users"

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    email: str = Column(String(320), unique=True, nullable=False, index=True)  # type: ignore[assignment]
    hashed_password: str = Column(String(128), nullable=False)  # type: ignore[assignment]
    full_name: str | None = Column(String(200), nullable=True)  # type: ignore[assignment]
    is_active: bool = Column(Boolean, default=True, server_default="true")  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    memberships = relationship(
        "Membership",
        back_populates="user",
        cascade="all, delete-orphan",
    )
