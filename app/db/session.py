"""
Async SQLAlchemy engine & session factory.

PostgreSQL (asyncpg) in production, SQLite (aiosqlite) for local runs and tests.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings

engine_args: dict = {
    "echo": False,
    "pool_pre_ping": True,
}

if "postgresql" in settings.DATABASE_URL:
    engine_args.update(
        {
            "pool_size": 20,
            "max_overflow": 10,
            "pool_recycle": 300,
        }
    )

engine = create_async_engine(settings.DATABASE_URL, **engine_args)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request, closed afterwards."""
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()
