from __future__ import annotations
"""Async engine, session factory and declarative base.

Production runs on MySQL through asyncmy; ``DB_URL`` may point anywhere
SQLAlchemy has an async driver for (tests use ``sqlite+aiosqlite``).
"""

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from genrelay.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


def build_engine(url: str | None = None) -> AsyncEngine:
    """Engine for ``url`` (default: configured URL); pool tuning is MySQL only."""
    url = url or settings.DATABASE_URL
    if not url.startswith("mysql"):
        return create_async_engine(url, echo=settings.DEBUG)
    return create_async_engine(
        url,
        echo=settings.DEBUG,
        pool_recycle=3600,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        connect_args={"connect_timeout": 30},
    )


engine = build_engine()
async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    # utf8mb4 so prompts with emoji survive MySQL
    __table_args__ = {
        "mysql_charset": "utf8mb4",
        "mysql_collate": "utf8mb4_unicode_ci",
    }


async def init_db() -> None:
    """Create missing tables at startup; existing ones are left alone."""
    from genrelay import models  # noqa: F401

    try:
        async with engine.begin() as db_conn:
            await db_conn.run_sync(Base.metadata.create_all)
    except Exception as e:
        logger.warning("Table creation skipped: %s", e)


async def close_db() -> None:
    await engine.dispose()
