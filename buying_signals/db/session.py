"""Database session management."""
from __future__ import annotations

import logging
from collections.abc import AsyncGenerator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..core.config import settings
from ..core.errors import PersistenceError
from ..models.base import Base

logger = logging.getLogger(__name__)

connect_args: dict[str, object] = {}
if settings.database_ssl_required:
    connect_args["ssl"] = True

engine = create_async_engine(
    settings.database_async_url,
    echo=False,
    pool_pre_ping=True,
    connect_args=connect_args,
)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency to provide an async session."""

    async with SessionLocal() as session:
        yield session


async def init_signal_tables(bind: AsyncEngine | None = None) -> None:
    """Create signal tables and indexes if they do not exist yet.

    ``create_all`` checks for existing objects first, so this is safe to call on
    every process start.
    """

    from .. import models  # noqa: F401 - register mappers on the metadata

    target = bind or engine
    try:
        async with target.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Could not initialise signal tables: {exc}") from exc
    logger.info("Signal tables initialised")
