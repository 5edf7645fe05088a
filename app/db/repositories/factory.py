"""
Repository factory - resolved once at startup from STORAGE_BACKEND.

memory = in-process dicts (tests, local development)
sql    = SQLAlchemy async engine on DATABASE_URL
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from app.core.config import Settings
from app.core.logging import get_logger
from app.db.database import build_engine, build_session_factory, create_tables
from app.db.repositories.base import Repositories
from app.db.repositories.memory import build_memory_repositories
from app.db.repositories.sql import build_sql_repositories

logger = get_logger(__name__)


@dataclass
class Storage:
    """Repositories plus the engine that backs them (None for memory)"""

    repositories: Repositories
    engine: Optional[AsyncEngine] = None

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()


async def build_storage(settings: Settings, *, create_schema: bool = True) -> Storage:
    backend = settings.STORAGE_BACKEND
    if backend == "memory":
        logger.info("Using in-memory storage backend")
        return Storage(repositories=build_memory_repositories())

    engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
    if create_schema:
        await create_tables(engine)
    logger.info("Using SQL storage backend", extra_data={"dialect": engine.dialect.name})
    return Storage(
        repositories=build_sql_repositories(build_session_factory(engine)),
        engine=engine,
    )
