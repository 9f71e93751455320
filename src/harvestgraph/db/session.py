"""
Engine and session factory helpers.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from harvestgraph.config import settings
from harvestgraph.db.orm import Base

logger = logging.getLogger(__name__)


def create_engine(url: Optional[str] = None, pool_size: Optional[int] = None) -> AsyncEngine:
    """Create an async engine; the pool size bounds builder parallelism."""
    url = url or settings.database_url
    kwargs = {"echo": settings.debug, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = pool_size or settings.db_pool_size
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_graph_tables(engine: AsyncEngine) -> None:
    """Create the graph and anomaly result tables if they do not exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Graph tables initialized")
