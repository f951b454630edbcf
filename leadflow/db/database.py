"""
Database Connection
===================
Async connection using SQLAlchemy (asyncpg in production)
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from leadflow.db.models import Base


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine):
    """Create all tables (for development only - use migrations in production)"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
