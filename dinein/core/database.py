"""
Database configuration and session management
"""

from sqlmodel import SQLModel
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel.ext.asyncio.session import AsyncSession
import structlog

from dinein.core.config import Settings

logger = structlog.get_logger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """Create the async engine for the configured database"""
    return create_async_engine(
        settings.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://"),
        echo=settings.DATABASE_ECHO,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Create the async session factory bound to an engine"""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create database tables (development and tests)"""
    # Register every table on the metadata before create_all
    import dinein.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("Database tables created")
