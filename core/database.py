"""
Database session management with SQLAlchemy async
"""

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
)
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def build_engine(database_url: str = None, echo: bool = False) -> AsyncEngine:
    """Create an async engine for the scheduler/warehouse database"""
    return create_async_engine(
        database_url or settings.DATABASE_URL,
        echo=echo,
        poolclass=NullPool,  # For async, connection pooling handled differently
        future=True
    )


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory shared by scheduler, loader and watermark store"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False
    )


# Create async engine
engine = build_engine(echo=settings.ENVIRONMENT == "development")

# Create session factory
async_session_maker = build_session_maker(engine)


def dialect_insert(session: AsyncSession):
    """INSERT construct with ON CONFLICT support for the session's dialect"""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Upsert not supported for dialect: {dialect}")
    return insert
