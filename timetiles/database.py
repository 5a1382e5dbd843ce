"""Database engine and session configuration."""

import math
from collections.abc import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from timetiles.core.config import get_settings

settings = get_settings()

# Functions the aggregation queries need; PostgreSQL has them built in
SQLITE_FUNCTIONS = {
    "ln": math.log,
    "sin": math.sin,
    "radians": math.radians,
    "floor": math.floor,
}


def _register_sqlite_functions(dbapi_connection, connection_record) -> None:
    for name, function in SQLITE_FUNCTIONS.items():
        dbapi_connection.create_function(name, 1, function, deterministic=True)


def configure_engine(engine: AsyncEngine) -> AsyncEngine:
    """Install per-connection hooks. Only SQLite needs any."""
    if engine.url.drivername.startswith("sqlite"):
        event.listen(engine.sync_engine, "connect", _register_sqlite_functions)
    return engine


# Create async engine
engine = configure_engine(
    create_async_engine(
        settings.database_url,
        echo=settings.debug,
        future=True,
    )
)

# Session factory
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that provides a database session.

    Note: Services are responsible for committing their transactions.
    This dependency only provides the session and handles cleanup.
    """
    async with async_session_factory() as session:
        yield session


async def init_db() -> None:
    """Initialize database tables (for development only)."""
    from timetiles.models import import_all_models

    import_all_models()
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
