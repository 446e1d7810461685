"""Engine and session factory construction."""
from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from course_payments.config import get_settings
from course_payments.database.models import Base

# Seconds before a pooled connection is replaced
POOL_RECYCLE_SECONDS = 3600


def build_engine(database_url: str, **overrides: Any) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    Pool sizing only applies to server databases; SQLite keeps the
    driver defaults.
    """
    settings = get_settings()
    options: dict[str, Any] = {"echo": settings.database_echo}
    if not database_url.startswith("sqlite"):
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
            pool_recycle=POOL_RECYCLE_SECONDS,
        )
    options.update(overrides)
    return create_async_engine(database_url, **options)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by every store in the service."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def insert_for(session: AsyncSession, model: Any) -> Any:
    """
    Dialect-specific INSERT for ``model``.

    The returned construct supports ``on_conflict_do_nothing`` and
    ``on_conflict_do_update`` on both PostgreSQL and SQLite.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Conflict-aware inserts not supported for dialect {dialect}")


async def init_db(engine: AsyncEngine) -> None:
    """Create any missing tables; existing tables are left untouched."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
