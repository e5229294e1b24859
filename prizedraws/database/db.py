from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator, DateTime
from sqlalchemy import text
from datetime import timezone
import logging

from prizedraws.config import settings


# Declarative base for all models
Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamp.

    SQLite drops tzinfo on the way out, so values read back are re-tagged as UTC;
    values written are normalised to UTC first.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def to_async_url(database_url: str) -> str:
    """Maps a plain postgresql:// URL onto the asyncpg driver."""
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql:", "postgresql+asyncpg:", 1)
    return database_url


def build_engine(database_url: str, echo: bool = False):
    """
    Creates the async engine for the given URL.

    Args:
        database_url (str): Database URL (postgresql://, postgresql+asyncpg://, sqlite+aiosqlite://)
        echo (bool): Log SQL statements

    Returns:
        AsyncEngine: Configured engine
    """
    async_url = to_async_url(database_url)
    if async_url.startswith("sqlite"):
        return create_async_engine(async_url, echo=echo, future=True)

    return create_async_engine(
        async_url,
        echo=echo,
        future=True,
        pool_size=20,
        max_overflow=40,
        pool_timeout=30,
        pool_pre_ping=True,
        # PgBouncer in transaction mode does not support prepared statements
        connect_args={
            "statement_cache_size": 0,
        },
    )


def build_sessionmaker(bind) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)

async_session = build_sessionmaker(engine)


async def init_db():
    """
    Creates tables and indexes if they do not exist yet.

    Returns:
        async_sessionmaker: Session factory bound to the initialised engine
    """
    # models must be registered on Base.metadata before create_all
    import prizedraws.database.models  # noqa: F401

    try:
        logging.info("Initialising database")

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            await create_indexes(conn)

        logging.info("Database initialised")
        return async_session
    except Exception as e:
        logging.error(f"Database initialisation failed: {e}")
        raise


async def create_indexes(conn):
    """
    Creates the query indexes used by the resolver and the transition sweep.
    """
    try:
        # resolver: current active/frozen draw, earliest queued draw
        await conn.execute(text("CREATE INDEX IF NOT EXISTS idx_major_draws_status_activation ON major_draws(status, activation_date)"))
        # transition sweep
        await conn.execute(text("CREATE INDEX IF NOT EXISTS idx_major_draws_status_draw_date ON major_draws(status, draw_date)"))
        await conn.execute(text("CREATE INDEX IF NOT EXISTS idx_major_draws_freeze ON major_draws(freeze_entries_at)"))

        await conn.execute(text("CREATE INDEX IF NOT EXISTS idx_major_draw_entries_user ON major_draw_entries(user_id)"))
        await conn.execute(text("CREATE INDEX IF NOT EXISTS idx_mini_draws_status ON mini_draws(status)"))
        await conn.execute(text("CREATE INDEX IF NOT EXISTS idx_mini_draw_entries_user ON mini_draw_entries(user_id)"))

        logging.info("Database indexes created")
    except Exception as e:
        logging.warning(f"Failed to create indexes: {e}")


async def get_session() -> AsyncSession:
    """
    FastAPI dependency yielding a database session.

    Yields:
        AsyncSession: Database session
    """
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()
