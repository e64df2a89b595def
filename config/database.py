"""
config/database.py
Async SQLAlchemy engine, session factory, and base model.
Uses the asyncpg driver for PostgreSQL; SQLite (aiosqlite) is accepted for local runs and tests.
"""

from datetime import datetime, timezone
from typing import AsyncGenerator, Awaitable, Callable

from sqlalchemy import JSON, DateTime, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from config.settings import settings


def _engine_kwargs(url: str) -> dict:
    """Pool arguments for the configured backend. SQLite runs on a single shared connection."""
    if url.startswith("sqlite"):
        return {
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
            "echo": settings.DEBUG,
        }
    return {
        "pool_size": settings.DATABASE_POOL_SIZE,
        "max_overflow": settings.DATABASE_MAX_OVERFLOW,
        "pool_timeout": settings.DATABASE_POOL_TIMEOUT,
        "pool_pre_ping": True,       # Detect stale connections
        "pool_recycle": 3600,        # Recycle connections every hour
        "echo": settings.DEBUG,      # Log SQL in debug mode
    }


# ── Engine ────────────────────────────────────────────────────
engine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))

# ── Session ───────────────────────────────────────────────────
AFTER_COMMIT = "after_commit"


class AppSession(AsyncSession):
    """
    AsyncSession with post-commit hooks.
    Callbacks registered with run_after_commit run once the transaction is committed
    and are dropped on rollback.
    """

    def run_after_commit(self, callback: Callable[[], Awaitable[None]]) -> None:
        self.info.setdefault(AFTER_COMMIT, []).append(callback)

    async def commit(self) -> None:
        await super().commit()
        for callback in self.info.pop(AFTER_COMMIT, []):
            await callback()

    async def rollback(self) -> None:
        self.info.pop(AFTER_COMMIT, None)
        await super().rollback()

    async def close(self) -> None:
        self.info.pop(AFTER_COMMIT, None)
        await super().close()


# ── Session Factory ───────────────────────────────────────────
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AppSession,
    expire_on_commit=False,      # Don't expire after commit (async-safe)
    autocommit=False,
    autoflush=False,
)


# ── Portable Column Types ─────────────────────────────────────
JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware timestamp that always round-trips as an aware UTC datetime.
    SQLite drops tzinfo on storage, so values are normalised to UTC on the way in
    and re-tagged on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ── Base Model ────────────────────────────────────────────────
class Base(DeclarativeBase):
    """All ORM models inherit from this."""
    pass


# ── Dependency ────────────────────────────────────────────────
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency: yields an async database session.
    Auto-commits on success, rolls back on error.

    Usage:
        @router.get("/appointments")
        async def list_appointments(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db() -> None:
    """Create all tables. Run during app startup."""
    import shared.models.models  # noqa: F401  (registers mappers on Base.metadata)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose engine. Run during app shutdown."""
    await engine.dispose()


# ── Sync access for Celery workers ────────────────────────────
def sync_database_url(url: str) -> str:
    """Convert the async driver URL into its synchronous counterpart."""
    return url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


_sync_sessionmaker = None


def get_sync_session() -> Session:
    """Synchronous session for Celery tasks (workers run sync by default)."""
    global _sync_sessionmaker
    if _sync_sessionmaker is None:
        url = sync_database_url(settings.DATABASE_URL)
        kwargs = {"pool_pre_ping": True}
        if url.startswith("sqlite"):
            kwargs = {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
        _sync_sessionmaker = sessionmaker(bind=create_engine(url, **kwargs))
    return _sync_sessionmaker()
