"""Database connection and session management."""
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base
from mediacache.settings import settings

# Base class for models
Base = declarative_base()


def normalize_database_url(url: str) -> str:
    """Force the async driver for Postgres URLs (postgres:// as given by most hosts)."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://") and "+asyncpg" not in url:
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def create_session_factory(url: str, echo: bool = False) -> tuple[AsyncEngine, async_sessionmaker]:
    """Build an engine and a session factory bound to it.

    The web tier and the worker process each call this once at startup; tests
    call it per test with a throwaway SQLite file.
    """
    engine = create_async_engine(normalize_database_url(url), echo=echo, future=True)
    factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return engine, factory


async def create_tables(engine: AsyncEngine) -> None:
    # Import for side effects: registers the tables on Base.metadata
    from mediacache import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


engine, AsyncSessionLocal = create_session_factory(settings.DATABASE_URL)


async def get_db() -> AsyncSession:
    """Dependency for FastAPI to get database session."""
    async with AsyncSessionLocal() as session:
        yield session
