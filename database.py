"""
Async database engine, session factory and the request-scoped session dependency
"""
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from config.settings import settings, IS_PRODUCTION

# Production must run on Postgres
if IS_PRODUCTION:
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL must be set in production. SQLite is not allowed in production.")
    if "sqlite" in settings.database_url.lower():
        raise RuntimeError("SQLite is forbidden in production. Use a PostgreSQL DATABASE_URL.")

DATABASE_URL = settings.database_url or "sqlite+aiosqlite:///./sql_app.db"


def async_database_url(url: str) -> str:
    """Hosted Postgres URLs come without a driver (or as postgres://); use asyncpg."""
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


def engine_options(url: str) -> dict:
    if make_url(url).get_backend_name() == "sqlite":
        # Writers queue on the database lock instead of failing immediately
        return {"connect_args": {"timeout": 15}}
    return {"pool_size": 10, "max_overflow": 10, "pool_pre_ping": True}


async_url = async_database_url(DATABASE_URL)

engine = create_async_engine(async_url, echo=False, **engine_options(async_url))

Base = declarative_base()

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def init_db():
    """
    Create all tables. Called on application startup.
    """
    async with engine.begin() as conn:
        import database_models  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)


async def ping(session: AsyncSession) -> None:
    """Round-trip a trivial query; raises if the database is unreachable."""
    await session.execute(text("SELECT 1"))


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency function that yields a database session.
    Commits when the handler returns, rolls back if it raises.

    Example:
        @router.get("/contracts")
        async def list_contracts(db: AsyncSession = Depends(get_db)):
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
