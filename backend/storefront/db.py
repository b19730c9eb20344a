import os
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import declarative_base

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./storefront.db").strip()


def engine_kwargs(url: str) -> dict:
    """Engine options for the given URL (pool tuning for servers, busy timeout for sqlite)."""
    kwargs = {"echo": False, "future": True}
    try:
        is_sqlite = (url or "").lower().startswith("sqlite")
        if is_sqlite:
            # Concurrent ledger writers queue on the sqlite write lock instead of failing fast.
            kwargs["connect_args"] = {"timeout": float(os.environ.get("DB_SQLITE_TIMEOUT", "30").strip() or 30)}
        else:
            kwargs.update({
                "pool_pre_ping": True,
                "pool_recycle": int(os.environ.get("DB_POOL_RECYCLE_SECONDS", "300").strip() or 300),
            })
            if os.environ.get("DB_POOL_SIZE"):
                kwargs["pool_size"] = int(os.environ.get("DB_POOL_SIZE", "").strip() or 5)
            if os.environ.get("DB_MAX_OVERFLOW"):
                kwargs["max_overflow"] = int(os.environ.get("DB_MAX_OVERFLOW", "").strip() or 10)
            if os.environ.get("DB_POOL_TIMEOUT"):
                kwargs["pool_timeout"] = int(os.environ.get("DB_POOL_TIMEOUT", "").strip() or 30)
    except ValueError:
        # Bad tuning values fall back to driver defaults
        pass
    return kwargs


engine = create_async_engine(DATABASE_URL, **engine_kwargs(DATABASE_URL))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
Base = declarative_base()


async def get_session() -> AsyncSession:
    """FastAPI dependency that yields an async session."""
    async with SessionLocal() as session:
        yield session


async def init_db(bind=None):
    """Create tables (safe to run repeatedly)."""
    from . import models  # ensure models are imported

    async with (bind or engine).begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)
