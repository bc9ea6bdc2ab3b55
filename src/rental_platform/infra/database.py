"""Async engine, session factory and schema bootstrap."""

from pathlib import Path

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from rental_platform.app.config import get_settings


class Base(DeclarativeBase):
    """Declarative base for every rental platform table."""


def _engine_options(database_url: str) -> dict:
    """SQLite gets a long lock wait; server databases get a small pool."""
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {"pool_size": 5, "max_overflow": 10, "pool_pre_ping": True}


settings = get_settings()

engine = create_async_engine(settings.database_url, echo=False, **_engine_options(settings.database_url))

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db():
    """FastAPI dependency: one session per request."""
    async with async_session() as session:
        yield session


async def init_db():
    """Create missing tables and the signed-contract directory."""
    import rental_platform.domain.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        # WAL lets the monitor loop write while request handlers read
        if conn.dialect.name == "sqlite":
            await conn.execute(text("PRAGMA journal_mode=WAL"))

    Path(settings.contracts_dir).mkdir(parents=True, exist_ok=True)
