"""
Database Connection Manager
===========================

Handles the async connection to the observer's SQLite database.
"""

from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine

from lifecycle_observer.db.models import Base

# Global session maker
_async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None
_engine: Optional[AsyncEngine] = None


async def init_db(db_path: Path, echo: bool = False) -> async_sessionmaker[AsyncSession]:
    """
    Initialize the database connection and create tables if they don't exist.

    Args:
        db_path: SQLite database file; parent directories are created

    Returns:
        Session maker bound to the new engine
    """
    global _async_session_maker, _engine

    db_path = Path(db_path).expanduser()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db_url = f"sqlite+aiosqlite:///{db_path}"

    _engine = create_async_engine(db_url, echo=echo)

    # Create tables
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    _async_session_maker = async_sessionmaker(_engine, expire_on_commit=False)

    return _async_session_maker


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get the configured session maker."""
    if _async_session_maker is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _async_session_maker


def get_engine() -> AsyncEngine:
    """Get the engine created by the last init_db() call."""
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _engine


async def dispose_db() -> None:
    """Close the engine and forget the session maker."""
    global _async_session_maker, _engine

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _async_session_maker = None
