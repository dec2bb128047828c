# db/db_manager.py - Database Session Management
"""
Database connection and SQLAlchemy session factory management.

Notes:
- Postgres uses QueuePool with asyncpg prepared-statement caches disabled.
- SQLite (local runs and tests) uses aiosqlite with a static pool for
  in-memory databases and no pooling for file databases.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional, Dict, Any
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
    AsyncEngine,
)
from sqlalchemy.pool import NullPool, StaticPool, Pool
from sqlalchemy.exc import OperationalError, TimeoutError as SQLAlchemyTimeoutError
from sqlalchemy import text

from .config import get_db_settings
from .models import Base

logger = logging.getLogger(__name__)


# Global engine and session factory (singleton pattern)
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None
_init_lock = asyncio.Lock()


async def init_db(
    database_url: Optional[str] = None,
    create_tables: bool = False,
    warm: bool = True,
) -> AsyncEngine:
    """
    Initialize the async SQLAlchemy engine and session factory.

    Args:
        database_url: Override for DATABASE_URL (used by tests and scripts).
        create_tables: If True, create missing tables (local SQLite databases;
                       production schemas are managed by migrations).
        warm: If True, run a lightweight SELECT 1 after creating the engine.

    Returns:
        AsyncEngine: Initialized SQLAlchemy async engine

    Raises:
        ValueError, OperationalError
    """
    global _engine, _session_factory

    async with _init_lock:
        if _engine is not None:
            logger.info("✓ Database already initialized, reusing existing engine")
            return _engine

        logger.info("INFO: Initializing database connection...")
        settings = get_db_settings()
        raw_url = database_url or settings.DATABASE_URL
        sqlite = settings.is_sqlite(raw_url)

        logger.info(
            f"[DB INIT] environment={settings.ENV}, "
            f"driver={'sqlite' if sqlite else 'postgres'}"
        )

        try:
            connection_url = settings.get_connection_url(raw_url)
        except ValueError as e:
            logger.error(f"Failed to build connection URL: {e}")
            raise

        engine_kwargs: Dict[str, Any] = {
            "echo": settings.ECHO_SQL,
            "connect_args": settings.get_connect_args(raw_url),
        }
        if sqlite:
            engine_kwargs["poolclass"] = (
                StaticPool if ":memory:" in connection_url else NullPool
            )
        else:
            engine_kwargs.update(
                pool_pre_ping=settings.POOL_PRE_PING,
                pool_size=settings.POOL_SIZE,
                max_overflow=settings.MAX_OVERFLOW,
                pool_timeout=settings.POOL_TIMEOUT,
                pool_recycle=settings.POOL_RECYCLE,
            )

        try:
            _engine = create_async_engine(connection_url, **engine_kwargs)
            logger.info("✓ Database engine created")

            _session_factory = async_sessionmaker(
                _engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )
            logger.info("✓ Session factory created")

            if create_tables:
                async with _engine.begin() as conn:
                    await conn.run_sync(Base.metadata.create_all)
                logger.info("✓ Tables created")

            if warm:
                await warm_connections()
                logger.info("✓ Warmed DB connections")

            return _engine

        except OperationalError as e:
            logger.error(f"[DB INIT] OperationalError creating engine: {e}")
            raise
        except Exception as e:
            logger.error(f"[DB INIT] Unexpected error creating engine: {e}")
            raise


async def warm_connections():
    """Acquire a connection and execute a trivial query."""
    if _engine is None:
        return
    try:
        async with _engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning(f"[DB WARM] warm_connections failed: {e}")


async def get_engine() -> AsyncEngine:
    """Get or lazily initialize database engine."""
    if _engine is None:
        await init_db()
    return _engine


def get_session_factory() -> async_sessionmaker:
    """
    Get session factory (engine must be initialized first).

    Raises:
        RuntimeError: If database not initialized
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database not initialized. Call init_db() first, "
            "or use get_db_session() which initializes automatically."
        )
    return _session_factory


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for database sessions.

    Commits on success, rolls back on exceptions, always closes.

    Example:
        async with get_db_session() as session:
            repo = ProjectRepository(session)
            project = await repo.get_project(project_id)
    """
    if _session_factory is None:
        await init_db()

    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
            logger.debug("Database session committed successfully")

        except (OperationalError, SQLAlchemyTimeoutError) as e:
            await session.rollback()
            logger.error(
                f"Database error, transaction rolled back: {type(e).__name__}: {e}"
            )
            raise

        except Exception as e:
            await session.rollback()
            logger.error(
                f"Unexpected error, transaction rolled back: {type(e).__name__}: {e}"
            )
            raise

        finally:
            await session.close()


async def health_check() -> bool:
    """
    Check database connectivity for health monitoring.

    Returns:
        bool: True if database is healthy, False otherwise
    """
    try:
        engine = await get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        logger.debug("✓ Database health check passed")
        return True

    except Exception as e:
        logger.error(f"✗ Database health check failed: {e}")
        return False


async def close_db():
    """Gracefully close database connections and cleanup resources."""
    global _engine, _session_factory

    if _engine:
        logger.info("Closing database connections...")
        try:
            await _engine.dispose()
            logger.info("✓ Database connections closed successfully")
        except Exception as e:
            logger.error(f"Error during database shutdown: {e}")
        finally:
            _engine = None
            _session_factory = None


async def get_pool_status() -> dict:
    """Get connection pool status for monitoring."""
    if _engine is None:
        return {"status": "not_initialized", "type": None}

    pool: Pool = _engine.pool
    if isinstance(pool, (NullPool, StaticPool)):
        return {"status": "ok", "type": pool.__class__.__name__}

    try:
        return {
            "status": "ok",
            "type": pool.__class__.__name__,
            "size": pool.size(),
            "checked_in": pool.checkedin(),
            "checked_out": pool.checkedout(),
            "overflow": pool.overflow(),
        }
    except AttributeError:
        return {"type": pool.__class__.__name__, "status": "metrics_unavailable"}
