"""
Database engine and session factory creation.
"""
from typing import Optional

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from catalog_ingest.config.settings import DatabaseSettings

logger = structlog.get_logger(__name__)


def create_engine_from_settings(settings: DatabaseSettings) -> AsyncEngine:
    """Create an async engine for PostgreSQL (asyncpg) or SQLite (aiosqlite)"""
    if not settings.database_url:
        raise ValueError("Database URL is required (DB_DATABASE_URL)")

    if settings.is_postgres():
        engine = create_async_engine(
            settings.database_url,
            echo=settings.database_echo,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
            pool_pre_ping=True,
        )
    else:
        engine = create_async_engine(settings.database_url, echo=settings.database_echo)
        enable_sqlite_savepoints(engine)

    logger.info("Database engine created", backend=engine.dialect.name)
    return engine


def enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """
    Let SQLAlchemy emit BEGIN itself on SQLite connections.

    The sqlite driver's own transaction handling breaks SAVEPOINT, which the loader
    uses for per-batch retries.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def describe_destination(engine: AsyncEngine, source_file: Optional[str] = None) -> str:
    """Destination URL without credentials, optionally suffixed with the feed path"""
    destination = engine.url.render_as_string(hide_password=True)
    return f"{destination}|{source_file}" if source_file else destination


__all__ = [
    "create_engine_from_settings",
    "enable_sqlite_savepoints",
    "create_session_factory",
    "describe_destination",
]
