# src/Sheetbridge/db.py
from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator

import structlog
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from Sheetbridge.config import load_settings

log = structlog.get_logger()


def _normalize_url(url: str) -> str:
    # Upgrade to async drivers if user supplies sync URLs
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://") and not url.startswith("sqlite+aiosqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_sessionmaker: async_sessionmaker[AsyncSession] | None = None


def _enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """Let SQLAlchemy own BEGIN so SAVEPOINT/ROLLBACK TO work on pysqlite."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # noqa: ARG001
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(url: str) -> AsyncEngine:
    """Create an async engine with per-backend defaults."""
    database_url = _normalize_url(url)
    kwargs: dict[str, object] = {}
    if database_url.startswith("sqlite+aiosqlite://"):
        kwargs.update(connect_args={"timeout": 30})
        # In-memory DBs need a single shared connection so the schema persists
        if ":memory:" in database_url:
            kwargs.update(poolclass=StaticPool)
    elif database_url.startswith("postgresql+asyncpg://"):
        kwargs.update(
            pool_pre_ping=True,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
        )

    engine = create_async_engine(database_url, **kwargs)
    if engine.dialect.name == "sqlite":
        _enable_sqlite_savepoints(engine)

    parsed = make_url(database_url)
    backend = "postgres" if database_url.startswith("postgresql") else (
        "sqlite" if database_url.startswith("sqlite") else "other"
    )
    log.info(
        "db.connection.config",
        backend=backend,
        user=parsed.username or "",
        host=parsed.host or "",
        database=parsed.database or "",
        driver=parsed.drivername,
    )
    if backend == "postgres" and (not parsed.username or not parsed.password):
        log.warning(
            "db.connection.missing_credentials",
            has_user=bool(parsed.username),
            has_password=bool(parsed.password),
        )
    return engine


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    global _engine, _sessionmaker
    if _engine is None:
        _engine = build_engine(load_settings().database_url)
        _sessionmaker = build_sessionmaker(_engine)
    return _engine


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    if _sessionmaker is None:
        get_engine()
    return _sessionmaker  # type: ignore[return-value]


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables; used for SQLite dev databases and tests."""
    from Sheetbridge import models as _models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@contextlib.asynccontextmanager
async def session_scope(
    sessionmaker: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[AsyncSession]:
    sm = sessionmaker or get_sessionmaker()
    async with sm() as s:
        try:
            yield s
            await s.commit()
        except BaseException:
            log.error("db.session.error", exc_info=True)
            await s.rollback()
            raise
