"""Async SQLAlchemy engine, session management and the unit-of-work runner."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import TypeVar

from sqlalchemy import event
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tapbattle.config import get_settings
from tapbattle.errors import TapBattleError
from tapbattle.events import discard_pending_events, publish_pending_events

logger = logging.getLogger(__name__)

T = TypeVar("T")

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

# PostgreSQL serialization_failure and deadlock_detected
_TRANSIENT_SQLSTATES = frozenset({"40001", "40P01"})

# Seconds a SQLite writer waits for the lock before "database is locked"
_SQLITE_BUSY_TIMEOUT = 15


def _begin_immediate(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock up front.

    pysqlite defers BEGIN until the first write, so two units of work could
    both read a room's participant count before either inserts. With the
    driver's own transaction handling off, BEGIN IMMEDIATE serializes whole
    units of work the way row locks do on PostgreSQL.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN IMMEDIATE")


async def init_db(url: str) -> None:
    """Initialize the database engine and session factory."""
    global _engine, _session_factory  # noqa: PLW0603
    if url.startswith("sqlite"):
        _engine = create_async_engine(url, echo=False, connect_args={"timeout": _SQLITE_BUSY_TIMEOUT})
        _begin_immediate(_engine)
    else:
        _engine = create_async_engine(
            url,
            pool_size=20,
            max_overflow=10,
            pool_pre_ping=True,
            echo=False,
            connect_args={"statement_cache_size": 0},
        )
    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def close_db() -> None:
    """Dispose of the database engine."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_engine() -> AsyncEngine:
    """Get the async engine instance."""
    if _engine is None:
        msg = "Database not initialized. Call init_db() first."
        raise RuntimeError(msg)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the session factory."""
    if _session_factory is None:
        msg = "Database not initialized. Call init_db() first."
        raise RuntimeError(msg)
    return _session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session (FastAPI dependency)."""
    async with get_session_factory()() as session:
        yield session


def is_transient_error(exc: DBAPIError) -> bool:
    """True when the whole operation can safely be retried from scratch.

    Serialization failures and deadlocks abort the transaction before anything
    is committed. Unique violations are retried too: the re-run sees the
    winning row and reports a proper domain error (or draws a fresh key).
    """
    if exc.connection_invalidated or isinstance(exc, IntegrityError):
        return True
    orig = exc.orig
    for candidate in (orig, getattr(orig, "__cause__", None)):
        sqlstate = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if sqlstate in _TRANSIENT_SQLSTATES:
            return True
    return "database is locked" in str(orig)


async def run_in_transaction(
    operation: Callable[[AsyncSession], Awaitable[T]],
    *,
    redis: object | None = None,
    attempts: int | None = None,
) -> T:
    """Run ``operation`` as one all-or-nothing unit of work.

    The session is opened here and always released. On success the
    transaction is committed and any room events queued during the operation
    are published. Domain errors roll back unless they carry ``persist``.
    Transient store failures restart the operation with a fresh session.
    """
    factory = get_session_factory()
    max_attempts = attempts or get_settings().transaction_retry_attempts

    for attempt in range(1, max_attempts + 1):
        async with factory() as session:
            try:
                result = await operation(session)
                await session.commit()
            except TapBattleError as exc:
                if exc.persist:
                    await session.commit()
                    await publish_pending_events(session, redis)
                else:
                    await session.rollback()
                    discard_pending_events(session)
                raise
            except DBAPIError as exc:
                await session.rollback()
                discard_pending_events(session)
                if attempt < max_attempts and is_transient_error(exc):
                    logger.warning(
                        "Transient database error (attempt %d/%d), retrying: %s",
                        attempt, max_attempts, exc.orig,
                    )
                    continue
                raise
            except BaseException:
                await session.rollback()
                discard_pending_events(session)
                raise

            await publish_pending_events(session, redis)
            return result

    msg = "run_in_transaction exhausted its attempts without a result"
    raise RuntimeError(msg)
