from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from farmslot.app.core.settings import get_settings


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    """
    SQLite has no row locks, so FOR UPDATE is a no-op there. Taking the write
    lock when the transaction begins makes the transaction itself the
    serialization point, like row locks do on PostgreSQL.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # stop the driver from emitting its own deferred BEGIN
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str) -> AsyncEngine:
    """Create the async engine for a URL with pool and timeout settings applied."""
    settings = get_settings()

    if url.startswith("sqlite"):
        kwargs = {
            # busy timeout (seconds) while waiting for another writer
            "connect_args": {"timeout": max(settings.DB_STATEMENT_TIMEOUT_MS / 1000, 1)},
        }
        if ":memory:" in url:
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"]["check_same_thread"] = False
        engine = create_async_engine(url, echo=False, **kwargs)
        _use_immediate_transactions(engine)
        return engine

    return create_async_engine(
        url=url,
        echo=False,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_pre_ping=True,
        pool_recycle=settings.DB_POOL_RECYCLE,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        connect_args={
            "server_settings": {
                "statement_timeout": str(settings.DB_STATEMENT_TIMEOUT_MS),
                "idle_in_transaction_session_timeout": str(settings.DB_STATEMENT_TIMEOUT_MS * 6),
            },
        },
    )


engine = build_engine(get_settings().db_url)
async_session = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def transaction(
    session_factory: async_sessionmaker[AsyncSession] = async_session,
) -> AsyncIterator[AsyncSession]:
    """
    Run a unit of work in its own session and transaction.

    Commits when the block exits normally, rolls back on any exception:

        async with transaction() as session:
            await ReservationService(session).cancel_booking(...)
    """
    async with session_factory() as session:
        async with session.begin():
            yield session
