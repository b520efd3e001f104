import os
from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, AsyncEngine, create_async_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import NullPool, StaticPool


engine: Optional[AsyncEngine] = None
AsyncSessionLocal: Optional[sessionmaker] = None
Base = declarative_base()


def _normalize_url(database_url: str) -> str:
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


def _enable_sqlite_savepoints(async_engine: AsyncEngine) -> None:
    # pysqlite/aiosqlite emit their own BEGIN lazily, which breaks SAVEPOINT.
    # Take over transaction control so begin_nested() behaves like Postgres.

    @event.listens_for(async_engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(async_engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(database_url: str) -> AsyncEngine:
    """Create an async engine for ``database_url`` with per-backend pooling."""

    database_url = _normalize_url(database_url)
    engine_kwargs = {"echo": False}

    is_sqlite = database_url.startswith("sqlite+aiosqlite://")
    if is_sqlite:
        # In-memory SQLite must reuse the same connection to persist schema/data.
        if ":memory:" in database_url:
            engine_kwargs["poolclass"] = StaticPool
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        else:
            # File-backed SQLite in CI: do not pool to avoid cross-loop / late GC issues.
            engine_kwargs["poolclass"] = NullPool
    else:
        engine_kwargs["pool_pre_ping"] = True

    async_engine = create_async_engine(database_url, **engine_kwargs)
    if is_sqlite:
        _enable_sqlite_savepoints(async_engine)
    return async_engine


def build_sessionmaker(async_engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    """Return a lazily created SQLAlchemy engine.

    The engine is created on first use using the ``DATABASE_URL`` environment
    variable. Importing this module has no side effects so tests can set the
    environment variable at runtime. A ``RuntimeError`` is raised only if the
    function is called without ``DATABASE_URL`` being configured.
    """

    global engine, AsyncSessionLocal

    if engine is None:
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL environment variable is required")

        engine = build_engine(database_url)
        AsyncSessionLocal = build_sessionmaker(engine)

    return engine


async def get_session() -> AsyncSession:
    """Provide a database session for FastAPI dependencies."""

    if AsyncSessionLocal is None:
        get_engine()

    assert AsyncSessionLocal is not None  # for type checkers
    async with AsyncSessionLocal() as session:
        yield session
