"""
Database engine and session management for the payment gateway.

Uses SQLAlchemy async engine with aiosqlite by default. Control numbers,
payments and services all live here; the two racy operations (redemption
and terminal-state protection) rely on conditional UPDATEs against this
store rather than in-process locks.
"""
import logging

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Engine ──────────────────────────────────────────────────────────

# sqlite:///... → sqlite+aiosqlite:///... for the async driver
_raw_url = settings.database_url
if _raw_url.startswith("sqlite:///"):
    _async_url = _raw_url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
else:
    _async_url = _raw_url

engine = create_async_engine(
    _async_url,
    echo=False,
    future=True,
)


def configure_sqlite(async_engine) -> None:
    """
    Let SQLAlchemy own SQLite transaction boundaries.

    pysqlite defers BEGIN until the first DML statement, which breaks
    SAVEPOINT and lets two writers deadlock on a read-then-write upgrade.
    With the driver's own transaction handling switched off, every transaction starts with
    BEGIN IMMEDIATE and writers queue on the busy timeout instead.
    """
    if async_engine.dialect.name != "sqlite":
        return

    @event.listens_for(async_engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(async_engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


configure_sqlite(engine)

async_session = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


# ── Helpers ─────────────────────────────────────────────────────────

async def init_db() -> None:
    """Create all tables. Called once on server startup."""
    import db_models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables created (or already exist)")


async def ping(db: AsyncSession) -> bool:
    """Round-trip a trivial query; used by the health check."""
    result = await db.execute(text("SELECT 1"))
    return result.scalar() == 1


async def get_db() -> AsyncSession:
    """FastAPI dependency — yields an async session."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


def insert_ignore(db: AsyncSession, model):
    """
    INSERT ... ON CONFLICT DO NOTHING for the session's dialect.

    rowcount == 0 on the result means the row already existed.
    """
    if db.get_bind().dialect.name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as dialect_insert
    else:
        from sqlalchemy.dialects.sqlite import insert as dialect_insert
    return dialect_insert(model)
