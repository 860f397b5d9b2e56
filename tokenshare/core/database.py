import structlog
from decimal import Decimal
from typing import Any

from sqlalchemy import Numeric, event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from tokenshare.core.config import settings

logger = structlog.get_logger()


def _enable_sqlite_immediate_transactions(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock up front.

    SQLite has no row locks and ignores FOR UPDATE; BEGIN IMMEDIATE gives the
    same per-transaction serialization the PostgreSQL row locks provide.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        # Disable the driver's implicit BEGIN so ours is the only one emitted
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str, *, echo: bool = False, **kwargs: Any) -> AsyncEngine:
    """Create an async engine with the pool/timeout settings for the URL's dialect."""
    backend = make_url(url).get_backend_name()
    if backend == "sqlite":
        engine = create_async_engine(url, echo=echo, **kwargs)
        _enable_sqlite_immediate_transactions(engine)
        return engine

    options: dict[str, Any] = {
        "pool_size": 20,
        "max_overflow": 10,
        "pool_pre_ping": True,           # Drop stale connections before use
        "pool_recycle": 1800,            # Recycle connections every 30 min
        "pool_timeout": 30,              # Wait max 30s for a pool connection before raising
        "connect_args": {
            "server_settings": {
                "statement_timeout": "30000",
                "idle_in_transaction_session_timeout": "60000",
                "lock_timeout": "10000",  # 10s max waiting for a project row lock
            },
            "command_timeout": 30,
        },
    }
    options.update(kwargs)
    return create_async_engine(url, echo=echo, **options)


engine = build_engine(settings.DATABASE_URL, echo=settings.APP_DEBUG)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    type_annotation_map = {
        Decimal: Numeric(19, 4),
    }


async def get_db() -> AsyncSession:  # type: ignore[misc]
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
