"""
Database configuration and session management.
Uses PostgreSQL via asyncpg with SQLAlchemy 2 async engine.
"""

import logging
import ssl
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from adpulse.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _get_connect_args(url: str) -> dict:
    """Enable SSL for hosted Postgres that sits behind an SSL proxy."""
    if _is_sqlite(url):
        return {}
    args = {"timeout": 30}  # Fail fast if DB unreachable
    if "sslmode=require" in url or "rlwy.net" in url:
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        args["ssl"] = ctx
    return args


def _engine_kwargs(url: str) -> dict:
    kwargs = {"echo": False, "connect_args": _get_connect_args(url)}
    if not _is_sqlite(url):
        kwargs.update(pool_size=5, max_overflow=10, pool_pre_ping=True)
    return kwargs


engine = create_async_engine(settings.database_url, **_engine_kwargs(settings.database_url))

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncSession:
    """Dependency that provides a database session with auto-commit/rollback."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def upsert_statement(
    session: AsyncSession,
    model,
    rows: list[dict],
    conflict_columns: list[str],
    update_columns: list[str],
):
    """
    INSERT ... ON CONFLICT (conflict_columns) DO UPDATE for the session's dialect.
    PostgreSQL in production, SQLite under test; both expose the same API.
    """
    dialect = session.get_bind().dialect.name
    insert = sqlite_insert if dialect == "sqlite" else pg_insert
    stmt = insert(model).values(rows)
    return stmt.on_conflict_do_update(
        index_elements=conflict_columns,
        set_={col: stmt.excluded[col] for col in update_columns},
    )


async def init_db():
    """
    Create all tables defined in models.
    create_all only creates tables that don't exist yet; there is no migration step.
    """
    # Import models to ensure they are registered with Base.metadata
    import adpulse.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database initialized with {len(Base.metadata.tables)} tables: "
                    f"{', '.join(Base.metadata.tables.keys())}")


async def check_db_connection() -> bool:
    """Test database connectivity."""
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
