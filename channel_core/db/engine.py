"""
SQLAlchemy engine factory and process-wide engine.

PostgreSQL engines get a connection pool sized for the sync workers plus the
HTTP listener, and a per-statement timeout. SQLite engines (local runs and the
test suite) drop the schema prefix through ``schema_translate_map``.
"""

from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from channel_core.config import DATABASE_URL, SCHEMA, STORE_TIMEOUT_SECONDS

if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set.")


def create_db_engine(url: str) -> Engine:
    """
    Build an engine for the given database URL.

    Args:
        url: SQLAlchemy database URL

    Returns:
        Engine: Configured engine. For SQLite the returned engine already
        carries the schema translation, so ORM tables work unchanged.
    """
    if url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool
        sqlite_engine = create_engine(url, future=True, **kwargs)
        return sqlite_engine.execution_options(schema_translate_map={SCHEMA: None})

    return create_engine(
        url,
        future=True,
        pool_size=10,  # Number of connections to maintain in the pool
        max_overflow=20,  # Additional connections when pool is exhausted
        pool_pre_ping=True,  # Verify connections before using
        pool_recycle=3600,  # Recycle connections after 1 hour
        connect_args={"options": f"-c statement_timeout={int(STORE_TIMEOUT_SECONDS * 1000)}"},
        echo=False,
    )


engine: Engine = create_db_engine(DATABASE_URL)


def check_engine_health(db_engine: Engine = engine) -> bool:
    """
    Check if database engine is healthy and connections are working.

    This function is used by the /ready endpoint to verify database
    connectivity before allowing traffic to the service.

    Returns:
        bool: True if database is reachable and healthy, False otherwise
    """
    try:
        with db_engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
