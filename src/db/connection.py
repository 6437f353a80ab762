"""Database connection management for the Stockbridge state store.

Usage:
    from src.db.connection import create_state_engine, init_db, make_session_factory

    engine = create_state_engine()      # DATABASE_URL or platform default
    init_db(engine)                     # Create tables
    SessionLocal = make_session_factory(engine)
"""

import os
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from src.db.models import Base


def get_database_url() -> str:
    """Get database URL from environment or use default SQLite.

    Precedence:
    1. DATABASE_URL (canonical)
    2. STOCKBRIDGE_DB_PATH (converted to sqlite URL)
    3. sqlite file in the platform data directory
    """
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if database_url:
        return database_url

    db_path = os.environ.get("STOCKBRIDGE_DB_PATH", "").strip()
    if db_path:
        if db_path.startswith("sqlite:"):
            return db_path
        return f"sqlite:///{db_path}"

    from src.utils.paths import ensure_dirs_exist, get_default_db_path
    ensure_dirs_exist()
    return f"sqlite:///{get_default_db_path()}"


def _is_memory_url(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:")


def create_state_engine(url: str | None = None) -> Engine:
    """Create the engine backing the state store.

    In-memory SQLite uses a StaticPool so the write-behind timer thread and
    the owning thread see the same database.

    Args:
        url: Database URL; defaults to get_database_url().

    Returns:
        Configured SQLAlchemy Engine.
    """
    url = url or get_database_url()
    kwargs: dict[str, Any] = {
        "echo": os.environ.get("SQL_ECHO", "").lower() == "true",
    }
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if _is_memory_url(url):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)

    if url.startswith("sqlite") and not _is_memory_url(url):
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
            """Enable WAL so reads never block the write-behind flush.

            synchronous=NORMAL: commits are durable after WAL fsync; a power
            loss may drop the last few writes (acceptable for a local app).
            """
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA synchronous=NORMAL;")
            cursor.close()

    return engine


def init_db(engine: Engine) -> None:
    """Create all tables defined in the models.

    Safe to call multiple times; only creates tables that don't exist.
    """
    Base.metadata.create_all(bind=engine)


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Build a session factory bound to ``engine``."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Yield a session that commits on success and rolls back on error."""
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
