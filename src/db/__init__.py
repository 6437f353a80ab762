"""Database module for Stockbridge state persistence."""

from src.db.connection import (
    create_state_engine,
    get_database_url,
    init_db,
    make_session_factory,
    session_scope,
)
from src.db.models import Base, StateEntry

__all__ = [
    # Models
    "Base",
    "StateEntry",
    # Connection
    "create_state_engine",
    "get_database_url",
    "init_db",
    "make_session_factory",
    "session_scope",
]
