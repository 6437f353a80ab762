"""SQLAlchemy ORM models for the Stockbridge state database.

Integration state is stored as a durable key/value table: one row per
collection key, holding that collection's JSON payload. Collections are
rewritten whole by the write-behind persister, so the table never needs
per-record migrations. Uses SQLAlchemy 2.0 style with Mapped and
mapped_column.
"""

from datetime import UTC, datetime

from sqlalchemy import Integer, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(UTC).isoformat()


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class StateEntry(Base):
    """One persisted collection of integration state.

    Attributes:
        key: Collection key (e.g. 'inventory.platform.connections.v1').
        payload: JSON array text for the collection.
        revision: Monotonic write counter; bumped on every rewrite.
        updated_at: ISO8601 UTC timestamp of the last write.
    """

    __tablename__ = "state_entries"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False, default=utc_now_iso)

    def __repr__(self) -> str:
        return f"<StateEntry(key={self.key!r}, revision={self.revision})>"
