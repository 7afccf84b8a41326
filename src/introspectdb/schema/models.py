"""SQLAlchemy ORM models for IntrospectDB's own tables.

The only internal table is the migration ledger. It is excluded from
discovery and is append-only outside of an explicit ``rollback_last()``.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

LEDGER_TABLE = "introspectdb_migrations"


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for IntrospectDB internal models."""

    pass


class MigrationLedger(Base):
    """One applied migration."""

    __tablename__ = LEDGER_TABLE
    # AUTOINCREMENT keeps ids monotonic even after a rollback removes the last row.
    __table_args__ = {"sqlite_autoincrement": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<MigrationLedger(id={self.id}, name='{self.name}')>"
