# start src/nanoclaw/db/models.py
"""SQLAlchemy ORM models for the NanoClaw store.

Timestamps are stored as ISO 8601 text, booleans as integers, and the
per-group container config as a JSON string.
"""

from __future__ import annotations

from sqlalchemy import Index, Integer, Text, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    """Declarative base for all NanoClaw tables."""


class ScheduledTask(Base):
    """A task scheduled by an agent over IPC."""

    __tablename__ = "scheduled_tasks"
    __table_args__ = (
        Index("idx_next_run", "next_run"),
        Index("idx_status", "status"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    group_folder: Mapped[str] = mapped_column(Text, nullable=False)
    chat_jid: Mapped[str] = mapped_column(Text, nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    schedule_type: Mapped[str] = mapped_column(Text, nullable=False)
    schedule_value: Mapped[str] = mapped_column(Text, nullable=False)
    context_mode: Mapped[str | None] = mapped_column(Text, server_default="isolated")
    next_run: Mapped[str | None] = mapped_column(Text)
    last_run: Mapped[str | None] = mapped_column(Text)
    last_result: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str | None] = mapped_column(Text, server_default="active")
    created_at: Mapped[str] = mapped_column(Text, nullable=False)


class SessionRecord(Base):
    """The agent session to resume for a group."""

    __tablename__ = "sessions"

    group_folder: Mapped[str] = mapped_column(Text, primary_key=True)
    session_id: Mapped[str] = mapped_column(Text, nullable=False)


class RegisteredGroup(Base):
    """A chat registered for agent handling, keyed by chat id."""

    __tablename__ = "registered_groups"

    jid: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    folder: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    trigger_pattern: Mapped[str] = mapped_column(Text, nullable=False)
    added_at: Mapped[str] = mapped_column(Text, nullable=False)
    container_config: Mapped[str | None] = mapped_column(Text)
    requires_trigger: Mapped[int | None] = mapped_column(Integer, server_default="1")


def create_engine_for_path(db_path: str) -> Engine:
    """Create an engine for a SQLite file, or a shared in-memory database.

    Args:
        db_path: Path to the database file, or ``:memory:``.
    """
    if db_path == ":memory:":
        # One connection for the whole engine, otherwise every session
        # would see its own empty database.
        return create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(f"sqlite:///{db_path}")


# end src/nanoclaw/db/models.py
