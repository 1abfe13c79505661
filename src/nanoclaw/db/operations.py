# start src/nanoclaw/db/operations.py
"""Persistence for scheduled tasks, agent sessions, and registered groups.

All queries use SQLAlchemy constructs; upserts use the SQLite
``INSERT ... ON CONFLICT`` dialect.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError
from sqlalchemy import delete, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from nanoclaw.db.models import Base, SessionRecord, create_engine_for_path
from nanoclaw.db.models import RegisteredGroup as RegisteredGroupRow
from nanoclaw.db.models import ScheduledTask as ScheduledTaskRow
from nanoclaw.types import ContainerConfig, RegisteredGroup, ScheduledTask

logger = logging.getLogger(__name__)

_UPDATABLE_TASK_FIELDS = frozenset(
    {
        "prompt",
        "schedule_type",
        "schedule_value",
        "next_run",
        "last_run",
        "last_result",
        "status",
    }
)


class TaskStore:
    """SQLite-backed store shared by the orchestrator and the IPC watcher.

    Args:
        db_path: Path to the database file, or ``:memory:`` for tests. The
            parent directory is created if missing.
    """

    def __init__(self, db_path: str | Path) -> None:
        db_path = str(db_path)
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_engine_for_path(db_path)
        Base.metadata.create_all(self.engine)
        logger.info("Database initialized at %s", db_path)

    def close(self) -> None:
        """Dispose of the engine's connections."""
        self.engine.dispose()

    # --- Scheduled tasks ---

    def create_task(self, task: ScheduledTask) -> None:
        """Insert a new scheduled task."""
        with Session(self.engine) as session:
            session.add(
                ScheduledTaskRow(
                    id=task.id,
                    group_folder=task.group_folder,
                    chat_jid=task.chat_jid,
                    prompt=task.prompt,
                    schedule_type=task.schedule_type,
                    schedule_value=task.schedule_value,
                    context_mode=task.context_mode,
                    next_run=task.next_run,
                    status=task.status,
                    created_at=task.created_at,
                )
            )
            session.commit()

    def get_task_by_id(self, task_id: str) -> ScheduledTask | None:
        """Fetch a task by id, or None if it does not exist."""
        with Session(self.engine) as session:
            row = session.get(ScheduledTaskRow, task_id)
            return _row_to_task(row) if row else None

    def get_tasks_for_group(self, group_folder: str) -> list[ScheduledTask]:
        """Tasks owned by one group, newest first."""
        with Session(self.engine) as session:
            rows = session.scalars(
                select(ScheduledTaskRow)
                .where(ScheduledTaskRow.group_folder == group_folder)
                .order_by(ScheduledTaskRow.created_at.desc())
            ).all()
            return [_row_to_task(r) for r in rows]

    def get_all_tasks(self) -> list[ScheduledTask]:
        """Every task, newest first."""
        with Session(self.engine) as session:
            rows = session.scalars(
                select(ScheduledTaskRow).order_by(ScheduledTaskRow.created_at.desc())
            ).all()
            return [_row_to_task(r) for r in rows]

    def update_task(self, task_id: str, **fields: Any) -> None:
        """Update selected columns of a task.

        Args:
            task_id: Task to update.
            **fields: Column values, e.g. ``status="paused"``.

        Raises:
            ValueError: If a field is not updatable.
        """
        unknown = set(fields) - _UPDATABLE_TASK_FIELDS
        if unknown:
            raise ValueError(f"Cannot update task fields: {', '.join(sorted(unknown))}")
        if not fields:
            return
        with Session(self.engine) as session:
            session.execute(
                update(ScheduledTaskRow).where(ScheduledTaskRow.id == task_id).values(**fields)
            )
            session.commit()

    def delete_task(self, task_id: str) -> None:
        """Delete a task. Deleting a missing task is a no-op."""
        with Session(self.engine) as session:
            session.execute(delete(ScheduledTaskRow).where(ScheduledTaskRow.id == task_id))
            session.commit()

    # --- Sessions ---

    def get_session(self, group_folder: str) -> str | None:
        """The stored agent session id for a group."""
        with Session(self.engine) as session:
            row = session.get(SessionRecord, group_folder)
            return row.session_id if row else None

    def set_session(self, group_folder: str, session_id: str) -> None:
        """Store or replace a group's agent session id."""
        with Session(self.engine) as session:
            stmt = sqlite_insert(SessionRecord).values(
                group_folder=group_folder, session_id=session_id
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["group_folder"],
                set_={"session_id": stmt.excluded.session_id},
            )
            session.execute(stmt)
            session.commit()

    def get_all_sessions(self) -> dict[str, str]:
        """Map of group folder to session id."""
        with Session(self.engine) as session:
            rows = session.scalars(select(SessionRecord)).all()
            return {r.group_folder: r.session_id for r in rows}

    # --- Registered groups ---

    def get_registered_group(self, jid: str) -> RegisteredGroup | None:
        """Fetch a registered group by chat id."""
        with Session(self.engine) as session:
            row = session.get(RegisteredGroupRow, jid)
            return _row_to_group(row) if row else None

    def set_registered_group(self, jid: str, group: RegisteredGroup) -> None:
        """Insert or replace a registered group."""
        container_config = (
            group.container_config.model_dump_json(by_alias=True, exclude_none=True)
            if group.container_config
            else None
        )
        with Session(self.engine) as session:
            stmt = sqlite_insert(RegisteredGroupRow).values(
                jid=jid,
                name=group.name,
                folder=group.folder,
                trigger_pattern=group.trigger,
                added_at=group.added_at,
                container_config=container_config,
                requires_trigger=0 if group.requires_trigger is False else 1,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["jid"],
                set_={
                    "name": stmt.excluded.name,
                    "folder": stmt.excluded.folder,
                    "trigger_pattern": stmt.excluded.trigger_pattern,
                    "added_at": stmt.excluded.added_at,
                    "container_config": stmt.excluded.container_config,
                    "requires_trigger": stmt.excluded.requires_trigger,
                },
            )
            session.execute(stmt)
            session.commit()

    def get_all_registered_groups(self) -> dict[str, RegisteredGroup]:
        """Map of chat id to registered group."""
        with Session(self.engine) as session:
            rows = session.scalars(select(RegisteredGroupRow)).all()
            return {r.jid: _row_to_group(r) for r in rows}


def _row_to_task(row: ScheduledTaskRow) -> ScheduledTask:
    return ScheduledTask(
        id=row.id,
        group_folder=row.group_folder,
        chat_jid=row.chat_jid,
        prompt=row.prompt,
        schedule_type=row.schedule_type,
        schedule_value=row.schedule_value,
        context_mode=row.context_mode or "isolated",
        next_run=row.next_run,
        last_run=row.last_run,
        last_result=row.last_result,
        status=row.status or "active",
        created_at=row.created_at,
    )


def _row_to_group(row: RegisteredGroupRow) -> RegisteredGroup:
    container_config = None
    if row.container_config:
        try:
            container_config = ContainerConfig.model_validate_json(row.container_config)
        except ValidationError as exc:
            logger.warning("Ignoring invalid container_config for group %s: %s", row.jid, exc)

    return RegisteredGroup(
        name=row.name,
        folder=row.folder,
        trigger=row.trigger_pattern,
        added_at=row.added_at,
        container_config=container_config,
        requires_trigger=None if row.requires_trigger is None else bool(row.requires_trigger),
    )


# end src/nanoclaw/db/operations.py
