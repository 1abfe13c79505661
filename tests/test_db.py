# start tests/test_db.py
"""Tests for nanoclaw.db.operations module. Uses an in-memory SQLite database."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from sqlalchemy import text

from nanoclaw.db.operations import TaskStore
from nanoclaw.types import ContainerConfig, RegisteredGroup, ScheduledTask


@pytest.fixture
def store() -> Iterator[TaskStore]:
    """A fresh in-memory store per test."""
    store = TaskStore(":memory:")
    yield store
    store.close()


def make_task(task_id: str, folder: str = "family", created_at: str = "2024-01-01T00:00:00Z"):
    return ScheduledTask(
        id=task_id,
        group_folder=folder,
        chat_jid=f"{folder}@g.us",
        prompt="summarize the news",
        schedule_type="cron",
        schedule_value="0 9 * * *",
        next_run="2024-01-02T09:00:00Z",
        created_at=created_at,
    )


class TestTasks:
    """Tests for task persistence."""

    def test_create_and_get(self, store: TaskStore) -> None:
        task = make_task("t1")
        store.create_task(task)
        assert store.get_task_by_id("t1") == task

    def test_missing_task(self, store: TaskStore) -> None:
        assert store.get_task_by_id("nope") is None

    def test_listing_newest_first(self, store: TaskStore) -> None:
        store.create_task(make_task("old", created_at="2024-01-01T00:00:00Z"))
        store.create_task(make_task("new", created_at="2024-02-01T00:00:00Z"))
        store.create_task(make_task("elsewhere", folder="work", created_at="2023-12-01T00:00:00Z"))
        assert [t.id for t in store.get_all_tasks()] == ["new", "old", "elsewhere"]
        assert [t.id for t in store.get_tasks_for_group("family")] == ["new", "old"]
        assert [t.id for t in store.get_tasks_for_group("work")] == ["elsewhere"]

    def test_update_status(self, store: TaskStore) -> None:
        store.create_task(make_task("t1"))
        store.update_task("t1", status="paused", last_result="ok")
        task = store.get_task_by_id("t1")
        assert task is not None
        assert task.status == "paused"
        assert task.last_result == "ok"

    def test_update_rejects_unknown_fields(self, store: TaskStore) -> None:
        store.create_task(make_task("t1"))
        with pytest.raises(ValueError, match="Cannot update task fields: group_folder"):
            store.update_task("t1", group_folder="work")

    def test_empty_update_is_noop(self, store: TaskStore) -> None:
        store.create_task(make_task("t1"))
        store.update_task("t1")
        assert store.get_task_by_id("t1") == make_task("t1")

    def test_delete(self, store: TaskStore) -> None:
        store.create_task(make_task("t1"))
        store.delete_task("t1")
        store.delete_task("t1")
        assert store.get_task_by_id("t1") is None


class TestSessions:
    """Tests for session ids per group."""

    def test_set_get_and_replace(self, store: TaskStore) -> None:
        assert store.get_session("family") is None
        store.set_session("family", "s-1")
        store.set_session("family", "s-2")
        store.set_session("work", "s-9")
        assert store.get_session("family") == "s-2"
        assert store.get_all_sessions() == {"family": "s-2", "work": "s-9"}


class TestRegisteredGroups:
    """Tests for registered group persistence."""

    def test_round_trip_with_container_config(self, store: TaskStore) -> None:
        group = RegisteredGroup(
            name="Family",
            folder="family",
            trigger="@Andy",
            added_at="2024-01-01T00:00:00Z",
            container_config=ContainerConfig(timeout_ms=60000, image="custom:1"),
            requires_trigger=False,
        )
        store.set_registered_group("family@g.us", group)
        loaded = store.get_registered_group("family@g.us")
        assert loaded == group

    def test_requires_trigger_defaults_true(self, store: TaskStore) -> None:
        store.set_registered_group("a@g.us", RegisteredGroup(name="A", folder="a"))
        loaded = store.get_registered_group("a@g.us")
        assert loaded is not None
        assert loaded.requires_trigger is True
        assert loaded.container_config is None

    def test_upsert_replaces(self, store: TaskStore) -> None:
        store.set_registered_group("a@g.us", RegisteredGroup(name="A", folder="a"))
        store.set_registered_group("a@g.us", RegisteredGroup(name="Renamed", folder="a"))
        groups = store.get_all_registered_groups()
        assert list(groups) == ["a@g.us"]
        assert groups["a@g.us"].name == "Renamed"

    def test_invalid_container_config_ignored(
        self, store: TaskStore, caplog: pytest.LogCaptureFixture
    ) -> None:
        store.set_registered_group("a@g.us", RegisteredGroup(name="A", folder="a"))
        with store.engine.begin() as conn:
            conn.execute(
                text("UPDATE registered_groups SET container_config = :c WHERE jid = 'a@g.us'"),
                {"c": '{"timeout": -1}'},
            )
        loaded = store.get_registered_group("a@g.us")
        assert loaded is not None
        assert loaded.container_config is None
        assert "invalid container_config" in caplog.text


class TestFileDatabase:
    """A file-backed store creates its directory and persists."""

    def test_persists_across_instances(self, tmp_path: Path) -> None:
        path = tmp_path / "store" / "messages.db"
        first = TaskStore(path)
        first.set_session("family", "s-1")
        first.close()
        second = TaskStore(path)
        assert second.get_session("family") == "s-1"
        second.close()


# end tests/test_db.py
