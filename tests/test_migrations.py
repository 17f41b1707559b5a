from pathlib import Path

import allure
from sqlalchemy import inspect, text

from durable_tasks.queue.repository import TaskStore

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    store = TaskStore(tmp_path / "migrations.db")
    store.init_schema()

    with store.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
    assert version == "20261018_0002"

    inspector = inspect(store.engine)
    assert {"tasks", "dead_letters", "workers", "task_events"} <= set(inspector.get_table_names())
    task_columns = {column["name"] for column in inspector.get_columns("tasks")}
    assert {"progress_percent", "progress_message", "replay_of"} <= task_columns
    assert "replay_of" in {column["name"] for column in inspector.get_columns("dead_letters")}
    store.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    store = TaskStore(tmp_path / "twice.db")
    store.init_schema()
    store.init_schema()

    assert store.counts().pending == 0
    store.close()
