from pathlib import Path

import allure
from sqlalchemy import text

from manuscript_loop.orchestrator.repository import TaskStore

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Persistence"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    store = TaskStore(tmp_path / "migrations.db")
    store.init_schema()
    store.init_schema()

    with store.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar()
        tables = connection.execute(
            text(
                "SELECT name FROM sqlite_master WHERE type = 'table' "
                "AND name IN ('tasks', 'task_events', 'loop_state') ORDER BY name",
            ),
        ).scalars()
        table_names = list(tables)
        loop_rows = connection.execute(text("SELECT COUNT(*) FROM loop_state")).scalar()
    store.close()

    assert version == "20261019_0001"
    assert table_names == ["loop_state", "task_events", "tasks"]
    assert loop_rows == 1
