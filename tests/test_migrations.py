from pathlib import Path

import allure
from sqlalchemy import inspect, text

from agent_controller.controller.repository import ControllerRepository

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = ControllerRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
    tables = set(inspect(repository.engine).get_table_names())
    repository.close()

    assert version == "20261018_0003"
    assert {
        "tasks",
        "task_events",
        "controller_state",
        "controller_settings",
        "approval_requests",
        "action_logs",
        "token_history",
        "execution_sessions",
        "session_logs",
        "operator_commands",
    } <= tables


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    first = ControllerRepository(db_path)
    first.init_schema()
    first.enqueue_command("pause")
    first.close()

    second = ControllerRepository(db_path)
    second.init_schema()

    assert [command.name for command in second.list_pending_commands()] == ["pause"]
    second.close()
