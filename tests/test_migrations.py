from pathlib import Path

import allure
from sqlalchemy import inspect, text

from agent_crew.engine.repository import EngineRepository

pytestmark = [
    allure.epic("Runner Fleet"),
    allure.feature("Persistence"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = EngineRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
    assert version == "20261017_0002"

    tables = set(inspect(repository.engine).get_table_names())
    assert {
        "agents",
        "custom_tools",
        "provider_credentials",
        "teams",
        "runners",
        "tasks",
        "agent_executions",
        "team_runs",
        "team_messages",
        "delegations",
        "usage_records",
        "output_routes",
        "webhook_deliveries",
    } <= tables
    for table in ("tasks", "team_runs"):
        columns = {column["name"] for column in inspect(repository.engine).get_columns(table)}
        assert "failure_class" in columns
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    repository = EngineRepository(tmp_path / "twice.db")
    repository.init_schema()
    repository.init_schema()

    assert repository.list_runners() == []
    repository.close()
