from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner, Result

from agent_crew.engine.controllers import EngineCliController, RunInspectCommand
from agent_crew.main import agent_crew

pytestmark = [
    allure.epic("Operator CLI"),
    allure.feature("Commands"),
]


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "AGENT_CREW_DB_PATH",
        "AGENT_CREW_ENCRYPTION_KEY",
        "AGENT_CREW_WORKSPACE_ID",
        "AGENT_CREW_MAX_CONCURRENCY",
        "AGENT_CREW_POLL_INTERVAL_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def db(tmp_path: Path) -> Path:
    return tmp_path / "cli.db"


def _invoke(db: Path, *args: str) -> Result:
    group, command, *rest = args
    return CliRunner().invoke(agent_crew, [group, command, "--db-path", str(db), *rest])


def _id(result: Result, key: str) -> str:
    match = re.search(rf"{key}=(\S+)", result.output)
    assert match is not None, result.output
    return match.group(1)


def _add_agent(db: Path, name: str = "Writer", *extra: str) -> str:
    result = _invoke(
        db,
        "agents",
        "add",
        "--name",
        name,
        "--provider",
        "ollama",
        "--model",
        "llama3",
        *extra,
    )
    assert result.exit_code == 0, result.output
    return _id(result, "agent_id")


def _add_team(db: Path, tmp_path: Path, agent_id: str) -> str:
    config = tmp_path / "team.json"
    config.write_text(
        json.dumps({"steps": [{"agent_id": agent_id, "step_name": "Draft"}]}),
        encoding="utf-8",
    )
    result = _invoke(
        db,
        "teams",
        "add",
        "--name",
        "Newsroom",
        "--mode",
        "pipeline",
        "--config-file",
        str(config),
    )
    assert result.exit_code == 0, result.output
    return _id(result, "team_id")


def test_agents_add_and_list(db: Path) -> None:
    result = _invoke(
        db,
        "agents",
        "add",
        "--name",
        "Researcher",
        "--provider",
        "OpenAI",
        "--model",
        "gpt-4o-mini",
        "--tool",
        "web_search",
        "--temperature",
        "0.3",
    )

    assert result.exit_code == 0, result.output
    assert "Agent registered: agent_id=" in result.output
    assert "provider=openai model=gpt-4o-mini" in result.output

    listing = _invoke(db, "agents", "list")
    assert listing.exit_code == 0
    assert "Agents: 1" in listing.output
    assert "name=Researcher" in listing.output
    assert "tools=web_search" in listing.output


def test_agents_add_rejects_unknown_tool(db: Path) -> None:
    result = _invoke(
        db,
        "agents",
        "add",
        "--name",
        "Writer",
        "--provider",
        "ollama",
        "--model",
        "llama3",
        "--tool",
        "teleport",
    )

    assert result.exit_code == 1
    assert "Unknown tool(s): teleport" in result.output


def test_tools_add_with_parameters_and_headers(db: Path, tmp_path: Path) -> None:
    parameters = tmp_path / "params.json"
    parameters.write_text(
        json.dumps({"properties": {"id": {"type": "string"}}, "required": ["id"]}),
        encoding="utf-8",
    )

    result = _invoke(
        db,
        "tools",
        "add",
        "--name",
        "lookup_order",
        "--webhook-url",
        "https://hooks.example.com/orders",
        "--parameters-file",
        str(parameters),
        "--header",
        "Authorization=Bearer abc",
    )

    assert result.exit_code == 0, result.output
    tool_id = _id(result, "tool_id")
    assert f"Reference it from an agent as: custom:{tool_id}" in result.output
    _add_agent(db, "Support", "--tool", f"custom:{tool_id}")


def test_tools_add_rejects_malformed_header(db: Path) -> None:
    result = _invoke(
        db,
        "tools",
        "add",
        "--name",
        "lookup_order",
        "--webhook-url",
        "https://hooks.example.com/orders",
        "--header",
        "no-separator",
    )

    assert result.exit_code == 1
    assert "Header must look like Name=value" in result.output


def test_keys_set_reports_storage_mode(db: Path) -> None:
    result = _invoke(db, "keys", "set", "--provider", "anthropic", "--api-key", "sk-ant-1")

    assert result.exit_code == 0, result.output
    assert "API key stored: provider=anthropic (plaintext)" in result.output


def test_task_lifecycle_commands(db: Path) -> None:
    agent_id = _add_agent(db)
    enqueued = _invoke(
        db,
        "tasks",
        "enqueue",
        "--title",
        "Weekly digest",
        "--priority",
        "high",
        "--agent-id",
        agent_id,
    )
    assert enqueued.exit_code == 0, enqueued.output
    assert "status=pending priority=high" in enqueued.output
    task_id = _id(enqueued, "task_id")

    listing = _invoke(db, "tasks", "list", "--status", "pending")
    assert "Tasks: 1" in listing.output
    assert f"agent={agent_id}" in listing.output

    inspected = _invoke(db, "tasks", "inspect", "--task-id", task_id)
    assert f"Task: {task_id}" in inspected.output
    assert "Status: pending" in inspected.output
    assert "Executions: 0" in inspected.output

    cancelled = _invoke(db, "tasks", "cancel", "--task-id", task_id)
    assert cancelled.exit_code == 0
    assert f"Task cancelled: {task_id}" in cancelled.output
    assert "Status: cancelled" in _invoke(db, "tasks", "inspect", "--task-id", task_id).output

    again = _invoke(db, "tasks", "cancel", "--task-id", task_id)
    assert again.exit_code == 1
    assert "cannot be cancelled" in again.output


def test_tasks_enqueue_rejects_unknown_agent(db: Path) -> None:
    result = _invoke(db, "tasks", "enqueue", "--title", "Orphan", "--agent-id", "ghost")

    assert result.exit_code == 1
    assert "Agent not found: ghost" in result.output


def test_tasks_inspect_missing_task(db: Path) -> None:
    result = _invoke(db, "tasks", "inspect", "--task-id", "missing")

    assert result.exit_code == 0
    assert "Task not found: missing" in result.output


def test_team_run_commands(db: Path, tmp_path: Path) -> None:
    team_id = _add_team(db, tmp_path, _add_agent(db))

    created = _invoke(db, "runs", "create", "--team-id", team_id, "--input", "Cover the tides")
    assert created.exit_code == 0, created.output
    assert f"team_id={team_id} status=pending" in created.output
    run_id = _id(created, "run_id")

    listing = _invoke(db, "runs", "list")
    assert "Team runs: 1" in listing.output
    assert "input=Cover the tides" in listing.output

    inspected = _invoke(db, "runs", "inspect", "--run-id", run_id)
    assert f"Team run: {run_id}" in inspected.output
    assert "Status: pending" in inspected.output

    cancelled = _invoke(db, "runs", "cancel", "--run-id", run_id)
    assert f"Team run cancelled: {run_id}" in cancelled.output
    assert "Status: cancelled" in _invoke(db, "runs", "inspect", "--run-id", run_id).output


def test_runs_create_for_unknown_team_fails(db: Path) -> None:
    result = _invoke(db, "runs", "create", "--team-id", "ghost", "--input", "Anything")

    assert result.exit_code == 1
    assert "Team not found: ghost" in result.output


def test_teams_add_rejects_invalid_config(db: Path, tmp_path: Path) -> None:
    config = tmp_path / "team.json"
    config.write_text(json.dumps({"steps": []}), encoding="utf-8")

    result = _invoke(
        db,
        "teams",
        "add",
        "--name",
        "Empty",
        "--mode",
        "pipeline",
        "--config-file",
        str(config),
    )

    assert result.exit_code == 1
    assert "at least one step" in result.output


def test_routes_add_defaults_to_all_events(db: Path) -> None:
    result = _invoke(
        db,
        "routes",
        "add",
        "--name",
        "ops",
        "--url",
        "https://hooks.example.com/agent-crew",
        "--secret",
        "s3cret",
    )

    assert result.exit_code == 0, result.output
    assert "events=task.completed,task.failed,team_run.completed,team_run.failed" in result.output
    assert "signed=True" in result.output


def test_runner_start_once_processes_queue(db: Path) -> None:
    task = _invoke(db, "tasks", "enqueue", "--title", "Unassigned")
    task_id = _id(task, "task_id")

    result = _invoke(db, "runner", "start", "--once")

    assert result.exit_code == 0, result.output
    assert "Runner summary: runner_id=" in result.output
    assert "cycles=1 tasks_claimed=1 team_runs_claimed=0" in result.output
    inspected = _invoke(db, "tasks", "inspect", "--task-id", task_id)
    assert "Status: failed" in inspected.output
    assert "Error: Task has no assigned agent." in inspected.output
    assert "Failure class: -" in inspected.output
    assert "Runners: 0" in _invoke(db, "runners", "list").output


def test_runners_sweep_on_empty_fleet(db: Path) -> None:
    result = _invoke(db, "runners", "sweep")

    assert result.exit_code == 0
    assert "runners_marked_dead=0 tasks_requeued=0" in result.output


def test_runs_inspect_follow_streams_until_poll_limit(db: Path, tmp_path: Path) -> None:
    team_id = _add_team(db, tmp_path, _add_agent(db))
    run_id = _id(_invoke(db, "runs", "create", "--team-id", team_id, "--input", "Go"), "run_id")
    emitted: list[str] = []

    lines = EngineCliController().inspect_run(
        RunInspectCommand(
            db_path=db,
            run_id=run_id,
            follow=True,
            poll_interval_seconds=0.0,
            max_polls=1,
        ),
        emit=emitted.append,
    )

    assert emitted[0] == f"Team run: {run_id}"
    assert "Messages: 0" in emitted
    assert lines == ["Status: pending", "Output: -"]
