"""Controllers for agent-crew CLI commands."""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_crew.config import Settings
from agent_crew.engine.errors import ConfigurationError
from agent_crew.engine.models import (
    TERMINAL_TEAM_RUN_STATUSES,
    CustomToolCreate,
    FailureClass,
    TaskStatus,
    TeamMessageView,
    TeamRunStatus,
)
from agent_crew.engine.registry import RunnerRegistry
from agent_crew.engine.repository import EngineRepository
from agent_crew.engine.services import EngineService, EnqueueTask, RegisterAgent, build_runtime

PREVIEW_CHARS = 120
FOLLOW_POLL_SECONDS = 1.0


@dataclass(slots=True)
class RunnerStartCommand:
    """CLI input for starting a runner."""

    db_path: Path | None
    once: bool
    max_cycles: int | None = None
    max_idle_polls: int | None = None


@dataclass(slots=True)
class DbCommand:
    """CLI input for commands that only need the database."""

    db_path: Path | None


@dataclass(slots=True)
class AgentAddCommand:
    db_path: Path | None
    name: str
    provider: str
    model: str
    description: str | None
    system_prompt: str | None
    temperature: float | None
    tools: tuple[str, ...]


@dataclass(slots=True)
class ToolAddCommand:
    db_path: Path | None
    name: str
    webhook_url: str
    description: str
    parameters_file: Path | None
    headers: tuple[str, ...]


@dataclass(slots=True)
class KeySetCommand:
    db_path: Path | None
    provider: str
    api_key: str


@dataclass(slots=True)
class TeamAddCommand:
    db_path: Path | None
    name: str
    mode: str
    config_file: Path


@dataclass(slots=True)
class TaskEnqueueCommand:
    db_path: Path | None
    title: str
    description: str
    priority: str
    agent_id: str | None


@dataclass(slots=True)
class ListCommand:
    """CLI input for task and run listings."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class ItemCommand:
    """CLI input addressing one task or run by id."""

    db_path: Path | None
    item_id: str


@dataclass(slots=True)
class RunCreateCommand:
    db_path: Path | None
    team_id: str
    input_task: str


@dataclass(slots=True)
class RunInspectCommand:
    db_path: Path | None
    run_id: str
    follow: bool = False
    poll_interval_seconds: float = FOLLOW_POLL_SECONDS
    max_polls: int | None = None


@dataclass(slots=True)
class RouteAddCommand:
    db_path: Path | None
    name: str
    url: str
    events: tuple[str, ...]
    secret: str | None


class EngineCliController:
    """Coordinates runner, catalog, queue and inspection CLI operations."""

    def start_runner(self, command: RunnerStartCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository:
            runtime = build_runtime(
                repository=repository,
                settings=settings,
                start_threads=not command.once,
            )
            runner_id = runtime.registry.runner_id
            summary = runtime.run(
                once=command.once,
                max_cycles=command.max_cycles,
                max_idle_polls=command.max_idle_polls,
            )

        return [
            f"Runner summary: runner_id={runner_id} cycles={summary.cycles} "
            f"tasks_claimed={summary.tasks_claimed} "
            f"team_runs_claimed={summary.team_runs_claimed} idle_polls={summary.idle_polls}",
        ]

    def list_runners(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            runners = repository.list_runners()

        lines = [f"Runners: {len(runners)}"]
        for runner in runners:
            lines.append(
                f"  {runner.id} name={runner.instance_name} status={runner.status.value} "
                f"load={runner.current_load}/{runner.max_concurrency} "
                f"last_heartbeat={runner.last_heartbeat.isoformat()}",
            )
        return lines

    def sweep(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            summary = RunnerRegistry(repository=repository, settings=settings.runner).sweep()
        return [
            "Sweep summary: "
            f"runners_marked_dead={summary.runners_marked_dead} "
            f"tasks_requeued={summary.tasks_requeued} "
            f"team_runs_requeued={summary.team_runs_requeued} "
            f"executions_failed={summary.executions_failed}",
        ]

    def add_agent(self, command: AgentAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            agent = EngineService(repository=repository, settings=settings).register_agent(
                RegisterAgent(
                    name=command.name,
                    provider=command.provider,
                    model=command.model,
                    description=command.description,
                    system_prompt=command.system_prompt,
                    temperature=command.temperature,
                    tools=command.tools,
                ),
            )
        return [
            f"Agent registered: agent_id={agent.id} name={agent.name} "
            f"provider={agent.provider} model={agent.model}",
        ]

    def list_agents(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            agents = repository.list_agents(workspace_id=settings.workspace_id)

        lines = [f"Agents: {len(agents)}"]
        for agent in agents:
            lines.append(
                f"  {agent.id} name={agent.name} provider={agent.provider} "
                f"model={agent.model} tools={','.join(agent.tools) or '-'}",
            )
        return lines

    def add_tool(self, command: ToolAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        parameters = (
            _read_json_object(command.parameters_file)
            if command.parameters_file is not None
            else {}
        )
        with _repository(settings) as repository:
            tool = EngineService(repository=repository, settings=settings).register_custom_tool(
                CustomToolCreate(
                    name=command.name,
                    webhook_url=command.webhook_url,
                    description=command.description,
                    parameters=parameters,
                    webhook_headers=_parse_headers(command.headers),
                ),
            )
        return [
            f"Custom tool registered: tool_id={tool.id} name={tool.name}",
            f"Reference it from an agent as: custom:{tool.id}",
        ]

    def set_key(self, command: KeySetCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            provider = EngineService(repository=repository, settings=settings).set_provider_key(
                provider=command.provider,
                api_key=command.api_key,
            )
        encrypted = "encrypted" if settings.encryption_key else "plaintext"
        return [f"API key stored: provider={provider} ({encrypted})"]

    def add_team(self, command: TeamAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        config = _read_json_object(command.config_file)
        with _repository(settings) as repository:
            team = EngineService(repository=repository, settings=settings).create_team(
                name=command.name,
                mode=command.mode,
                config=config,
            )
        return [f"Team created: team_id={team.id} name={team.name} mode={team.mode.value}"]

    def enqueue_task(self, command: TaskEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = EngineService(repository=repository, settings=settings).enqueue_task(
                EnqueueTask(
                    title=command.title,
                    description=command.description,
                    priority=command.priority,
                    agent_id=command.agent_id,
                ),
            )
        return [
            f"Task enqueued: task_id={task.id} status={task.status.value} "
            f"priority={task.priority.value}",
        ]

    def list_tasks(self, command: ListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = TaskStatus(command.status.strip().lower()) if command.status else None
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                workspace_id=settings.workspace_id,
                status=status,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.id} status={task.status.value} priority={task.priority.value} "
                f"agent={task.assigned_agent_id or '-'} title={_preview(task.title)}",
            )
        return lines

    def inspect_task(self, command: ItemCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(
                task_id=command.item_id,
                workspace_id=settings.workspace_id,
            )
        if details is None:
            return [f"Task not found: {command.item_id}"]

        task = details.task
        usage = task.metadata.get("usage") or {}
        lines = [
            f"Task: {task.id}",
            f"Title: {task.title}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority.value}",
            f"Agent: {task.assigned_agent_id or '-'}",
            f"Runner: {task.claimed_by_runner or '-'}",
            f"Tokens: {usage.get('total_tokens', 0)} cost_usd={usage.get('cost_estimate_usd', 0)}",
            f"Error: {task.error or '-'}",
            f"Failure class: {_failure_class(task.failure_class)}",
            f"Result: {task.result or '-'}",
            f"Executions: {len(details.executions)}",
        ]
        for execution in details.executions:
            lines.append(
                f"  {execution.id} agent={execution.agent_id} status={execution.status.value} "
                f"tokens={execution.usage.total_tokens} error={execution.error or '-'}",
            )
        return lines

    def cancel_task(self, command: ItemCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.cancel_task(task_id=command.item_id, workspace_id=settings.workspace_id)
        return [f"Task cancelled: {command.item_id}"]

    def create_run(self, command: RunCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            run = EngineService(repository=repository, settings=settings).create_team_run(
                team_id=command.team_id,
                input_task=command.input_task,
            )
        return [
            f"Team run created: run_id={run.id} team_id={run.team_id} status={run.status.value}",
        ]

    def list_runs(self, command: ListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = TeamRunStatus(command.status.strip().lower()) if command.status else None
        with _repository(settings) as repository:
            runs = repository.list_team_runs(
                workspace_id=settings.workspace_id,
                status=status,
                limit=command.limit,
            )

        lines = [f"Team runs: {len(runs)}"]
        for run in runs:
            lines.append(
                f"  {run.id} team={run.team_id} status={run.status.value} "
                f"step={_step(run.current_step_idx)} tokens={run.tokens_total} "
                f"input={_preview(run.input_task)}",
            )
        return lines

    def inspect_run(
        self,
        command: RunInspectCommand,
        emit: Callable[[str], None] | None = None,
    ) -> list[str]:
        """Describe a run; with `follow`, keep printing new activity until it ends."""

        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_team_run_details(
                run_id=command.run_id,
                workspace_id=settings.workspace_id,
            )
            if details is None:
                return [f"Team run not found: {command.run_id}"]

            run = details.run
            lines = [
                f"Team run: {run.id}",
                f"Team: {run.team_id}",
                f"Status: {run.status.value}",
                f"Current step: {_step(run.current_step_idx)}",
                f"Delegation depth: {run.delegation_depth}",
                f"Tokens: {run.tokens_total} cost_usd={run.cost_estimate_usd:.6f}",
                f"Error: {run.error_message or '-'}",
                f"Failure class: {_failure_class(run.failure_class)}",
                f"Delegations: {len(details.delegations)}",
            ]
            for delegation in details.delegations:
                lines.append(
                    f"  {delegation.id} worker={delegation.worker_agent_id} "
                    f"status={delegation.status.value} revisions={delegation.revision_count} "
                    f"accepted={delegation.accepted}",
                )
            lines.append(f"Messages: {len(details.messages)}")
            lines.extend(_message_line(message) for message in details.messages)

            if not command.follow or run.status in TERMINAL_TEAM_RUN_STATUSES:
                lines.append(f"Output: {run.output or '-'}")
                return lines

            sink = emit or (lambda _line: None)
            for line in lines:
                sink(line)
            last_id = details.messages[-1].id if details.messages else None
            polls = 0
            while command.max_polls is None or polls < command.max_polls:
                time.sleep(command.poll_interval_seconds)
                polls += 1
                for message in repository.list_team_messages(
                    run_id=command.run_id,
                    after_id=last_id,
                ):
                    sink(_message_line(message))
                    last_id = message.id
                current = repository.get_team_run(command.run_id)
                if current is None or current.status in TERMINAL_TEAM_RUN_STATUSES:
                    break
            final = repository.get_team_run(command.run_id) or run
        return [
            f"Status: {final.status.value}",
            f"Output: {final.output or '-'}",
        ]

    def cancel_run(self, command: ItemCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.cancel_team_run(run_id=command.item_id, workspace_id=settings.workspace_id)
        return [f"Team run cancelled: {command.item_id}"]

    def add_route(self, command: RouteAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            route = EngineService(repository=repository, settings=settings).add_output_route(
                name=command.name,
                url=command.url,
                events=command.events,
                secret=command.secret,
            )
        return [
            f"Output route added: route_id={route.id} name={route.name} "
            f"events={','.join(route.events)} signed={route.secret is not None}",
        ]


def _message_line(message: TeamMessageView) -> str:
    return (
        f"  #{message.id} {message.created_at.isoformat()} {message.message_type.value} "
        f"step={_step(message.step_idx)} sender={message.sender_agent_id or 'system'}: "
        f"{_preview(message.content)}"
    )


def _preview(text: str) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= PREVIEW_CHARS else f"{flat[:PREVIEW_CHARS]}..."


def _step(value: int | None) -> str:
    return "-" if value is None else str(value)


def _failure_class(value: FailureClass | None) -> str:
    return "-" if value is None else value.value


def _read_json_object(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        raise ConfigurationError(f"Cannot read JSON from {path}: {error}") from error
    if not isinstance(payload, dict):
        raise ConfigurationError(f"{path} must contain a JSON object.")
    return payload


def _parse_headers(values: tuple[str, ...]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for value in values:
        name, separator, header_value = value.partition("=")
        if not separator or not name.strip():
            raise ConfigurationError(f"Header must look like Name=value: {value!r}")
        headers[name.strip()] = header_value.strip()
    return headers


@contextmanager
def _repository(settings: Settings) -> Iterator[EngineRepository]:
    repository = EngineRepository(
        db_path=settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
