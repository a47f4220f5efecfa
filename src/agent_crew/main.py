"""CLI entrypoint for agent-crew."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from agent_crew import __version__
from agent_crew.engine.controllers import (
    AgentAddCommand,
    DbCommand,
    EngineCliController,
    ItemCommand,
    KeySetCommand,
    ListCommand,
    RouteAddCommand,
    RunCreateCommand,
    RunInspectCommand,
    RunnerStartCommand,
    TaskEnqueueCommand,
    TeamAddCommand,
    ToolAddCommand,
)
from agent_crew.engine.models import (
    NotificationEvent,
    TaskPriority,
    TaskStatus,
    TeamMode,
    TeamRunStatus,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = EngineCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-crew")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level.",
)
def agent_crew(log_level: str) -> None:
    """AI agent and team execution engine."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@agent_crew.group()
def runner() -> None:
    """Run this process as a runner."""


@runner.command("start")
@db_path_option
@click.option(
    "--once",
    is_flag=True,
    default=False,
    help="Run one poll cycle, wait for claimed work, and exit.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many poll cycles.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many consecutive empty polls.",
)
def runner_start(
    db_path: Path | None,
    once: bool,
    max_cycles: int | None,
    max_idle_polls: int | None,
) -> None:
    """Register a runner, poll the queue and execute claimed work until stopped."""

    _emit(
        lambda: CONTROLLER.start_runner(
            RunnerStartCommand(
                db_path=db_path,
                once=once,
                max_cycles=max_cycles,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@agent_crew.group()
def runners() -> None:
    """Runner fleet maintenance."""


@runners.command("list")
@db_path_option
def runners_list(db_path: Path | None) -> None:
    """List registered runners with load and heartbeat."""

    _emit(lambda: CONTROLLER.list_runners(DbCommand(db_path=db_path)))


@runners.command("sweep")
@db_path_option
def runners_sweep(db_path: Path | None) -> None:
    """Mark silent runners dead and requeue their work."""

    _emit(lambda: CONTROLLER.sweep(DbCommand(db_path=db_path)))


@agent_crew.group()
def agents() -> None:
    """Agent definitions."""


@agents.command("add")
@db_path_option
@click.option("--name", required=True, help="Agent name.")
@click.option("--provider", required=True, help="Provider, for example openai or anthropic.")
@click.option("--model", required=True, help="Model id, optionally with a routing prefix.")
@click.option("--description", default=None, help="What the agent is good at.")
@click.option("--system-prompt", default=None, help="System prompt.")
@click.option("--temperature", type=click.FloatRange(0, 2), default=None, help="Temperature.")
@click.option(
    "--tool",
    "tools",
    multiple=True,
    help="Built-in tool name or custom:<tool_id>. Can be repeated.",
)
def agents_add(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    provider: str,
    model: str,
    description: str | None,
    system_prompt: str | None,
    temperature: float | None,
    tools: tuple[str, ...],
) -> None:
    """Register an agent."""

    _emit(
        lambda: CONTROLLER.add_agent(
            AgentAddCommand(
                db_path=db_path,
                name=name,
                provider=provider,
                model=model,
                description=description,
                system_prompt=system_prompt,
                temperature=temperature,
                tools=tools,
            ),
        ),
    )


@agents.command("list")
@db_path_option
def agents_list(db_path: Path | None) -> None:
    """List agents of the workspace."""

    _emit(lambda: CONTROLLER.list_agents(DbCommand(db_path=db_path)))


@agent_crew.group()
def tools() -> None:
    """Custom webhook tools."""


@tools.command("add")
@db_path_option
@click.option("--name", required=True, help="Tool name shown to the model.")
@click.option("--webhook-url", required=True, help="URL that receives the tool arguments.")
@click.option("--description", default="", help="Tool description shown to the model.")
@click.option(
    "--parameters-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="JSON file with {properties, required}.",
)
@click.option(
    "--header",
    "headers",
    multiple=True,
    help="Webhook header as Name=value. Can be repeated.",
)
def tools_add(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    webhook_url: str,
    description: str,
    parameters_file: Path | None,
    headers: tuple[str, ...],
) -> None:
    """Register a webhook-backed custom tool."""

    _emit(
        lambda: CONTROLLER.add_tool(
            ToolAddCommand(
                db_path=db_path,
                name=name,
                webhook_url=webhook_url,
                description=description,
                parameters_file=parameters_file,
                headers=headers,
            ),
        ),
    )


@agent_crew.group()
def keys() -> None:
    """Provider API keys."""


@keys.command("set")
@db_path_option
@click.option("--provider", required=True, help="Provider name.")
@click.option("--api-key", required=True, prompt=True, hide_input=True, help="API key.")
def keys_set(db_path: Path | None, provider: str, api_key: str) -> None:
    """Store a provider API key for the workspace."""

    _emit(
        lambda: CONTROLLER.set_key(
            KeySetCommand(db_path=db_path, provider=provider, api_key=api_key),
        ),
    )


@agent_crew.group()
def teams() -> None:
    """Team definitions."""


@teams.command("add")
@db_path_option
@click.option("--name", required=True, help="Team name.")
@click.option(
    "--mode",
    type=click.Choice([mode.value for mode in TeamMode], case_sensitive=False),
    required=True,
    help="Execution topology.",
)
@click.option(
    "--config-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="JSON file with the mode-specific team config.",
)
def teams_add(db_path: Path | None, name: str, mode: str, config_file: Path) -> None:
    """Create a team."""

    _emit(
        lambda: CONTROLLER.add_team(
            TeamAddCommand(db_path=db_path, name=name, mode=mode, config_file=config_file),
        ),
    )


@agent_crew.group()
def tasks() -> None:
    """Single-agent tasks."""


@tasks.command("enqueue")
@db_path_option
@click.option("--title", required=True, help="Task title.")
@click.option("--description", default="", help="Task description.")
@click.option(
    "--priority",
    type=click.Choice([priority.value for priority in TaskPriority], case_sensitive=False),
    default=TaskPriority.MEDIUM.value,
    show_default=True,
    help="Queue priority.",
)
@click.option("--agent-id", default=None, help="Assigned agent id.")
def tasks_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    description: str,
    priority: str,
    agent_id: str | None,
) -> None:
    """Enqueue a pending task."""

    _emit(
        lambda: CONTROLLER.enqueue_task(
            TaskEnqueueCommand(
                db_path=db_path,
                title=title,
                description=description,
                priority=priority,
                agent_id=agent_id,
            ),
        ),
    )


@tasks.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent tasks."""

    _emit(lambda: CONTROLLER.list_tasks(ListCommand(db_path=db_path, status=status, limit=limit)))


@tasks.command("inspect")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with its execution records."""

    _emit(lambda: CONTROLLER.inspect_task(ItemCommand(db_path=db_path, item_id=task_id)))


@tasks.command("cancel")
@db_path_option
@click.option("--task-id", required=True, help="Task id.")
def tasks_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a pending or running task."""

    _emit(lambda: CONTROLLER.cancel_task(ItemCommand(db_path=db_path, item_id=task_id)))


@agent_crew.group()
def runs() -> None:
    """Team runs."""


@runs.command("create")
@db_path_option
@click.option("--team-id", required=True, help="Team id.")
@click.option("--input", "input_task", required=True, help="Task given to the team.")
def runs_create(db_path: Path | None, team_id: str, input_task: str) -> None:
    """Create a pending team run."""

    _emit(
        lambda: CONTROLLER.create_run(
            RunCreateCommand(db_path=db_path, team_id=team_id, input_task=input_task),
        ),
    )


@runs.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in TeamRunStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max runs to print.",
)
def runs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent team runs."""

    _emit(lambda: CONTROLLER.list_runs(ListCommand(db_path=db_path, status=status, limit=limit)))


@runs.command("inspect")
@db_path_option
@click.option("--run-id", required=True, help="Team run id.")
@click.option(
    "--follow",
    is_flag=True,
    default=False,
    help="Print new activity until the run ends.",
)
@click.option(
    "--poll-interval",
    type=click.FloatRange(min=0.1),
    default=1.0,
    show_default=True,
    help="Seconds between polls with --follow.",
)
def runs_inspect(db_path: Path | None, run_id: str, follow: bool, poll_interval: float) -> None:
    """Inspect a team run with its activity log and delegations."""

    _emit(
        lambda: CONTROLLER.inspect_run(
            RunInspectCommand(
                db_path=db_path,
                run_id=run_id,
                follow=follow,
                poll_interval_seconds=poll_interval,
            ),
            emit=click.echo,
        ),
    )


@runs.command("cancel")
@db_path_option
@click.option("--run-id", required=True, help="Team run id.")
def runs_cancel(db_path: Path | None, run_id: str) -> None:
    """Cancel a pending or running team run."""

    _emit(lambda: CONTROLLER.cancel_run(ItemCommand(db_path=db_path, item_id=run_id)))


@agent_crew.group()
def routes() -> None:
    """Webhook output routes."""


@routes.command("add")
@db_path_option
@click.option("--name", required=True, help="Route name.")
@click.option("--url", required=True, help="Webhook URL.")
@click.option(
    "--event",
    "events",
    multiple=True,
    type=click.Choice([event.value for event in NotificationEvent]),
    help="Subscribed event. Can be repeated; defaults to all events.",
)
@click.option("--secret", default=None, help="HMAC-SHA256 signing secret.")
def routes_add(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    url: str,
    events: tuple[str, ...],
    secret: str | None,
) -> None:
    """Add an http output route for task and team run notifications."""

    _emit(
        lambda: CONTROLLER.add_route(
            RouteAddCommand(db_path=db_path, name=name, url=url, events=events, secret=secret),
        ),
    )


def _emit(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (RuntimeError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_crew()
