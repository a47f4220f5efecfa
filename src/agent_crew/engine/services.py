"""Use-case services and runtime wiring for the CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from agent_crew.config import Settings
from agent_crew.engine.credentials import CredentialCipher, CredentialStore
from agent_crew.engine.errors import ConfigurationError
from agent_crew.engine.executors.collaboration import CollaborationExecutor
from agent_crew.engine.executors.common import TeamRunExecutor
from agent_crew.engine.executors.orchestrator import OrchestratorExecutor
from agent_crew.engine.executors.pipeline import PipelineExecutor
from agent_crew.engine.executors.task import TaskExecutor
from agent_crew.engine.llm import LlmCallService
from agent_crew.engine.models import (
    AgentCreate,
    AgentView,
    CustomToolCreate,
    CustomToolView,
    NotificationEvent,
    OrchestratorConfig,
    OutputRouteCreate,
    OutputRouteView,
    PipelineConfig,
    TaskCreate,
    TaskPriority,
    TaskView,
    TeamConfig,
    TeamCreate,
    TeamMode,
    TeamRunCreate,
    TeamRunView,
    TeamView,
    parse_team_config,
)
from agent_crew.engine.notifications import NotificationOutbox
from agent_crew.engine.registry import RunnerRegistry
from agent_crew.engine.repository import EngineRepository
from agent_crew.engine.routing import get_provider_spec, normalize_provider
from agent_crew.engine.scheduler import Scheduler, SchedulerPollSummary
from agent_crew.engine.tools.definitions import BUILTIN_TOOLS, CUSTOM_TOOL_REF_PREFIX
from agent_crew.engine.usage import UsageLedger

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RegisterAgent:
    """High-level command to register an agent."""

    name: str
    provider: str
    model: str
    description: str | None = None
    system_prompt: str | None = None
    temperature: float | None = None
    tools: tuple[str, ...] = ()


@dataclass(slots=True)
class EnqueueTask:
    title: str
    description: str = ""
    priority: str = TaskPriority.MEDIUM.value
    agent_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class EngineService:
    """Validates operator input and writes it through the repository."""

    def __init__(self, *, repository: EngineRepository, settings: Settings) -> None:
        self.repository = repository
        self.settings = settings
        self.credentials = CredentialStore(repository, CredentialCipher(settings.encryption_key))

    @property
    def workspace_id(self) -> str:
        return self.settings.workspace_id

    def register_agent(self, command: RegisterAgent) -> AgentView:
        provider = normalize_provider(command.provider)
        get_provider_spec(provider, ollama_base_url=self.settings.providers.ollama_base_url)
        unknown = [
            name
            for name in command.tools
            if not name.startswith(CUSTOM_TOOL_REF_PREFIX) and name not in BUILTIN_TOOLS
        ]
        if unknown:
            raise ConfigurationError(f"Unknown tool(s): {', '.join(unknown)}")
        if command.temperature is not None and not 0 <= command.temperature <= 2:  # noqa: PLR2004
            raise ConfigurationError("Temperature must be between 0 and 2.")
        return self.repository.create_agent(
            workspace_id=self.workspace_id,
            payload=AgentCreate(
                name=command.name,
                provider=provider,
                model=command.model,
                description=command.description,
                system_prompt=command.system_prompt,
                temperature=command.temperature,
                tools=command.tools,
            ),
        )

    def register_custom_tool(self, payload: CustomToolCreate) -> CustomToolView:
        if not payload.webhook_url.startswith(("http://", "https://")):
            raise ConfigurationError("Custom tool webhook URL must start with http:// or https://")
        return self.repository.create_custom_tool(workspace_id=self.workspace_id, payload=payload)

    def set_provider_key(self, *, provider: str, api_key: str) -> str:
        spec = get_provider_spec(
            normalize_provider(provider),
            ollama_base_url=self.settings.providers.ollama_base_url,
        )
        if not api_key.strip():
            raise ConfigurationError("API key must not be empty.")
        self.credentials.store(
            workspace_id=self.workspace_id,
            provider=spec.name,
            api_key=api_key.strip(),
        )
        return spec.name

    def create_team(self, *, name: str, mode: str, config: dict[str, Any]) -> TeamView:
        parsed = parse_team_config(mode.strip().lower(), config)
        team = self.repository.create_team(
            workspace_id=self.workspace_id,
            payload=TeamCreate(name=name, mode=TeamMode(mode.strip().lower()), config=config),
        )
        referenced = _referenced_agent_ids(parsed)
        known = self.repository.get_agents(referenced)
        missing = [agent_id for agent_id in referenced if agent_id not in known]
        if missing:
            logger.warning("Team %s references unknown agent(s): %s", team.id, ", ".join(missing))
        return team

    def enqueue_task(self, command: EnqueueTask) -> TaskView:
        if command.agent_id is not None:
            agent = self.repository.get_agent(command.agent_id)
            if agent is None or agent.workspace_id != self.workspace_id:
                raise ConfigurationError(f"Agent not found: {command.agent_id}")
        return self.repository.enqueue_task(
            workspace_id=self.workspace_id,
            payload=TaskCreate(
                title=command.title,
                description=command.description,
                priority=TaskPriority(command.priority.strip().lower()),
                assigned_agent_id=command.agent_id,
                metadata=command.metadata,
            ),
        )

    def create_team_run(self, *, team_id: str, input_task: str) -> TeamRunView:
        if not input_task.strip():
            raise ConfigurationError("Team run input must not be empty.")
        return self.repository.create_team_run(
            workspace_id=self.workspace_id,
            payload=TeamRunCreate(team_id=team_id, input_task=input_task),
        )

    def add_output_route(
        self,
        *,
        name: str,
        url: str,
        events: tuple[str, ...],
        secret: str | None = None,
    ) -> OutputRouteView:
        known = {event.value for event in NotificationEvent}
        unknown = [event for event in events if event not in known]
        if unknown:
            raise ConfigurationError(f"Unknown event(s): {', '.join(unknown)}")
        return self.repository.create_output_route(
            workspace_id=self.workspace_id,
            payload=OutputRouteCreate(
                name=name,
                url=url,
                events=events or tuple(sorted(known)),
                secret=secret,
            ),
        )


@dataclass(slots=True)
class RunnerRuntime:
    """Everything one runner process needs, wired from settings."""

    registry: RunnerRegistry
    scheduler: Scheduler
    outbox: NotificationOutbox

    def run(
        self,
        *,
        once: bool = False,
        max_cycles: int | None = None,
        max_idle_polls: int | None = None,
    ) -> SchedulerPollSummary:
        self.outbox.start()
        try:
            if once:
                summary = self.scheduler.run_once()
                self.scheduler.drain(timeout=None)
                return summary
            return self.scheduler.run_loop(max_cycles=max_cycles, max_idle_polls=max_idle_polls)
        finally:
            work_in_flight = self.scheduler.inflight > 0
            self.scheduler.shutdown()
            self.registry.deregister(work_in_flight=work_in_flight)
            self.outbox.stop()


def build_runtime(
    *,
    repository: EngineRepository,
    settings: Settings,
    transport: httpx.BaseTransport | None = None,
    start_threads: bool = True,
) -> RunnerRuntime:
    """Register a runner and wire the executors around it."""

    credentials = CredentialStore(repository, CredentialCipher(settings.encryption_key))
    llm = LlmCallService(
        repository=repository,
        credentials=credentials,
        settings=settings.providers,
        transport=transport,
    )
    ledger = UsageLedger(repository)
    outbox = NotificationOutbox(
        repository=repository,
        settings=settings.notifications,
        transport=transport,
    )
    team_executors: dict[TeamMode, TeamRunExecutor] = {
        TeamMode.PIPELINE: PipelineExecutor(
            repository=repository,
            llm=llm,
            ledger=ledger,
            outbox=outbox,
        ),
        TeamMode.ORCHESTRATOR: OrchestratorExecutor(
            repository=repository,
            llm=llm,
            ledger=ledger,
            outbox=outbox,
        ),
        TeamMode.COLLABORATION: CollaborationExecutor(
            repository=repository,
            llm=llm,
            ledger=ledger,
            outbox=outbox,
        ),
    }
    registry = RunnerRegistry(repository=repository, settings=settings.runner)
    runner = registry.register(start_threads=start_threads)
    scheduler = Scheduler(
        repository=repository,
        runner_id=runner.id,
        task_executor=TaskExecutor(
            repository=repository,
            llm=llm,
            ledger=ledger,
            tool_settings=settings.tools,
            outbox=outbox,
            transport=transport,
        ),
        team_executors=team_executors,
        settings=settings.runner,
    )
    return RunnerRuntime(registry=registry, scheduler=scheduler, outbox=outbox)


def _referenced_agent_ids(config: TeamConfig) -> list[str]:
    if isinstance(config, PipelineConfig):
        return [step.agent_id for step in config.steps]
    if isinstance(config, OrchestratorConfig):
        return [config.brain_agent_id, *config.worker_agent_ids]
    return list(config.agent_ids)
