"""Shared test fixtures."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest

from agent_crew.config import ProviderSettings, RunnerSettings, Settings
from agent_crew.engine.credentials import CredentialCipher, CredentialStore
from agent_crew.engine.llm import LlmCallService
from agent_crew.engine.models import (
    AgentCreate,
    AgentView,
    TaskCreate,
    TaskView,
    TeamCreate,
    TeamMode,
    TeamRunCreate,
    TeamRunView,
    TeamView,
    TokenUsage,
)
from agent_crew.engine.providers.base import ChatCompletion, ChatMessage, ProviderResult
from agent_crew.engine.repository import EngineRepository
from agent_crew.engine.usage import UsageLedger

WORKSPACE_ID = "default"
CALL_USAGE = TokenUsage(
    prompt_tokens=100,
    completion_tokens=50,
    total_tokens=150,
    cost_estimate_usd=0.01,
)


@dataclass(slots=True)
class ProviderCall:
    model: str
    system_prompt: str
    user_prompt: str
    temperature: float | None


class ScriptedProvider:
    """Provider adapter double that answers from per-model scripts.

    Replies are consumed in order; an exception in a script is raised instead of
    answered. Without a script the model answers with `default_reply`.
    """

    def __init__(self) -> None:
        self.calls: list[ProviderCall] = []
        self.chat_calls: list[list[ChatMessage]] = []
        self.default_reply = "ok"
        self._scripts: dict[str, list[str | Exception]] = {}
        self._chat_script: list[ChatCompletion | Exception] = []

    def script(self, model: str, *replies: str | Exception) -> None:
        self._scripts.setdefault(model, []).extend(replies)

    def script_chat(self, *completions: ChatCompletion | Exception) -> None:
        self._chat_script.extend(completions)

    def calls_for(self, model: str) -> list[ProviderCall]:
        return [call for call in self.calls if call.model == model]

    def execute(  # noqa: PLR0913
        self,
        *,
        api_key: str | None,
        model: str,
        system_prompt: str,
        user_prompt: str,
        on_chunk: Any = None,
        temperature: float | None = None,
    ) -> ProviderResult:
        self.calls.append(ProviderCall(model, system_prompt, user_prompt, temperature))
        queue = self._scripts.get(model)
        reply: str | Exception = queue.pop(0) if queue else self.default_reply
        if isinstance(reply, Exception):
            raise reply
        if on_chunk is not None:
            accumulated = ""
            for word in reply.split(" "):
                accumulated = f"{accumulated} {word}" if accumulated else word
                on_chunk(accumulated)
        return ProviderResult(result=reply, usage=_usage())

    def chat(  # noqa: PLR0913
        self,
        *,
        api_key: str | None,
        model: str,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
    ) -> ChatCompletion:
        self.chat_calls.append([dict(message) for message in messages])
        if not self._chat_script:
            return ChatCompletion(content=self.default_reply, usage=_usage())
        completion = self._chat_script.pop(0)
        if isinstance(completion, Exception):
            raise completion
        return completion


def _usage() -> TokenUsage:
    return TokenUsage(
        prompt_tokens=CALL_USAGE.prompt_tokens,
        completion_tokens=CALL_USAGE.completion_tokens,
        total_tokens=CALL_USAGE.total_tokens,
        cost_estimate_usd=CALL_USAGE.cost_estimate_usd,
    )


@dataclass
class EngineHarness:
    """Repository, registered runner and an LLM service backed by `ScriptedProvider`."""

    repository: EngineRepository
    settings: Settings
    provider: ScriptedProvider
    llm: LlmCallService
    ledger: UsageLedger
    runner_id: str
    agents: dict[str, AgentView] = field(default_factory=dict)

    def add_agent(  # noqa: PLR0913
        self,
        name: str,
        *,
        provider: str = "ollama",
        model: str | None = None,
        tools: tuple[str, ...] = (),
        system_prompt: str | None = None,
        description: str | None = None,
    ) -> AgentView:
        agent = self.repository.create_agent(
            workspace_id=WORKSPACE_ID,
            payload=AgentCreate(
                name=name,
                provider=provider,
                model=model or f"model-{name.lower()}",
                description=description,
                system_prompt=system_prompt,
                tools=tools,
            ),
        )
        self.agents[name] = agent
        return agent

    def add_team(self, mode: TeamMode, config: dict[str, Any], name: str = "Team") -> TeamView:
        return self.repository.create_team(
            workspace_id=WORKSPACE_ID,
            payload=TeamCreate(name=name, mode=mode, config=config),
        )

    def claim_run(self, team: TeamView, input_task: str = "Write about tides") -> TeamRunView:
        self.repository.create_team_run(
            workspace_id=WORKSPACE_ID,
            payload=TeamRunCreate(team_id=team.id, input_task=input_task),
        )
        run = self.repository.claim_next_team_run(runner_id=self.runner_id)
        assert run is not None
        return run

    def claim_task(self, agent: AgentView | None, title: str = "Summarize") -> TaskView:
        self.repository.enqueue_task(
            workspace_id=WORKSPACE_ID,
            payload=TaskCreate(
                title=title,
                description="Summarize the quarterly report.",
                assigned_agent_id=agent.id if agent is not None else None,
            ),
        )
        task = self.repository.claim_next_task(runner_id=self.runner_id)
        assert task is not None
        return task

    def hand_over_claims(self) -> str:
        """Mark this runner dead, requeue its claims and register a successor runner."""

        self.repository.mark_stale_runners_dead(dead_after=timedelta(seconds=-1))
        self.repository.recover_stale_claims()
        successor = self.repository.register_runner(instance_name="successor", max_concurrency=10)
        return successor.id


@pytest.fixture()
def repository(tmp_path: Path):
    repository = EngineRepository(tmp_path / "engine.db")
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def harness(repository: EngineRepository, tmp_path: Path) -> EngineHarness:
    settings = Settings(
        db_path=tmp_path / "engine.db",
        runner=RunnerSettings(instance_name="test-runner", max_concurrency=10),
        providers=ProviderSettings(),
    )
    provider = ScriptedProvider()
    llm = LlmCallService(
        repository=repository,
        credentials=CredentialStore(repository, CredentialCipher(None)),
        settings=settings.providers,
        adapter_factory=lambda spec, _: provider,
        chat_adapter_factory=lambda spec, _: provider,
    )
    runner = repository.register_runner(instance_name="test-runner", max_concurrency=10)
    return EngineHarness(
        repository=repository,
        settings=settings,
        provider=provider,
        llm=llm,
        ledger=UsageLedger(repository),
        runner_id=runner.id,
    )
