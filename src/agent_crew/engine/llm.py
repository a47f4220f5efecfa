"""Single entry point for agent LLM calls.

Resolves the agent, infers its provider, decrypts the workspace credential and
dispatches to the provider adapter. Pipeline steps, orchestrator brain/worker calls,
collaboration turns and plain tasks all go through `LlmCallService`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from agent_crew.config import ProviderSettings
from agent_crew.engine.credentials import CredentialStore
from agent_crew.engine.errors import ConfigurationError
from agent_crew.engine.models import AgentView, TokenUsage
from agent_crew.engine.providers import build_adapter, build_chat_adapter
from agent_crew.engine.providers.base import (
    ChatAdapter,
    ChatCompletion,
    ChatMessage,
    ChunkCallback,
    ProviderAdapter,
)
from agent_crew.engine.repository import EngineRepository
from agent_crew.engine.routing import (
    ProviderSpec,
    get_provider_spec,
    infer_provider,
    strip_model_prefix,
)

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[ProviderSpec, ProviderSettings], ProviderAdapter]
ChatAdapterFactory = Callable[[ProviderSpec, ProviderSettings], ChatAdapter]


@dataclass(slots=True)
class LlmCallRequest:
    """Inputs of one streamed agent call."""

    workspace_id: str
    agent_id: str
    system_prompt: str
    user_prompt: str
    on_chunk: ChunkCallback | None = None


@dataclass(slots=True)
class LlmCallResult:
    result: str
    usage: TokenUsage
    provider: str
    model: str


@dataclass(slots=True)
class ResolvedAgent:
    """Agent with its routed provider, vendor model name and decrypted key."""

    agent: AgentView
    spec: ProviderSpec
    model: str
    api_key: str | None

    @property
    def provider(self) -> str:
        return self.spec.name


class LlmCallService:
    """Route agent calls to provider adapters."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: EngineRepository,
        credentials: CredentialStore,
        settings: ProviderSettings,
        transport: httpx.BaseTransport | None = None,
        adapter_factory: AdapterFactory | None = None,
        chat_adapter_factory: ChatAdapterFactory | None = None,
    ) -> None:
        self._repository = repository
        self._credentials = credentials
        self._settings = settings
        self._adapter_factory = adapter_factory or (
            lambda spec, settings: build_adapter(spec, settings, transport=transport)
        )
        self._chat_adapter_factory = chat_adapter_factory or (
            lambda spec, settings: build_chat_adapter(spec, settings, transport=transport)
        )

    @property
    def settings(self) -> ProviderSettings:
        return self._settings

    def resolve(self, *, workspace_id: str, agent_id: str) -> ResolvedAgent:
        """Load the agent and work out which provider, model and key serve it."""

        agent = self._repository.get_agent(agent_id)
        if agent is None or agent.workspace_id != workspace_id:
            raise ConfigurationError(f"Failed to load agent {agent_id}: not found")

        provider = infer_provider(model=agent.model, stored_provider=agent.provider)
        if provider != agent.provider.strip().lower():
            logger.debug(
                "Routing agent %s model %s to provider %s (stored %s)",
                agent.id,
                agent.model,
                provider,
                agent.provider,
            )
        spec = get_provider_spec(provider, ollama_base_url=self._settings.ollama_base_url)

        api_key = self._credentials.resolve(workspace_id, spec.name)
        if api_key is None and spec.requires_api_key:
            raise ConfigurationError(
                f"No API key for provider {spec.name}. Configure it with `agent-crew keys set`.",
            )
        return ResolvedAgent(
            agent=agent,
            spec=spec,
            model=strip_model_prefix(spec, agent.model),
            api_key=api_key,
        )

    def call(self, request: LlmCallRequest) -> LlmCallResult:
        """Stream one completion for the agent."""

        resolved = self.resolve(workspace_id=request.workspace_id, agent_id=request.agent_id)
        adapter = self._adapter_factory(resolved.spec, self._settings)
        outcome = adapter.execute(
            api_key=resolved.api_key,
            model=resolved.model,
            system_prompt=request.system_prompt,
            user_prompt=request.user_prompt,
            on_chunk=request.on_chunk,
            temperature=resolved.agent.temperature,
        )
        return LlmCallResult(
            result=outcome.result,
            usage=outcome.usage,
            provider=resolved.provider,
            model=resolved.agent.model,
        )

    def chat(
        self,
        *,
        workspace_id: str,
        agent_id: str,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]] | None = None,
    ) -> ChatCompletion:
        """Run one non-streaming chat round with native tool definitions."""

        resolved = self.resolve(workspace_id=workspace_id, agent_id=agent_id)
        adapter = self._chat_adapter_factory(resolved.spec, self._settings)
        return adapter.chat(
            api_key=resolved.api_key,
            model=resolved.model,
            messages=messages,
            tools=tools,
            temperature=resolved.agent.temperature,
        )
