"""Provider adapters keyed by wire protocol."""

from __future__ import annotations

import httpx

from agent_crew.config import ProviderSettings
from agent_crew.engine.errors import UnsupportedProviderError
from agent_crew.engine.providers.anthropic import AnthropicAdapter
from agent_crew.engine.providers.base import (
    ChatAdapter,
    ChatCompletion,
    ChatMessage,
    ChunkCallback,
    ProviderAdapter,
    ProviderResult,
    ToolCall,
)
from agent_crew.engine.providers.google import GoogleAdapter
from agent_crew.engine.providers.openai_compat import OpenAICompatibleAdapter
from agent_crew.engine.routing import AdapterKind, ProviderSpec

__all__ = [
    "AnthropicAdapter",
    "ChatAdapter",
    "ChatCompletion",
    "ChatMessage",
    "ChunkCallback",
    "GoogleAdapter",
    "OpenAICompatibleAdapter",
    "ProviderAdapter",
    "ProviderResult",
    "ToolCall",
    "build_adapter",
    "build_chat_adapter",
]


def build_adapter(
    spec: ProviderSpec,
    settings: ProviderSettings,
    *,
    transport: httpx.BaseTransport | None = None,
) -> ProviderAdapter:
    """Create the streaming adapter for the provider's wire protocol."""

    if spec.adapter is AdapterKind.ANTHROPIC:
        return AnthropicAdapter(
            spec,
            timeout_seconds=settings.timeout_seconds,
            max_output_tokens=settings.max_output_tokens,
            transport=transport,
        )
    if spec.adapter is AdapterKind.GOOGLE:
        return GoogleAdapter(
            spec,
            timeout_seconds=settings.timeout_seconds,
            max_output_tokens=settings.max_output_tokens,
            transport=transport,
        )
    return OpenAICompatibleAdapter(
        spec,
        timeout_seconds=settings.timeout_seconds,
        transport=transport,
    )


def build_chat_adapter(
    spec: ProviderSpec,
    settings: ProviderSettings,
    *,
    transport: httpx.BaseTransport | None = None,
) -> ChatAdapter:
    """Create the OpenAI-compatible chat adapter, if the provider exposes one."""

    base_url = spec.openai_base_url
    if base_url is None:
        raise UnsupportedProviderError(
            f'Provider "{spec.name}" has no OpenAI-compatible chat endpoint for tool calls.',
        )
    return OpenAICompatibleAdapter(
        spec,
        base_url=base_url,
        timeout_seconds=settings.timeout_seconds,
        transport=transport,
    )
