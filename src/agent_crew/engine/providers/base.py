"""Provider adapter interface and shared wire helpers."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from agent_crew.engine.errors import ProviderError
from agent_crew.engine.models import TokenUsage

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]
ChatMessage = dict[str, Any]
_HTTP_ERROR_THRESHOLD = 400


@dataclass(slots=True)
class ProviderResult:
    """Final text and usage of one streamed completion."""

    result: str
    usage: TokenUsage


@dataclass(slots=True)
class ToolCall:
    """One function call requested by the model (OpenAI shape)."""

    id: str
    name: str
    arguments: str

    def to_message_part(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(slots=True)
class ChatCompletion:
    """Non-streaming chat completion with optional tool calls."""

    content: str | None
    usage: TokenUsage
    tool_calls: list[ToolCall] = field(default_factory=list)


class ProviderAdapter(Protocol):
    """Streaming text completion for one vendor."""

    def execute(  # noqa: PLR0913
        self,
        *,
        api_key: str | None,
        model: str,
        system_prompt: str,
        user_prompt: str,
        on_chunk: ChunkCallback | None = None,
        temperature: float | None = None,
    ) -> ProviderResult:
        """Stream a completion, calling `on_chunk` with the accumulated text so far."""


class ChatAdapter(Protocol):
    """OpenAI-compatible non-streaming chat with native tool definitions."""

    def chat(  # noqa: PLR0913
        self,
        *,
        api_key: str | None,
        model: str,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
    ) -> ChatCompletion:
        """Run one chat round and return the assistant message."""


def raise_for_provider_status(response: httpx.Response, *, provider: str) -> None:
    """Raise `ProviderError` with the vendor's own message for HTTP errors."""

    if response.status_code < _HTTP_ERROR_THRESHOLD:
        return
    response.read()
    message = extract_error_message(response.text) or response.reason_phrase
    raise ProviderError(
        f"{provider} API error {response.status_code}: {message}",
        provider=provider,
        status_code=response.status_code,
    )


def extract_error_message(body: str) -> str:
    """Pull a human-readable message out of a vendor error body."""

    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return body.strip()[:500]
    if isinstance(payload, list) and payload:
        payload = payload[0]
    if not isinstance(payload, dict):
        return body.strip()[:500]
    error = payload.get("error")
    if isinstance(error, dict):
        message = error.get("message") or error.get("type")
        if message:
            return str(message)
    if isinstance(error, str):
        return error
    if payload.get("message"):
        return str(payload["message"])
    return body.strip()[:500]


def iter_sse_json(response: httpx.Response, *, provider: str) -> Iterator[dict[str, Any]]:
    """Yield JSON payloads of `data:` lines from a server-sent events stream."""

    for line in response.iter_lines():
        if not line.startswith("data:"):
            continue
        data = line[len("data:") :].strip()
        if not data:
            continue
        if data == "[DONE]":
            return
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed %s stream chunk: %s", provider, data[:200])
            continue
        if isinstance(payload, dict):
            if payload.get("type") == "error" or (
                "error" in payload and "choices" not in payload and "candidates" not in payload
            ):
                raise ProviderError(
                    f"{provider} stream error: {extract_error_message(data)}",
                    provider=provider,
                )
            yield payload
