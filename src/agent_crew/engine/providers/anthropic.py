"""Anthropic Messages API streaming adapter."""

from __future__ import annotations

from typing import Any

import httpx

from agent_crew.engine.pricing import build_usage
from agent_crew.engine.providers.base import (
    ChunkCallback,
    ProviderResult,
    iter_sse_json,
    raise_for_provider_status,
)
from agent_crew.engine.routing import ProviderSpec

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicAdapter:
    def __init__(
        self,
        spec: ProviderSpec,
        *,
        timeout_seconds: float = 120.0,
        max_output_tokens: int = 4096,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.spec = spec
        self.max_output_tokens = max_output_tokens
        self._timeout = httpx.Timeout(timeout_seconds, connect=min(10.0, timeout_seconds))
        self._transport = transport

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
        body: dict[str, Any] = {
            "model": model,
            "max_tokens": self.max_output_tokens,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_prompt}],
            "stream": True,
        }
        if temperature is not None:
            body["temperature"] = temperature
        headers = {
            "x-api-key": api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

        full_text = ""
        prompt_tokens = 0
        completion_tokens = 0
        with (
            httpx.Client(timeout=self._timeout, transport=self._transport) as client,
            client.stream(
                "POST",
                f"{self.spec.base_url.rstrip('/')}/messages",
                json=body,
                headers=headers,
            ) as response,
        ):
            raise_for_provider_status(response, provider=self.spec.name)
            for event in iter_sse_json(response, provider=self.spec.name):
                event_type = event.get("type")
                if event_type == "message_start":
                    usage = (event.get("message") or {}).get("usage") or {}
                    prompt_tokens = int(usage.get("input_tokens") or 0)
                elif event_type == "content_block_delta":
                    delta = event.get("delta") or {}
                    if delta.get("type") == "text_delta":
                        full_text += str(delta.get("text") or "")
                        if on_chunk is not None:
                            on_chunk(full_text)
                elif event_type == "message_delta":
                    usage = event.get("usage") or {}
                    if "output_tokens" in usage:
                        completion_tokens = int(usage.get("output_tokens") or 0)

        return ProviderResult(
            result=full_text,
            usage=build_usage(
                provider=self.spec.name,
                model=model,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
            ),
        )
