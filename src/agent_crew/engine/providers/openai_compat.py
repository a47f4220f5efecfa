"""Generic adapter for OpenAI-compatible chat completion endpoints."""

from __future__ import annotations

import json
from typing import Any

import httpx

from agent_crew.engine.errors import ProviderError
from agent_crew.engine.pricing import build_usage
from agent_crew.engine.providers.base import (
    ChatCompletion,
    ChatMessage,
    ChunkCallback,
    ProviderResult,
    ToolCall,
    iter_sse_json,
    raise_for_provider_status,
)
from agent_crew.engine.routing import ProviderSpec


class OpenAICompatibleAdapter:
    """Streams and chats against `{base_url}/chat/completions`.

    One instance serves every vendor in the provider table that speaks the OpenAI wire
    format; vendor differences live in `ProviderSpec`.
    """

    def __init__(
        self,
        spec: ProviderSpec,
        *,
        base_url: str | None = None,
        timeout_seconds: float = 120.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.spec = spec
        self.base_url = (base_url or spec.base_url).rstrip("/")
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
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if temperature is not None:
            body["temperature"] = temperature

        full_text = ""
        prompt_tokens = 0
        completion_tokens = 0
        with (
            self._client() as client,
            client.stream(
                "POST",
                f"{self.base_url}/chat/completions",
                json=body,
                headers=self._headers(api_key),
            ) as response,
        ):
            raise_for_provider_status(response, provider=self.spec.name)
            for chunk in iter_sse_json(response, provider=self.spec.name):
                choices = chunk.get("choices") or []
                if choices:
                    delta = (choices[0] or {}).get("delta") or {}
                    content = delta.get("content") or ""
                    if content:
                        full_text += content
                        if on_chunk is not None:
                            on_chunk(full_text)
                usage = chunk.get("usage")
                if isinstance(usage, dict):
                    prompt_tokens = int(usage.get("prompt_tokens") or 0)
                    completion_tokens = int(usage.get("completion_tokens") or 0)

        return ProviderResult(
            result=full_text,
            usage=build_usage(
                provider=self.spec.name,
                model=model,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
            ),
        )

    def chat(  # noqa: PLR0913
        self,
        *,
        api_key: str | None,
        model: str,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
    ) -> ChatCompletion:
        body: dict[str, Any] = {"model": model, "messages": messages}
        if tools:
            body["tools"] = tools
        if temperature is not None:
            body["temperature"] = temperature

        with self._client() as client:
            response = client.post(
                f"{self.base_url}/chat/completions",
                json=body,
                headers=self._headers(api_key),
            )
            raise_for_provider_status(response, provider=self.spec.name)
            try:
                payload = response.json()
            except json.JSONDecodeError as error:
                raise ProviderError(
                    f"{self.spec.name} returned a non-JSON chat response.",
                    provider=self.spec.name,
                    status_code=response.status_code,
                ) from error

        choices = payload.get("choices") or []
        if not choices:
            raise ProviderError(
                f"{self.spec.name} returned no choices.",
                provider=self.spec.name,
                status_code=response.status_code,
            )
        message = choices[0].get("message") or {}
        usage = payload.get("usage") or {}
        return ChatCompletion(
            content=message.get("content"),
            tool_calls=[
                ToolCall(
                    id=str(item.get("id") or f"call_{index}"),
                    name=str((item.get("function") or {}).get("name") or ""),
                    arguments=_arguments_text((item.get("function") or {}).get("arguments")),
                )
                for index, item in enumerate(message.get("tool_calls") or [])
            ],
            usage=build_usage(
                provider=self.spec.name,
                model=model,
                prompt_tokens=int(usage.get("prompt_tokens") or 0),
                completion_tokens=int(usage.get("completion_tokens") or 0),
            ),
        )

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self._timeout, transport=self._transport)

    def _headers(self, api_key: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers


def _arguments_text(value: object) -> str:
    if value is None:
        return "{}"
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)
