"""Google Gemini streamGenerateContent adapter."""

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


class GoogleAdapter:
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
        generation_config: dict[str, Any] = {"maxOutputTokens": self.max_output_tokens}
        if temperature is not None:
            generation_config["temperature"] = temperature
        body: dict[str, Any] = {
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
            "generationConfig": generation_config,
        }
        model_path = model if model.startswith("models/") else f"models/{model}"

        full_text = ""
        prompt_tokens = 0
        completion_tokens = 0
        with (
            httpx.Client(timeout=self._timeout, transport=self._transport) as client,
            client.stream(
                "POST",
                f"{self.spec.base_url.rstrip('/')}/{model_path}:streamGenerateContent",
                params={"alt": "sse"},
                json=body,
                headers={"x-goog-api-key": api_key or "", "content-type": "application/json"},
            ) as response,
        ):
            raise_for_provider_status(response, provider=self.spec.name)
            for chunk in iter_sse_json(response, provider=self.spec.name):
                text = _chunk_text(chunk)
                if text:
                    full_text += text
                    if on_chunk is not None:
                        on_chunk(full_text)
                usage = chunk.get("usageMetadata")
                if isinstance(usage, dict):
                    prompt_tokens = int(usage.get("promptTokenCount") or 0)
                    completion_tokens = int(usage.get("candidatesTokenCount") or 0)

        return ProviderResult(
            result=full_text,
            usage=build_usage(
                provider=self.spec.name,
                model=model,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
            ),
        )


def _chunk_text(chunk: dict[str, Any]) -> str:
    candidates = chunk.get("candidates") or []
    if not candidates:
        return ""
    parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
    return "".join(str(part.get("text") or "") for part in parts if isinstance(part, dict))
