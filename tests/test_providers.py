from __future__ import annotations

import json

import allure
import httpx
import pytest

from agent_crew.engine.errors import ProviderError
from agent_crew.engine.providers import AnthropicAdapter, GoogleAdapter, OpenAICompatibleAdapter
from agent_crew.engine.routing import get_provider_spec

pytestmark = [
    allure.epic("LLM Runtime"),
    allure.feature("Provider Adapters"),
]


def _sse(*events: dict | str) -> bytes:
    lines = []
    for event in events:
        data = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode()


def test_openai_compatible_streams_chunks_and_usage(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_CREW_LLM_PRICING", "openai:*:1.0:2.0")
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            content=_sse(
                {"choices": [{"delta": {"content": "Hel"}}]},
                {"choices": [{"delta": {"content": "lo"}}]},
                {"choices": [], "usage": {"prompt_tokens": 1000, "completion_tokens": 500}},
                "[DONE]",
            ),
            headers={"content-type": "text/event-stream"},
        )

    adapter = OpenAICompatibleAdapter(
        get_provider_spec("openai"),
        transport=httpx.MockTransport(handler),
    )
    chunks: list[str] = []

    result = adapter.execute(
        api_key="sk-test",
        model="gpt-4o",
        system_prompt="Be brief.",
        user_prompt="Greet",
        on_chunk=chunks.append,
        temperature=0.2,
    )

    assert result.result == "Hello"
    assert chunks == ["Hel", "Hello"]
    assert result.usage.total_tokens == 1500
    assert result.usage.cost_estimate_usd == pytest.approx(0.002)
    request = seen[0]
    assert str(request.url) == "https://api.openai.com/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["stream"] is True
    assert body["temperature"] == 0.2
    assert body["messages"][0] == {"role": "system", "content": "Be brief."}


def test_openai_compatible_raises_vendor_message() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(
            404,
            json={"error": {"message": "The model `gpt-404` does not exist"}},
        )

    adapter = OpenAICompatibleAdapter(
        get_provider_spec("openai"),
        transport=httpx.MockTransport(handler),
    )

    with pytest.raises(ProviderError, match="does not exist") as excinfo:
        adapter.execute(api_key="k", model="gpt-404", system_prompt="s", user_prompt="u")
    assert excinfo.value.status_code == 404
    assert excinfo.value.provider == "openai"


def test_stream_error_event_is_raised() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_sse({"error": {"message": "context too long"}}))

    adapter = OpenAICompatibleAdapter(
        get_provider_spec("groq"),
        transport=httpx.MockTransport(handler),
    )

    with pytest.raises(ProviderError, match="context too long"):
        adapter.execute(api_key="k", model="llama", system_prompt="s", user_prompt="u")


def test_openai_compatible_chat_parses_tool_calls() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["tools"][0]["function"]["name"] == "web_search"
        return httpx.Response(
            200,
            json={
                "choices": [
                    {
                        "message": {
                            "content": None,
                            "tool_calls": [
                                {
                                    "id": "call_1",
                                    "type": "function",
                                    "function": {
                                        "name": "web_search",
                                        "arguments": '{"query": "tides"}',
                                    },
                                },
                            ],
                        },
                    },
                ],
                "usage": {"prompt_tokens": 10, "completion_tokens": 5},
            },
        )

    adapter = OpenAICompatibleAdapter(
        get_provider_spec("openai"),
        transport=httpx.MockTransport(handler),
    )

    completion = adapter.chat(
        api_key="k",
        model="gpt-4o",
        messages=[{"role": "user", "content": "Search tides"}],
        tools=[{"type": "function", "function": {"name": "web_search"}}],
    )

    assert completion.content is None
    assert [(call.id, call.name, call.arguments) for call in completion.tool_calls] == [
        ("call_1", "web_search", '{"query": "tides"}'),
    ]
    assert completion.usage.total_tokens == 15


def test_anthropic_adapter_streams_text_deltas() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            content=_sse(
                {"type": "message_start", "message": {"usage": {"input_tokens": 12}}},
                {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi "}},
                {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "there"}},
                {"type": "message_delta", "usage": {"output_tokens": 7}},
                {"type": "message_stop"},
            ),
        )

    adapter = AnthropicAdapter(
        get_provider_spec("anthropic"),
        max_output_tokens=256,
        transport=httpx.MockTransport(handler),
    )

    result = adapter.execute(
        api_key="sk-ant",
        model="claude-sonnet-4",
        system_prompt="sys",
        user_prompt="hello",
    )

    assert result.result == "Hi there"
    assert (result.usage.prompt_tokens, result.usage.completion_tokens) == (12, 7)
    request = seen[0]
    assert str(request.url) == "https://api.anthropic.com/v1/messages"
    assert request.headers["x-api-key"] == "sk-ant"
    assert request.headers["anthropic-version"] == "2023-06-01"
    body = json.loads(request.content)
    assert body["system"] == "sys"
    assert body["max_tokens"] == 256


def test_google_adapter_streams_candidates() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            content=_sse(
                {"candidates": [{"content": {"parts": [{"text": "Bon"}]}}]},
                {
                    "candidates": [{"content": {"parts": [{"text": "jour"}]}}],
                    "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 2},
                },
            ),
        )

    adapter = GoogleAdapter(get_provider_spec("google"), transport=httpx.MockTransport(handler))

    result = adapter.execute(
        api_key="g-key",
        model="gemini-2.0-flash",
        system_prompt="sys",
        user_prompt="hello",
    )

    assert result.result == "Bonjour"
    assert result.usage.total_tokens == 6
    request = seen[0]
    assert request.url.path.endswith("/models/gemini-2.0-flash:streamGenerateContent")
    assert request.url.params["alt"] == "sse"
    assert request.headers["x-goog-api-key"] == "g-key"
