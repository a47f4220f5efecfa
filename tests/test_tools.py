from __future__ import annotations

import json
from urllib.parse import parse_qs

import allure
import httpx
import pytest

from agent_crew.engine.models import CustomToolView, TokenUsage
from agent_crew.engine.providers.base import ChatCompletion, ToolCall
from agent_crew.engine.tools import (
    MAX_ROUNDS_SENTINEL,
    ToolExecutor,
    custom_tool_ids,
    get_tool_definitions,
    run_tool_loop,
)
from agent_crew.engine.tools.executor import format_grammar_report
from agent_crew.http.fetcher import HttpFetcher

pytestmark = [
    allure.epic("Agent Tools"),
    allure.feature("Tool Execution"),
]

SEARCH_HTML = """
<div class="result">
  <a class="result__snippet" href="#">High tide at <b>06:12</b> &amp; 18:40</a>
</div>
<div class="result">
  <a class="result__snippet" href="#">Low tide at noon</a>
</div>
"""


def _custom_tool() -> CustomToolView:
    return CustomToolView(
        id="tool-1",
        workspace_id="default",
        name="lookup_order",
        description="Look up an order",
        parameters={
            "type": "object",
            "properties": {"order_id": {"type": "string"}},
            "required": ["order_id"],
        },
        webhook_url="https://hooks.example.com/orders",
        webhook_headers={"X-Api-Key": "hook-secret"},
    )


def _executor(handler, **kwargs) -> ToolExecutor:
    fetcher = HttpFetcher(transport=httpx.MockTransport(handler))
    return ToolExecutor(fetcher=fetcher, **kwargs)


def _call(name: str, arguments: dict | str) -> ToolCall:
    text = arguments if isinstance(arguments, str) else json.dumps(arguments)
    return ToolCall(id="call_1", name=name, arguments=text)


def _unreachable(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request to {request.url}")


def test_definitions_resolve_builtins_and_custom_refs() -> None:
    tool = _custom_tool()

    definitions = get_tool_definitions(
        ["web_search", "custom:tool-1", "custom:missing", "teleport"],
        [tool],
    )

    names = [item["function"]["name"] for item in definitions]
    assert names == ["web_search", "custom_lookup_order"]
    assert definitions[1]["function"]["parameters"]["required"] == ["order_id"]
    assert custom_tool_ids(["web_search", "custom:tool-1"]) == ["tool-1"]


def test_web_search_returns_numbered_snippets() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["q"] == "tide times"
        return httpx.Response(200, text=SEARCH_HTML)

    result = _executor(handler).execute(_call("web_search", {"query": "tide times"}))

    assert result.startswith('Search results for "tide times":')
    assert "1. High tide at 06:12 & 18:40" in result
    assert "2. Low tide at noon" in result


def test_web_search_without_snippets() -> None:
    result = _executor(lambda _: httpx.Response(200, text="<html></html>")).execute(
        _call("web_search", {"query": "nothing"}),
    )

    assert result == 'No search results found for: "nothing"'


def test_http_request_posts_body_and_truncates() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, text="x" * 5000)

    result = _executor(handler).execute(
        _call(
            "http_request",
            {"url": "https://api.example.com/items", "method": "post", "body": '{"a": 1}'},
        ),
    )

    assert result.startswith("HTTP 201 Created\n\n")
    assert result.endswith("... (truncated)")
    assert seen[0].method == "POST"
    assert seen[0].content == b'{"a": 1}'
    assert seen[0].headers["Content-Type"] == "application/json"


def test_http_request_rejects_unknown_method() -> None:
    result = _executor(_unreachable).execute(
        _call("http_request", {"url": "https://example.com", "method": "PATCH"}),
    )

    assert result == "Error executing http_request: Unsupported HTTP method: PATCH"


def test_read_file_reports_http_failures() -> None:
    result = _executor(lambda _: httpx.Response(404)).execute(
        _call("read_file", {"url": "https://example.com/missing.txt"}),
    )

    assert result == "Failed to read file: HTTP 404 Not Found"


def test_transport_failure_becomes_error_text() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused")

    result = _executor(handler).execute(_call("read_file", {"url": "https://down.example"}))

    assert result == "Error executing read_file: connection refused"


def test_custom_tool_posts_arguments_with_headers() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"status": "shipped"})

    executor = _executor(handler, custom_tools=[_custom_tool()])

    result = executor.execute(_call("custom_lookup_order", {"order_id": "A-7"}))

    assert json.loads(result) == {"status": "shipped"}
    assert str(seen[0].url) == "https://hooks.example.com/orders"
    assert seen[0].headers["X-Api-Key"] == "hook-secret"
    assert json.loads(seen[0].content) == {"order_id": "A-7"}


def test_custom_tool_webhook_error_is_reported() -> None:
    executor = _executor(
        lambda _: httpx.Response(500, text="boom"),
        custom_tools=[_custom_tool()],
    )

    result = executor.execute(_call("custom_lookup_order", {"order_id": "A-7"}))

    assert result == "Custom tool webhook error: HTTP 500 Internal Server Error\n\nboom"


@pytest.mark.parametrize(
    ("call", "expected"),
    [
        (_call("web_search", "{not json"), "Error: Invalid JSON arguments: {not json"),
        (_call("teleport", {}), 'Error: Unknown tool "teleport"'),
        (_call("custom_ghost", {}), 'Error: Custom tool "ghost" not found'),
        (
            _call("web_search", {}),
            'Error executing web_search: missing required argument "query"',
        ),
    ],
)
def test_invalid_calls_return_error_text(call: ToolCall, expected: str) -> None:
    assert _executor(_unreachable).execute(call) == expected


def test_grammar_check_formats_languagetool_response() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "language": {"name": "English (US)"},
                "matches": [
                    {
                        "message": "Possible spelling mistake found.",
                        "context": {"text": "This is teh text"},
                        "rule": {"category": {"name": "Possible Typo"}},
                        "replacements": [{"value": "the"}, {"value": "ten"}],
                    },
                ],
            },
        )

    result = _executor(handler).execute(_call("grammar_check", {"text": "This is teh text"}))

    form = parse_qs(seen[0].content.decode())
    assert form["language"] == ["auto"]
    assert result.startswith("Found 1 issue(s) (Language: English (US)):")
    assert '1. [Possible Typo] Possible spelling mistake found.' in result
    assert 'Suggestions: "the", "ten"' in result


def test_grammar_report_without_issues() -> None:
    report = format_grammar_report(
        {"language": {"detectedLanguage": {"name": "German"}}, "matches": []},
    )

    assert report.endswith("Language detected: German.")


def test_code_interpreter_captures_output_and_errors() -> None:
    executor = _executor(_unreachable, code_timeout_seconds=20)

    assert executor.execute(_call("code_interpreter", {"code": "print(6 * 7)"})) == "42"
    failed = executor.execute(_call("code_interpreter", {"code": "raise ValueError('bad')"}))
    assert failed.startswith("Code execution error:")
    assert "ValueError: bad" in failed


def test_code_interpreter_does_not_see_runner_environment(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("AGENT_CREW_ENCRYPTION_KEY", "super-secret-master-key")
    executor = _executor(_unreachable, code_timeout_seconds=20)

    result = executor.execute(
        _call(
            "code_interpreter",
            {"code": "import os\nprint(os.environ[\"AGENT_CREW_ENCRYPTION_KEY\"])"},
        ),
    )

    assert result.startswith("Code execution error:")
    assert "super-secret-master-key" not in result
    assert "ImportError" in result


def test_code_interpreter_cannot_open_files(tmp_path) -> None:
    secret = tmp_path / "engine.db"
    secret.write_text("encrypted provider keys", encoding="utf-8")
    executor = _executor(_unreachable, code_timeout_seconds=20)

    result = executor.execute(
        _call("code_interpreter", {"code": f"print(open({str(secret)!r}).read())"}),
    )

    assert result.startswith("Code execution error:")
    assert "encrypted provider keys" not in result


def test_code_interpreter_times_out() -> None:
    executor = _executor(_unreachable, code_timeout_seconds=1)

    result = executor.execute(_call("code_interpreter", {"code": "while True:\n    pass"}))

    assert result == "Code execution error: timed out after 1s"


def _completion(content: str | None, *calls: ToolCall) -> ChatCompletion:
    return ChatCompletion(
        content=content,
        usage=TokenUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15),
        tool_calls=list(calls),
    )


def test_tool_loop_feeds_results_back_until_final_answer() -> None:
    replies = iter(
        [
            _completion(None, _call("teleport", {})),
            _completion("The answer is 42."),
        ],
    )
    transcripts: list[list[dict]] = []

    def chat(messages, tools):
        transcripts.append(list(messages))
        return next(replies)

    result = run_tool_loop(
        chat,
        "system",
        "question",
        [{"type": "function"}],
        _executor(_unreachable),
    )

    assert result.result == "The answer is 42."
    assert result.tool_calls_made == 1
    assert result.rounds == 2
    assert result.usage.total_tokens == 30
    second_round = transcripts[1]
    assert second_round[2]["role"] == "assistant"
    assert second_round[3] == {
        "role": "tool",
        "tool_call_id": "call_1",
        "content": 'Error: Unknown tool "teleport"',
    }


def test_tool_loop_stops_at_max_rounds() -> None:
    calls = 0

    def chat(messages, tools):
        nonlocal calls
        calls += 1
        return _completion(None, _call("teleport", {}))

    result = run_tool_loop(
        chat,
        "system",
        "question",
        [{"type": "function"}],
        _executor(_unreachable),
        max_rounds=3,
    )

    assert calls == 3
    assert result.result == MAX_ROUNDS_SENTINEL
    assert result.tool_calls_made == 3


def test_tool_loop_keeps_last_assistant_text_when_exhausted() -> None:
    def chat(messages, tools):
        return _completion("Still searching...", _call("teleport", {}))

    result = run_tool_loop(chat, "s", "u", [], _executor(_unreachable), max_rounds=2)

    assert result.result == "Still searching..."
